"""
Adaptive Engine - the session service callers talk to.

Features:
    - Per-session estimator, analyzer and selector (no shared learner state)
    - IRT, weakness, random and module-routed session modes
    - Two-stage module routing with scaled section scores
    - Results returned synchronously, persistence queued and flushed with retries

Session lifecycle:
    NOT_STARTED -> ACTIVE -> EXHAUSTED | MODULE_COMPLETE -> ... -> SESSION_COMPLETE
"""

import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from config import settings as default_settings

from .errors import PersistenceError, ValidationError
from .item_bank import ItemBank, Question
from .mock_tests import MockTestForm, SectionForm, get_mock_test
from .module_router import ModuleResult, ModuleRouter
from .proficiency_estimator import ProficiencyEstimator, SkillProficiency
from .question_selector import QuestionSelector, SelectionContext
from .skill_graph import SkillGraph
from .weakness_analyzer import AdaptiveResponse, WeaknessAnalyzer, WeaknessPattern

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    MODULE_COMPLETE = "module_complete"
    SESSION_COMPLETE = "session_complete"


@dataclass
class SessionConfig:
    user_id: str
    mode: str = "irt"  # "irt" | "weakness" | "random" | "module"
    subject: Optional[str] = None
    skill_id: Optional[str] = None
    mock_test_id: Optional[str] = None  # Required for "module"
    max_questions: Optional[int] = None
    difficulty_mix: Optional[Dict[str, float]] = None


@dataclass
class EndOfPool:
    """No further question: the bank ran dry or a stopping rule fired."""
    reason: str  # "exhausted" | "converged" | "budget_exhausted" | "mastery" | "max_questions" | ...


@dataclass
class AnswerOutcome:
    is_correct: bool
    updated_proficiency: SkillProficiency
    module_result: Optional[ModuleResult] = None
    estimation_error: Optional[Exception] = None


@dataclass
class ModuleCompletion:
    module_result: ModuleResult
    scaled_score: Optional[int] = None  # Set once the section's last module is done
    next_path: Optional[str] = None  # Set after module 1
    section_complete: bool = False
    total_score: Optional[int] = None  # Set once every section is done


@dataclass
class PendingWrite:
    """A persistence call waiting to be flushed."""
    operation: str  # Store coroutine name
    args: tuple
    attempts: int = 0
    last_error: Optional[str] = None


@dataclass
class ModuleProgress:
    section_index: int
    module_number: int
    difficulty_path: str
    answered: int = 0
    correct: int = 0
    result: Optional[ModuleResult] = None


@dataclass
class SessionHandle:
    session_id: str
    config: SessionConfig
    estimator: ProficiencyEstimator
    analyzer: WeaknessAnalyzer
    selector: QuestionSelector
    state: SessionState = SessionState.NOT_STARTED
    history: List[str] = field(default_factory=list)
    responses: List[AdaptiveResponse] = field(default_factory=list)
    selections: List[dict] = field(default_factory=list)  # Audit log of selection reasons
    current_question: Optional[Question] = None
    target_skill: Optional[str] = None
    end_reason: Optional[str] = None
    form: Optional[MockTestForm] = None
    module: Optional[ModuleProgress] = None
    module_results: List[ModuleResult] = field(default_factory=list)
    section_scores: Dict[str, int] = field(default_factory=dict)
    total_score: Optional[int] = None
    pending_writes: List[PendingWrite] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    summary: Optional[dict] = None  # Set once the archive write is queued

    @property
    def user_id(self) -> str:
        return self.config.user_id

    @property
    def section(self) -> Optional[SectionForm]:
        if self.form is None or self.module is None:
            return None
        return self.form.sections[self.module.section_index]

    def to_dict(self) -> dict:
        correct = sum(1 for r in self.responses if r.is_correct)
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "mode": self.config.mode,
            "subject": self.config.subject,
            "state": self.state.value,
            "end_reason": self.end_reason,
            "target_skill": self.target_skill,
            "questions_served": len(self.history),
            "questions_answered": len(self.responses),
            "correct": correct,
            "accuracy": correct / len(self.responses) if self.responses else 0.0,
            "current_question_id": self.current_question.id if self.current_question else None,
            "mock_test_id": self.form.id if self.form else None,
            "current_section": self.section.id if self.section else None,
            "current_module": self.module.module_number if self.module else None,
            "module_results": [r.to_dict() for r in self.module_results],
            "section_scores": dict(self.section_scores),
            "total_score": self.total_score,
            "pending_writes": len(self.pending_writes),
            "started_at": self.started_at.isoformat(),
        }


class AdaptiveEngine:
    """
    Caller-facing adaptive testing service.

    Usage:
        engine = AdaptiveEngine(item_bank, store=store)
        handle = await engine.start_session(SessionConfig(user_id="u1", skill_id="linear_equations"))
        question = await engine.next_question(handle)
        outcome = engine.submit_answer(handle, question.id, "B", 42000)
        await engine.end_session(handle)
    """

    MODES = ("irt", "weakness", "random", "module")

    def __init__(self, item_bank: ItemBank, store=None, settings=None,
                 skill_graph: Optional[SkillGraph] = None, router: Optional[ModuleRouter] = None):
        self.settings = settings or default_settings
        self.item_bank = item_bank
        self.store = store
        self.skill_graph = skill_graph or getattr(item_bank, "skill_graph", None) or SkillGraph()
        self.router = router or ModuleRouter(self.settings.routing_thresholds,
                                             self.settings.default_routing_threshold)
        self.sessions: Dict[str, SessionHandle] = {}

    # ==================== Session Lifecycle ====================

    async def start_session(self, config: SessionConfig) -> SessionHandle:
        """
        Open a session: build its estimator, hydrate it from storage and go ACTIVE.

        Raises:
            ValidationError: unknown mode, or module mode without a known mock test
        """
        if not config.user_id:
            raise ValidationError("user_id is required")
        if config.mode not in self.MODES:
            raise ValidationError(f"unknown session mode {config.mode!r}")
        if config.max_questions is not None and config.max_questions <= 0:
            raise ValidationError("max_questions must be > 0")

        form = None
        if config.mode == "module":
            form = get_mock_test(config.mock_test_id or "")
            if form is None:
                raise ValidationError(f"unknown mock test {config.mock_test_id!r}")

        session_id = str(uuid.uuid4())
        estimator = ProficiencyEstimator(user_id=config.user_id, settings=self.settings)
        await self._hydrate(estimator, config.user_id)

        analyzer = WeaknessAnalyzer(
            estimator,
            target_accuracy=self.settings.target_accuracy,
            min_attempts=self.settings.weakness_min_attempts,
            review_accuracy=self.settings.review_accuracy,
        )
        selector = QuestionSelector(
            estimator=estimator,
            analyzer=analyzer,
            rng=random.Random(f"{self.settings.selection_seed}:{session_id}"),
            target_probability=self.settings.irt_target_probability,
            difficulty_mix=config.difficulty_mix or self.settings.default_difficulty_mix,
            session_shares=self.settings.weakness_session_shares,
        )

        handle = SessionHandle(
            session_id=session_id,
            config=config,
            estimator=estimator,
            analyzer=analyzer,
            selector=selector,
            form=form,
        )
        if config.mode == "irt":
            handle.target_skill = config.skill_id or self._default_skill(estimator, config.subject)
        elif config.mode == "weakness":
            handle.target_skill = config.skill_id
        elif config.mode == "module":
            handle.module = ModuleProgress(section_index=0, module_number=1, difficulty_path="baseline")

        handle.state = SessionState.ACTIVE
        self.sessions[session_id] = handle
        logger.info("Session %s started for user %s (mode=%s, subject=%s, skill=%s)",
                    session_id, config.user_id, config.mode, config.subject, handle.target_skill)
        return handle

    async def end_session(self, handle: SessionHandle) -> dict:
        """
        Complete the session, archive its history and flush pending writes.

        Safe on a session that already completed by itself: the archive
        queued then is not queued again.
        """
        if handle.state != SessionState.SESSION_COMPLETE:
            handle.state = SessionState.SESSION_COMPLETE
            handle.end_reason = handle.end_reason or "ended"
        handle.current_question = None

        summary = dict(self._archive(handle))
        pending = await self.flush_persistence(handle)
        summary["pending_writes"] = pending
        self.sessions.pop(handle.session_id, None)
        logger.info("Session %s ended (%s), %d writes pending", handle.session_id, handle.end_reason, pending)
        return summary

    def get_session(self, session_id: str) -> Optional[SessionHandle]:
        return self.sessions.get(session_id)

    # ==================== Question Flow ====================

    async def next_question(self, handle: SessionHandle) -> Union[Question, EndOfPool]:
        """
        Serve the next question, or EndOfPool when the session cannot continue.

        An unanswered current question is served again.
        """
        if handle.state == SessionState.SESSION_COMPLETE:
            return EndOfPool(handle.end_reason or "session_complete")
        if handle.state == SessionState.MODULE_COMPLETE:
            return EndOfPool("module_complete")
        if handle.state == SessionState.EXHAUSTED:
            return EndOfPool("exhausted")
        if handle.state != SessionState.ACTIVE:
            raise ValidationError(f"session {handle.session_id} is not active")

        if handle.current_question is not None:
            return handle.current_question

        config = handle.config
        if config.mode != "module":
            limit = config.max_questions or self.settings.default_max_questions
            if len(handle.responses) >= limit:
                return self._complete(handle, "max_questions")

        if config.mode == "irt" and handle.target_skill:
            decision = handle.estimator.should_stop(handle.target_skill)
            if decision.stop:
                return self._complete(handle, decision.reason)

        subject = config.subject
        context = SelectionContext(skill_id=handle.target_skill, subject=subject)
        if config.mode == "weakness":
            context.position = len(handle.responses)
            context.progression_skill = self._default_skill(handle.estimator, subject)
        if config.mode == "module":
            section = handle.section
            subject = section.id
            mix = self.router.distribution_for(section, handle.module.module_number,
                                               handle.module.difficulty_path)
            context = SelectionContext(subject=subject, difficulty_mix=mix.as_weights())

        pool = await self.item_bank.fetch_candidates(subject=subject, exclude_ids=handle.history)
        selection = handle.selector.select_next(pool, handle.history, config.mode, context)
        if selection is None:
            handle.state = SessionState.EXHAUSTED
            handle.end_reason = "exhausted"
            logger.info("Session %s exhausted the item bank after %d questions",
                        handle.session_id, len(handle.history))
            return EndOfPool("exhausted")

        question = selection.question
        handle.selections.append({
            "question_id": question.id,
            "reason": selection.reason.value,
            "skill_id": selection.skill_id,
            "predicted_probability": selection.predicted_probability,
        })
        if selection.reason.is_fallback:
            logger.info("Session %s: %s selected %s (target skill %s)",
                        handle.session_id, selection.reason.value, question.id, selection.skill_id)
        handle.history.append(question.id)
        handle.current_question = question
        return question

    def submit_answer(self, handle: SessionHandle, question_id: str, answer_key: str,
                      time_spent_ms: int) -> AnswerOutcome:
        """
        Score the served question and update the learner model.

        Args:
            handle: Active session
            question_id: Must be the question currently served
            answer_key: Learner's choice (compared case-insensitively)
            time_spent_ms: Response time, >= 0

        Returns:
            AnswerOutcome. Persistence writes are queued, not awaited.

        Raises:
            ValidationError: nothing served, wrong question, missing answer or negative time
        """
        question = handle.current_question
        if handle.state != SessionState.ACTIVE or question is None:
            raise ValidationError("no question is awaiting an answer")
        if question.id != question_id:
            raise ValidationError(f"question {question_id} is not the question being served")
        if answer_key is None:
            raise ValidationError("answer_key is required")
        if time_spent_ms is None or time_spent_ms < 0:
            raise ValidationError(f"time_spent_ms must be >= 0, got {time_spent_ms}")

        is_correct = str(answer_key).strip().upper() == question.correct_answer_key
        estimator = handle.estimator
        params = estimator.item_parameters_for(question)
        result = estimator.record_answer(question.skill_id, is_correct, time_spent_ms, params,
                                         subject=question.subject)

        response = AdaptiveResponse(
            question_id=question.id,
            skill_id=question.skill_id,
            difficulty_label=question.difficulty_label,
            is_correct=is_correct,
            time_spent_ms=time_spent_ms,
            expected_accuracy=result.predicted_probability,
            answer_key=str(answer_key).strip().upper(),
            answered_at=datetime.now(timezone.utc),
        )
        handle.analyzer.record_response(response)
        handle.responses.append(response)
        handle.current_question = None

        state = estimator.get_proficiency(question.skill_id)
        self._queue(handle, "save_proficiency", handle.user_id, [SkillProficiency.from_dict(state.to_dict())])
        attempt = response.to_dict()
        attempt.update({"user_id": handle.user_id, "session_id": handle.session_id,
                        "theta": result.new_theta, "sigma": result.new_sigma})
        self._queue(handle, "record_attempt", attempt)

        module_result = None
        if handle.module is not None:
            handle.module.answered += 1
            if is_correct:
                handle.module.correct += 1
            if handle.module.answered >= handle.section.questions_per_module:
                module_result = self._close_module(handle)

        return AnswerOutcome(
            is_correct=is_correct,
            updated_proficiency=SkillProficiency.from_dict(state.to_dict()),
            module_result=module_result,
            estimation_error=result.error,
        )

    # ==================== Module Routing ====================

    def complete_module(self, handle: SessionHandle) -> ModuleCompletion:
        """
        Close the current module and route or score.

        A module still open (time ran out) is closed with every unanswered
        question counted as incorrect. After module 1 the continuation path is
        chosen; after the last module the section is scored and the session
        moves on to the next section or completes.
        """
        if handle.config.mode != "module" or handle.module is None:
            raise ValidationError("complete_module is only valid for module-routed sessions")
        if handle.state == SessionState.SESSION_COMPLETE:
            raise ValidationError("session is already complete")

        module = handle.module
        section = handle.section
        result = module.result or self._close_module(handle)
        handle.current_question = None

        if module.module_number < section.module_count:
            path = self.router.decide_path(result)
            handle.module = ModuleProgress(section_index=module.section_index,
                                           module_number=module.module_number + 1,
                                           difficulty_path=path)
            handle.state = SessionState.ACTIVE
            return ModuleCompletion(module_result=result, next_path=path)

        section_results = [r for r in handle.module_results if r.section == section.id]
        accuracy = self.router.section_accuracy(section_results)
        score = self.router.scale_score(accuracy, section.max_section_score)
        handle.section_scores[section.id] = score
        logger.info("Session %s section %s scored %d (accuracy %.3f)",
                    handle.session_id, section.id, score, accuracy)

        total = None
        if module.section_index + 1 < len(handle.form.sections):
            handle.module = ModuleProgress(section_index=module.section_index + 1,
                                           module_number=1, difficulty_path="baseline")
            handle.state = SessionState.ACTIVE
        else:
            total = self.router.combine_section_scores(handle.section_scores.values(),
                                                       handle.form.total_score)
            handle.total_score = total
            self._complete(handle, "test_complete")

        return ModuleCompletion(module_result=result, scaled_score=score,
                                section_complete=True, total_score=total)

    def _close_module(self, handle: SessionHandle) -> ModuleResult:
        module = handle.module
        section = handle.section
        result = self.router.build_module_result(
            section=section.id,
            module_number=module.module_number,
            correct_count=module.correct,
            total_questions=section.questions_per_module,
            difficulty_path=module.difficulty_path,
        )
        module.result = result
        handle.module_results.append(result)
        handle.state = SessionState.MODULE_COMPLETE
        return result

    # ==================== Reports ====================

    async def get_weakness_report(self, user_id: str, subject: Optional[str] = None) -> List[WeaknessPattern]:
        """Ranked weaknesses from the live session when there is one, else from storage."""
        for handle in self.sessions.values():
            if handle.user_id == user_id and handle.state != SessionState.SESSION_COMPLETE:
                return handle.analyzer.identify_weaknesses(subject=subject)

        estimator = ProficiencyEstimator(user_id=user_id, settings=self.settings)
        await self._hydrate(estimator, user_id)
        analyzer = WeaknessAnalyzer(estimator, target_accuracy=self.settings.target_accuracy,
                                    min_attempts=self.settings.weakness_min_attempts)
        return analyzer.identify_weaknesses(subject=subject)

    def get_progress_summary(self, handle: SessionHandle, subject: Optional[str] = None) -> dict:
        """Skill counts, average ability and where to focus next."""
        skills = [s for s in handle.estimator.all_skills() if subject is None or s.subject == subject]
        mastered = [s.skill_id for s in handle.estimator.all_skills() if s.mastery_achieved]
        weaknesses = handle.analyzer.identify_weaknesses(subject=subject)

        return {
            "total_skills": len(self.skill_graph.skills_for(subject)),
            "skills_practiced": len(skills),
            "skills_mastered": len([s for s in skills if s.mastery_achieved]),
            "skills_unlocked": len(self.skill_graph.unlocked_skills(mastered, subject)),
            "average_theta": sum(s.theta for s in skills) / len(skills) if skills else 0.0,
            "next_focus": weaknesses[0].skill_id if weaknesses else None,
            "weakest_areas": [w.to_dict() for w in weaknesses[:3]],
        }

    # ==================== Persistence ====================

    async def flush_persistence(self, handle: SessionHandle) -> int:
        """
        Attempt every queued write.

        Each write gets up to `persistence_retries` tries; writes that still
        fail stay queued for the next flush. Never raises.

        The queue is taken before the first await, so overlapping flushes of
        one session (background tasks, end_session) never write the same
        entry twice.

        Returns:
            Number of writes still pending, not counting writes another
            flush has in flight.
        """
        if self.store is None:
            handle.pending_writes.clear()
            return 0

        batch, handle.pending_writes = handle.pending_writes, []
        failed = []
        for write in batch:
            if not await self._attempt(write):
                failed.append(write)
        # Failed writes go back ahead of anything queued meanwhile
        handle.pending_writes[:0] = failed
        return len(handle.pending_writes)

    async def _attempt(self, write: PendingWrite) -> bool:
        for _ in range(max(1, self.settings.persistence_retries)):
            write.attempts += 1
            try:
                await getattr(self.store, write.operation)(*write.args)
                return True
            except PersistenceError as e:
                write.last_error = str(e)
                logger.warning("%s attempt %d failed: %s", write.operation, write.attempts, e)
        return False

    def _queue(self, handle: SessionHandle, operation: str, *args: Any):
        if self.store is not None:
            handle.pending_writes.append(PendingWrite(operation=operation, args=args))

    async def _hydrate(self, estimator: ProficiencyEstimator, user_id: str):
        if self.store is None:
            return
        try:
            records = await self.store.load_proficiency(user_id)
        except PersistenceError as e:
            logger.warning("Could not load proficiency for %s, starting from defaults: %s", user_id, e)
            return
        estimator.load(records)

    # ==================== Helpers ====================

    def _complete(self, handle: SessionHandle, reason: str) -> EndOfPool:
        """Terminal transition: archive the session and release it from the registry."""
        handle.state = SessionState.SESSION_COMPLETE
        handle.end_reason = reason
        handle.current_question = None
        self._archive(handle)
        self.sessions.pop(handle.session_id, None)
        logger.info("Session %s complete: %s", handle.session_id, reason)
        return EndOfPool(reason)

    def _archive(self, handle: SessionHandle) -> dict:
        """Queue the archive write once and drop the served-question history."""
        if handle.summary is None:
            summary = handle.to_dict()
            summary["weaknesses"] = [w.to_dict() for w in handle.analyzer.identify_weaknesses()]
            summary["response_summary"] = handle.analyzer.summarize(handle.responses)
            handle.summary = summary
            self._queue(handle, "archive_session",
                        handle.session_id, handle.user_id, list(handle.history), summary)
            handle.history.clear()
        return handle.summary

    def _default_skill(self, estimator: ProficiencyEstimator, subject: Optional[str]) -> Optional[str]:
        """First unlocked, unmastered skill of the subject in prerequisite order."""
        mastered = [s.skill_id for s in estimator.all_skills() if s.mastery_achieved]
        for skill_id in self.skill_graph.unlocked_skills(mastered, subject):
            if skill_id not in mastered:
                return skill_id
        return None
