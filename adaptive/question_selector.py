"""
Question Selector - picks the next item from a candidate pool.

Strategies:
    - irt: item whose predicted success probability is closest to the target
    - weakness: weakness-session split of focus / progression / review
    - module: difficulty-mix sampling for module-routed mock tests
    - random: uniform over unseen items

Weakness sessions (no pinned skill) cycle through SHARE_CYCLE slots divided by
the session shares, 0.7 / 0.2 / 0.1 by default:
    - focus: weakest skill at the analyzer's recommended difficulty
    - progression: hard items on the next unlocked, unmastered skill
    - review: skills already answered well, kept fresh

Every selection carries a reason so fallbacks can be audited.
"""

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from config import settings as default_settings

from .errors import EstimationError, ValidationError
from .item_bank import Question
from .proficiency_estimator import ProficiencyEstimator
from .weakness_analyzer import WeaknessAnalyzer

logger = logging.getLogger(__name__)

DIFFICULTY_LABELS = ("easy", "medium", "hard")
SESSION_PARTS = ("weakness", "progression", "review")


class SelectionReason(str, Enum):
    WEAKNESS = "weakness"
    PROGRESSION = "progression"
    REVIEW = "review"
    IRT = "irt"
    MODULE_MIX = "module_mix"
    RANDOM = "random"
    FALLBACK_RANDOM = "fallback_random"
    FALLBACK_ERROR = "fallback_error"

    @property
    def is_fallback(self) -> bool:
        return self in (SelectionReason.FALLBACK_RANDOM, SelectionReason.FALLBACK_ERROR)


@dataclass
class Selection:
    question: Question
    reason: SelectionReason
    skill_id: Optional[str] = None  # Skill the strategy targeted, if any
    predicted_probability: Optional[float] = None


@dataclass
class SelectionContext:
    skill_id: Optional[str] = None
    subject: Optional[str] = None
    difficulty_mix: Optional[Dict[str, float]] = None
    position: int = 0  # Questions answered so far in the session
    progression_skill: Optional[str] = None  # Next unlocked, unmastered skill


class QuestionSelector:
    """
    Next-item selection over an already-fetched candidate pool.

    Items in the session history are never returned. Target probability,
    difficulty mix and session shares default to the values in config.
    """

    MODES = ("irt", "weakness", "module", "random")
    SHARE_CYCLE = 10

    def __init__(self, estimator: Optional[ProficiencyEstimator] = None,
                 analyzer: Optional[WeaknessAnalyzer] = None,
                 rng: Optional[random.Random] = None,
                 target_probability: Optional[float] = None,
                 difficulty_mix: Optional[Dict[str, float]] = None,
                 session_shares: Optional[Dict[str, float]] = None):
        self.estimator = estimator
        self.analyzer = analyzer
        self.rng = rng or random.Random()
        if target_probability is None:
            target_probability = default_settings.irt_target_probability
        self.target_probability = target_probability
        self.difficulty_mix = dict(difficulty_mix or default_settings.default_difficulty_mix)
        self.session_shares = dict(session_shares or default_settings.weakness_session_shares)

    def select_next(self, candidate_pool: Iterable[Question], session_history: Iterable[str],
                    mode: str = "random", context: Optional[SelectionContext] = None) -> Optional[Selection]:
        """
        Select the next question.

        Args:
            candidate_pool: Items from the bank
            session_history: IDs already served this session
            mode: "irt" | "weakness" | "module" | "random"
            context: Target skill / subject / difficulty mix for the strategy

        Returns:
            Selection, or None when nothing unseen is left.
        """
        if mode not in self.MODES:
            raise ValidationError(f"unknown selection mode {mode!r}")

        context = context or SelectionContext()
        seen = set(session_history)
        pool = [q for q in candidate_pool if q.id not in seen]
        if context.subject is not None:
            pool = [q for q in pool if q.subject is None or q.subject == context.subject]
        if not pool:
            return None

        if mode == "irt":
            return self._select_irt(pool, context)
        if mode == "weakness":
            return self._select_weakness(pool, context)
        if mode == "module":
            question = self._sample_by_mix(pool, context.difficulty_mix or self.difficulty_mix)
            return Selection(question=question, reason=SelectionReason.MODULE_MIX)
        return Selection(question=self.rng.choice(pool), reason=SelectionReason.RANDOM)

    # ==================== Strategies ====================

    def _select_irt(self, pool: List[Question], context: SelectionContext) -> Selection:
        skill_id = context.skill_id
        skill_pool = [q for q in pool if q.skill_id == skill_id] if skill_id else []
        if not skill_pool or self.estimator is None:
            logger.debug("No IRT candidates for skill %s, selecting at random", skill_id)
            return Selection(question=self.rng.choice(pool),
                             reason=SelectionReason.FALLBACK_RANDOM, skill_id=skill_id)

        try:
            scored = []
            for q in skill_pool:
                p = self.estimator.predict_probability(skill_id, self.estimator.item_parameters_for(q))
                scored.append((abs(p - self.target_probability), p, q))
        except (EstimationError, ValidationError, ArithmeticError) as e:
            logger.warning("Probability prediction failed for skill %s: %s", skill_id, e)
            return Selection(question=self.rng.choice(pool),
                             reason=SelectionReason.FALLBACK_ERROR, skill_id=skill_id)

        best = min(distance for distance, _, _ in scored)
        # Exact float ties only
        closest = [(p, q) for distance, p, q in scored if distance == best]
        p, question = self.rng.choice(closest)
        return Selection(question=question, reason=SelectionReason.IRT,
                         skill_id=skill_id, predicted_probability=p)

    def _select_weakness(self, pool: List[Question], context: SelectionContext) -> Selection:
        # A pinned skill is drilled on every slot
        if context.skill_id is None:
            part = self.session_part(context.position)
            selection = None
            if part == "progression":
                selection = self._select_progression(pool, context)
            elif part == "review":
                selection = self._select_review(pool, context)
            if selection is not None:
                return selection
        return self._select_focus(pool, context)

    def session_part(self, position: int) -> str:
        """
        Part of a weakness session a question position falls in.

        Positions cycle through SHARE_CYCLE slots split by the normalized
        shares; with 0.7 / 0.2 / 0.1 slots 0-6 are focus, 7-8 progression
        and 9 review.
        """
        total = sum(self.session_shares.get(part, 0.0) for part in SESSION_PARTS) or 1.0
        slot = position % self.SHARE_CYCLE
        bound = 0
        for part in SESSION_PARTS:
            bound += round(self.session_shares.get(part, 0.0) / total * self.SHARE_CYCLE)
            if slot < bound:
                return part
        return "weakness"

    def _select_focus(self, pool: List[Question], context: SelectionContext) -> Selection:
        skill_id = context.skill_id
        if skill_id is None and self.analyzer is not None:
            skill_id = self.analyzer.get_next_skill_to_focus(subject=context.subject)
        if skill_id is None:
            return Selection(question=self.rng.choice(pool), reason=SelectionReason.FALLBACK_RANDOM)

        skill_pool = [q for q in pool if q.skill_id == skill_id] or pool
        recommended = None
        if self.analyzer is not None:
            recommended = self.analyzer.recommended_difficulty_for(skill_id, subject=context.subject)
        matching = [q for q in skill_pool if q.difficulty_label == recommended]
        if matching:
            question = self.rng.choice(matching)
        else:
            question = self._sample_by_mix(skill_pool, context.difficulty_mix or self.difficulty_mix)
        return Selection(question=question, reason=SelectionReason.WEAKNESS, skill_id=skill_id)

    def _select_progression(self, pool: List[Question], context: SelectionContext) -> Optional[Selection]:
        skill_id = context.progression_skill
        if skill_id is None:
            return None
        hard = [q for q in pool if q.skill_id == skill_id and q.difficulty_label == "hard"]
        if not hard:
            return None
        return Selection(question=self.rng.choice(hard), reason=SelectionReason.PROGRESSION, skill_id=skill_id)

    def _select_review(self, pool: List[Question], context: SelectionContext) -> Optional[Selection]:
        if self.analyzer is None:
            return None
        strong = set(self.analyzer.get_review_skills(subject=context.subject))
        review_pool = [q for q in pool if q.skill_id in strong]
        if not review_pool:
            return None
        question = self.rng.choice(review_pool)
        return Selection(question=question, reason=SelectionReason.REVIEW, skill_id=question.skill_id)

    def _sample_by_mix(self, pool: List[Question], mix: Dict[str, float]) -> Question:
        """Draw a difficulty label from the mix (renormalized over labels present), then an item."""
        by_label: Dict[str, List[Question]] = {}
        for q in pool:
            label = q.difficulty_label if q.difficulty_label in DIFFICULTY_LABELS else "medium"
            by_label.setdefault(label, []).append(q)

        labels = [label for label in DIFFICULTY_LABELS if label in by_label and mix.get(label, 0) > 0]
        if not labels:
            return self.rng.choice(pool)

        weights = [mix[label] for label in labels]
        label = self.rng.choices(labels, weights=weights, k=1)[0]
        return self.rng.choice(by_label[label])
