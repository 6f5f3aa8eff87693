"""
Weakness Analyzer - ranks skills by how far they sit below the mastery bar.

Every answered item tells part of the story: the proficiency record says how
often a skill is missed lately, the response stream says at which difficulty
the misses happen. Together they decide which skill to drill next and at what
difficulty.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .proficiency_estimator import ProficiencyEstimator, SkillProficiency

logger = logging.getLogger(__name__)


@dataclass
class AdaptiveResponse:
    """One answered item."""
    question_id: str
    skill_id: str
    difficulty_label: str
    is_correct: bool
    time_spent_ms: int
    expected_accuracy: float  # Model probability of a correct answer when it was served
    answer_key: Optional[str] = None
    answered_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "question_id": self.question_id,
            "skill_id": self.skill_id,
            "difficulty_label": self.difficulty_label,
            "is_correct": self.is_correct,
            "time_spent_ms": self.time_spent_ms,
            "expected_accuracy": self.expected_accuracy,
            "answer_key": self.answer_key,
            "answered_at": self.answered_at.isoformat() if self.answered_at else None,
        }


@dataclass
class WeaknessPattern:
    """A ranked weakness. Derived on demand, never stored as source of truth."""
    skill_id: str
    weakness_score: float
    subject: Optional[str] = None
    attempts: int = 0
    recent_accuracy: float = 0.0
    priority: str = "low"  # "critical" | "high" | "medium" | "low"
    recommended_difficulty: str = "medium"

    def to_dict(self) -> dict:
        return {
            "skill_id": self.skill_id,
            "weakness_score": self.weakness_score,
            "subject": self.subject,
            "attempts": self.attempts,
            "recent_accuracy": self.recent_accuracy,
            "priority": self.priority,
            "recommended_difficulty": self.recommended_difficulty,
        }


@dataclass
class _MissStats:
    total: int = 0
    wrong: int = 0
    wrong_by_difficulty: Dict[str, int] = field(default_factory=lambda: {"easy": 0, "medium": 0, "hard": 0})
    total_time_ms: int = 0


class WeaknessAnalyzer:
    """
    Weakness ranking over a learner's skills.

        weakness_score = max(0, TARGET_ACCURACY - recent_accuracy)

    Only skills with at least MIN_ATTEMPTS responses are eligible; below the
    gate there is not enough evidence to call a skill weak.
    """

    TARGET_ACCURACY = 0.75
    MIN_ATTEMPTS = 3
    REVIEW_ACCURACY = 0.80  # Recent accuracy that makes a skill a review candidate

    # weakness_score -> priority
    PRIORITY_BANDS = [
        (0.40, "critical"),
        (0.25, "high"),
        (0.10, "medium"),
    ]

    def __init__(self, estimator: Optional[ProficiencyEstimator] = None,
                 target_accuracy: Optional[float] = None, min_attempts: Optional[int] = None,
                 review_accuracy: Optional[float] = None):
        self.estimator = estimator
        if target_accuracy is not None:
            self.TARGET_ACCURACY = target_accuracy
        if min_attempts is not None:
            self.MIN_ATTEMPTS = min_attempts
        if review_accuracy is not None:
            self.REVIEW_ACCURACY = review_accuracy
        self._misses: Dict[str, _MissStats] = {}

    # ==================== Ranking ====================

    def identify_weaknesses(self, all_skills: Optional[Iterable[SkillProficiency]] = None,
                            subject: Optional[str] = None) -> List[WeaknessPattern]:
        """
        Rank eligible skills by weakness score, weakest first.

        Ties go to the skill with fewer attempts. Skills at or above the target
        are not weak and are left out.
        """
        if all_skills is None:
            all_skills = self.estimator.all_skills() if self.estimator else []

        patterns = []
        for skill in all_skills:
            if subject is not None and skill.subject != subject:
                continue
            if skill.attempts < self.MIN_ATTEMPTS:
                continue

            score = max(0.0, self.TARGET_ACCURACY - skill.recent_accuracy)
            if score <= 0.0:
                continue

            priority = self._priority_for(score)
            patterns.append(WeaknessPattern(
                skill_id=skill.skill_id,
                weakness_score=score,
                subject=skill.subject,
                attempts=skill.attempts,
                recent_accuracy=skill.recent_accuracy,
                priority=priority,
                recommended_difficulty=self._recommended_difficulty(skill.skill_id, priority),
            ))

        patterns.sort(key=lambda p: (-p.weakness_score, p.attempts, p.skill_id))
        return patterns

    def get_next_skill_to_focus(self, subject: Optional[str] = None) -> Optional[str]:
        """
        The single weakest eligible skill, or None.

        None means no skill qualifies and the caller should select uniformly.
        """
        weaknesses = self.identify_weaknesses(subject=subject)
        return weaknesses[0].skill_id if weaknesses else None

    def recommended_difficulty_for(self, skill_id: str, subject: Optional[str] = None) -> Optional[str]:
        """Recommended difficulty of a ranked weak skill, None when the skill is not ranked."""
        for pattern in self.identify_weaknesses(subject=subject):
            if pattern.skill_id == skill_id:
                return pattern.recommended_difficulty
        return None

    def get_review_skills(self, subject: Optional[str] = None) -> List[str]:
        """Skills with enough attempts and recent accuracy at or above REVIEW_ACCURACY."""
        skills = self.estimator.all_skills() if self.estimator else []
        return sorted(
            s.skill_id for s in skills
            if (subject is None or s.subject == subject)
            and s.attempts >= self.MIN_ATTEMPTS
            and s.recent_accuracy >= self.REVIEW_ACCURACY
        )

    def _priority_for(self, score: float) -> str:
        for floor, label in self.PRIORITY_BANDS:
            if score >= floor:
                return label
        return "low"

    def _recommended_difficulty(self, skill_id: str, priority: str) -> str:
        stats = self._misses.get(skill_id)
        if stats is not None and stats.wrong > 0:
            return self.suggest_next_difficulty(skill_id)
        return "easy" if priority in ("critical", "high") else "medium"

    # ==================== Response Stream ====================

    def record_response(self, response: AdaptiveResponse):
        """Track misses by difficulty for a skill."""
        stats = self._misses.setdefault(response.skill_id, _MissStats())
        stats.total += 1
        stats.total_time_ms += response.time_spent_ms
        if not response.is_correct:
            stats.wrong += 1
            label = response.difficulty_label if response.difficulty_label in stats.wrong_by_difficulty else "medium"
            stats.wrong_by_difficulty[label] += 1

    def suggest_next_difficulty(self, skill_id: str) -> str:
        """
        Step difficulty from where the misses cluster:
        mostly easy misses -> medium, mostly medium -> hard, mostly hard -> hard.
        """
        stats = self._misses.get(skill_id)
        if stats is None or stats.wrong == 0:
            return "medium"

        wrong = stats.wrong_by_difficulty
        most = max(wrong.values())
        if wrong["easy"] == most:
            return "medium"
        return "hard"

    # ==================== Session Summary ====================

    def summarize(self, responses: List[AdaptiveResponse]) -> dict:
        """Pattern summary of a batch of responses."""
        if not responses:
            return {"status": "no_responses", "total": 0, "correct": 0,
                    "accuracy": 0.0, "primary_weakness": None, "miss_distribution": {}}

        correct = sum(1 for r in responses if r.is_correct)
        misses: Dict[str, int] = {}
        for r in responses:
            if not r.is_correct:
                misses[r.skill_id] = misses.get(r.skill_id, 0) + 1

        primary = max(misses, key=misses.get) if misses else None

        return {
            "status": "all_correct" if not misses else "weaknesses_detected",
            "total": len(responses),
            "correct": correct,
            "accuracy": correct / len(responses),
            "primary_weakness": primary,
            "miss_distribution": misses,
            "avg_time_ms": sum(r.time_spent_ms for r in responses) / len(responses),
        }
