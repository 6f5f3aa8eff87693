"""
Proficiency Estimator - per-skill ability tracking with a 2PL IRT model.

Features:
    - 2-Parameter Logistic (2PL) response model
    - Bayesian-modal ability step scaled by the current uncertainty
    - Precision accumulation for the uncertainty (sigma never grows)
    - Stopping rules (convergence, item budget, early mastery)
    - Time decay when state is hydrated from storage
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, Iterable, List, Optional

from .errors import EstimationError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemParameters:
    """2PL item parameters: discrimination (a) and difficulty (b)."""
    a: float
    b: float


@dataclass
class SkillProficiency:
    """Ability state for a single skill."""
    skill_id: str
    subject: Optional[str] = None  # "math" | "verbal"
    theta: float = 0.0
    sigma: float = 1.0
    attempts: int = 0
    correct_count: int = 0
    streak: int = 0  # Current run of correct answers
    recent_accuracy: float = 0.0
    recent_results: Deque[bool] = field(default_factory=deque)
    last_updated: Optional[datetime] = None
    mastery_achieved: bool = False
    mastery_timestamp: Optional[datetime] = None

    @property
    def mastery_level(self) -> str:
        if self.mastery_achieved:
            return "mastered"
        if self.attempts >= 5 and self.recent_accuracy >= 0.6:
            return "practicing"
        if self.attempts >= 2:
            return "learning"
        return "none"

    def to_dict(self) -> dict:
        """Serialize for storage."""
        return {
            "skill_id": self.skill_id,
            "subject": self.subject,
            "theta": self.theta,
            "sigma": self.sigma,
            "attempts": self.attempts,
            "correct_count": self.correct_count,
            "streak": self.streak,
            "recent_accuracy": self.recent_accuracy,
            "recent_results": list(self.recent_results),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "mastery_achieved": self.mastery_achieved,
            "mastery_timestamp": self.mastery_timestamp.isoformat() if self.mastery_timestamp else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SkillProficiency":
        """Deserialize from storage."""
        return cls(
            skill_id=data["skill_id"],
            subject=data.get("subject"),
            theta=float(data.get("theta", 0.0)),
            sigma=float(data.get("sigma", 1.0)),
            attempts=int(data.get("attempts", 0)),
            correct_count=int(data.get("correct_count", 0)),
            streak=int(data.get("streak", 0)),
            recent_accuracy=float(data.get("recent_accuracy", 0.0)),
            recent_results=deque(bool(r) for r in data.get("recent_results", [])),
            last_updated=_parse_timestamp(data.get("last_updated")),
            mastery_achieved=bool(data.get("mastery_achieved", False)),
            mastery_timestamp=_parse_timestamp(data.get("mastery_timestamp")),
        )


@dataclass
class IRTUpdateResult:
    """Outcome of one recorded answer."""
    new_theta: float
    new_sigma: float
    predicted_probability: float
    information_gain: float
    error: Optional[EstimationError] = None


@dataclass
class StopDecision:
    stop: bool
    reason: Optional[str] = None  # "converged" | "budget_exhausted" | "mastery"


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProficiencyEstimator:
    """
    2PL IRT ability estimator, one instance per learner session.

        P(correct) = 1 / (1 + exp(-a * (theta - b)))

    Ability update (single Bayesian-modal step, Gaussian prior N(theta, sigma^2)):
        theta' = theta + clip(sigma^2 * a * (r - P), +-MAX_THETA_STEP)

    Uncertainty (precision accumulation with Fisher information I = a^2 P (1-P)):
        sigma' = max(MIN_SIGMA, sigma / sqrt(1 + I * sigma^2))
    """

    # Priors
    DEFAULT_THETA = 0.0
    DEFAULT_SIGMA = 1.0
    MIN_SIGMA = 0.2
    MAX_SIGMA = 2.0
    MIN_THETA = -3.0
    MAX_THETA = 3.0

    # Update
    MAX_THETA_STEP = 0.75  # Logits per item

    # Stopping rules
    CONVERGENCE_THRESHOLD = 0.3
    MAX_ITEMS_PER_SKILL = 40
    MASTERY_THETA = 1.5
    MASTERY_STREAK = 3

    # Mastery flag
    MASTERY_SIGMA = 0.35
    MASTERY_ACCURACY = 0.75
    RECENT_WINDOW = 8

    # Decay applied on load for unmastered skills
    THETA_DECAY_PER_DAY = 0.02

    # Difficulty label -> (a, b)
    DIFFICULTY_PARAMETERS = {
        "easy": ItemParameters(a=0.8, b=-1.0),
        "medium": ItemParameters(a=1.0, b=0.0),
        "hard": ItemParameters(a=1.2, b=1.0),
    }

    def __init__(self, user_id: Optional[str] = None, settings=None):
        self.user_id = user_id
        self.skills: Dict[str, SkillProficiency] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        if settings is not None:
            self.DEFAULT_THETA = settings.prior_theta
            self.DEFAULT_SIGMA = settings.prior_sigma
            self.MIN_SIGMA = settings.min_sigma
            self.MAX_SIGMA = settings.max_sigma
            self.MAX_THETA_STEP = settings.max_theta_step
            self.CONVERGENCE_THRESHOLD = settings.convergence_threshold
            self.MAX_ITEMS_PER_SKILL = settings.max_items_per_skill
            self.MASTERY_THETA = settings.mastery_theta
            self.MASTERY_SIGMA = settings.mastery_sigma
            self.MASTERY_STREAK = settings.mastery_streak
            self.RECENT_WINDOW = settings.recent_window
            self.THETA_DECAY_PER_DAY = settings.theta_decay_per_day

    # ==================== Item Model ====================

    @classmethod
    def get_item_parameters(cls, difficulty_label: str) -> ItemParameters:
        """
        Fixed difficulty label -> item parameter mapping.

        Unknown labels resolve to the medium parameters.
        """
        label = (difficulty_label or "").strip().lower()
        params = cls.DIFFICULTY_PARAMETERS.get(label)
        if params is None:
            logger.warning("Unknown difficulty label %r, using medium item parameters", difficulty_label)
            return cls.DIFFICULTY_PARAMETERS["medium"]
        return params

    @classmethod
    def item_parameters_for(cls, question) -> ItemParameters:
        """Calibrated parameters when the item bank has valid ones, else the label mapping."""
        a = getattr(question, "discrimination", None)
        b = getattr(question, "difficulty", None)
        if a is not None and b is not None:
            try:
                cls.validate_item_parameters(ItemParameters(a=float(a), b=float(b)))
                return ItemParameters(a=float(a), b=float(b))
            except ValidationError:
                logger.warning("Item %s has invalid calibration (a=%s, b=%s), using label defaults",
                               getattr(question, "id", "?"), a, b)
        return cls.get_item_parameters(getattr(question, "difficulty_label", "medium"))

    @staticmethod
    def validate_item_parameters(item_params: ItemParameters) -> None:
        if item_params is None:
            raise ValidationError("item parameters are required")
        if not math.isfinite(item_params.a) or item_params.a <= 0:
            raise ValidationError(f"discrimination must be > 0, got {item_params.a}")
        if not math.isfinite(item_params.b):
            raise ValidationError(f"difficulty must be finite, got {item_params.b}")

    @staticmethod
    def probability_correct(theta: float, item_params: ItemParameters) -> float:
        """2PL probability of a correct response."""
        exponent = -item_params.a * (theta - item_params.b)
        # exp overflows past ~709; the probability is 0 there anyway
        if exponent > 700:
            return 0.0
        return 1.0 / (1.0 + math.exp(exponent))

    @staticmethod
    def fisher_information(probability: float, item_params: ItemParameters) -> float:
        return item_params.a ** 2 * probability * (1.0 - probability)

    def predict_probability(self, skill_id: str, item_params: ItemParameters) -> float:
        """Probability of a correct answer at the current ability, without side effects."""
        self.validate_item_parameters(item_params)
        state = self.skills.get(skill_id)
        theta = state.theta if state is not None else self.DEFAULT_THETA
        return self.probability_correct(theta, item_params)

    # ==================== Response Processing ====================

    def record_answer(self, skill_id: str, is_correct: bool, time_spent_ms: int,
                      item_params: ItemParameters, subject: Optional[str] = None) -> IRTUpdateResult:
        """
        Record one response for a skill and update its ability estimate.

        Args:
            skill_id: Skill the item measures
            is_correct: Whether the learner answered correctly
            time_spent_ms: Response time, must be >= 0
            item_params: 2PL parameters of the answered item (a > 0)
            subject: Subject of the skill, stored on first sight

        Returns:
            IRTUpdateResult with the new theta/sigma, the probability predicted
            before the update and the Fisher information of the item. On
            numeric failure theta/sigma are unchanged and `error` is set.

        Raises:
            ValidationError: bad item parameters or negative response time
        """
        self.validate_item_parameters(item_params)
        if time_spent_ms is None or time_spent_ms < 0:
            raise ValidationError(f"time_spent_ms must be >= 0, got {time_spent_ms}")

        with self._lock_for(skill_id):
            state = self._get_or_create(skill_id, subject)
            theta, sigma = state.theta, state.sigma

            error = None
            try:
                p, info, new_theta, new_sigma = self._step(skill_id, theta, sigma, is_correct, item_params)
            except EstimationError as e:
                logger.warning("Estimation failed, keeping previous estimate: %s", e)
                error = e
                p = self._safe_probability(theta, item_params)
                info = 0.0
                new_theta, new_sigma = theta, sigma

            state.theta = new_theta
            state.sigma = new_sigma
            self._record_outcome(state, is_correct)

            return IRTUpdateResult(
                new_theta=new_theta,
                new_sigma=new_sigma,
                predicted_probability=p,
                information_gain=info,
                error=error,
            )

    def _step(self, skill_id: str, theta: float, sigma: float, is_correct: bool,
              item_params: ItemParameters):
        try:
            p = self.probability_correct(theta, item_params)
            observed = 1.0 if is_correct else 0.0

            step = sigma ** 2 * item_params.a * (observed - p)
            step = max(-self.MAX_THETA_STEP, min(self.MAX_THETA_STEP, step))
            new_theta = max(self.MIN_THETA, min(self.MAX_THETA, theta + step))

            info = self.fisher_information(p, item_params)
            shrunk = sigma / math.sqrt(1.0 + info * sigma ** 2)
            new_sigma = min(sigma, max(self.MIN_SIGMA, shrunk))
        except (ArithmeticError, ValueError) as e:
            # Float overflow on extreme discrimination (a ** 2 past ~1e154)
            raise EstimationError(skill_id, f"arithmetic failure ({e})") from e

        for name, value in (("probability", p), ("theta", new_theta), ("sigma", new_sigma), ("information", info)):
            if not math.isfinite(value):
                raise EstimationError(skill_id, f"non-finite {name} ({value})")

        return p, info, new_theta, new_sigma

    def _safe_probability(self, theta: float, item_params: ItemParameters) -> float:
        try:
            p = self.probability_correct(theta, item_params)
        except (ArithmeticError, ValueError):
            return float("nan")
        return p

    def _record_outcome(self, state: SkillProficiency, is_correct: bool) -> None:
        """Attempt counters, rolling accuracy and mastery flag."""
        now = _utcnow()
        state.attempts += 1
        state.last_updated = now

        if is_correct:
            state.correct_count += 1
            state.streak += 1
        else:
            state.streak = 0

        state.recent_results.append(bool(is_correct))
        while len(state.recent_results) > self.RECENT_WINDOW:
            state.recent_results.popleft()
        state.recent_accuracy = sum(state.recent_results) / len(state.recent_results)

        if not state.mastery_achieved and self.check_mastery(state):
            state.mastery_achieved = True
            state.mastery_timestamp = now
            logger.info("Mastery achieved for skill %s (theta=%.2f, sigma=%.2f)",
                        state.skill_id, state.theta, state.sigma)

    def check_mastery(self, state: SkillProficiency) -> bool:
        """
        High ability with a confident estimate. Once the recent window is full,
        recent accuracy must also clear the bar.
        """
        if state.mastery_achieved:
            return True

        confident = state.theta >= self.MASTERY_THETA and state.sigma <= self.MASTERY_SIGMA
        if len(state.recent_results) >= self.RECENT_WINDOW:
            return confident and state.recent_accuracy >= self.MASTERY_ACCURACY
        return confident

    # ==================== Stopping Rules ====================

    def should_stop(self, skill_id: str) -> StopDecision:
        """Check whether testing this skill can stop."""
        state = self.skills.get(skill_id)
        if state is None:
            return StopDecision(stop=False)

        if state.sigma <= self.CONVERGENCE_THRESHOLD:
            return StopDecision(stop=True, reason="converged")

        if state.attempts >= self.MAX_ITEMS_PER_SKILL:
            return StopDecision(stop=True, reason="budget_exhausted")

        if state.theta >= self.MASTERY_THETA and state.streak >= self.MASTERY_STREAK:
            return StopDecision(stop=True, reason="mastery")

        return StopDecision(stop=False)

    # ==================== State Management ====================

    def _lock_for(self, skill_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(skill_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[skill_id] = lock
            return lock

    def _get_or_create(self, skill_id: str, subject: Optional[str] = None) -> SkillProficiency:
        state = self.skills.get(skill_id)
        if state is None:
            state = SkillProficiency(
                skill_id=skill_id,
                subject=subject,
                theta=self.DEFAULT_THETA,
                sigma=self.DEFAULT_SIGMA,
            )
            self.skills[skill_id] = state
        elif state.subject is None and subject is not None:
            state.subject = subject
        return state

    def get_proficiency(self, skill_id: str) -> Optional[SkillProficiency]:
        return self.skills.get(skill_id)

    def all_skills(self) -> List[SkillProficiency]:
        return list(self.skills.values())

    def snapshot(self, skill_ids: Optional[Iterable[str]] = None) -> List[dict]:
        """Serialized copies of skill states (all, or the given skills)."""
        if skill_ids is None:
            return [s.to_dict() for s in self.skills.values()]
        return [self.skills[sid].to_dict() for sid in skill_ids if sid in self.skills]

    def load(self, records: Iterable[SkillProficiency], now: Optional[datetime] = None) -> None:
        """
        Hydrate from stored records.

        Unmastered skills lose THETA_DECAY_PER_DAY of ability for every day since
        they were last updated. Sigma is clamped into [MIN_SIGMA, MAX_SIGMA].
        """
        now = now or _utcnow()
        for record in records:
            theta = record.theta
            if record.last_updated is not None and not record.mastery_achieved:
                last = record.last_updated
                if last.tzinfo is None:
                    last = last.replace(tzinfo=timezone.utc)
                days_since = max(0.0, (now - last).total_seconds() / 86400)
                theta -= self.THETA_DECAY_PER_DAY * days_since

            record.theta = max(self.MIN_THETA, min(self.MAX_THETA, theta))
            record.sigma = max(self.MIN_SIGMA, min(self.MAX_SIGMA, record.sigma))
            self.skills[record.skill_id] = record
