"""
Module Router - two-stage multistage test routing and scaled scoring.

Features:
    - Path decision after module 1 (easy or hard continuation)
    - Piecewise-linear raw accuracy -> scaled section score
    - Section and test totals with caps
    - Difficulty mix lookup per module from the mock test form
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from config import settings as default_settings

from .errors import ValidationError
from .mock_tests import DifficultyMix, SectionForm

logger = logging.getLogger(__name__)

DIFFICULTY_PATHS = ("baseline", "easy", "hard")


@dataclass(frozen=True)
class ModuleResult:
    """Outcome of one module. Immutable once built."""
    section: str
    module_number: int
    correct_count: int
    total_questions: int
    difficulty_path: str  # "baseline" | "easy" | "hard"

    @property
    def performance(self) -> float:
        return self.correct_count / self.total_questions

    def to_dict(self) -> dict:
        return {
            "section": self.section,
            "module_number": self.module_number,
            "correct_count": self.correct_count,
            "total_questions": self.total_questions,
            "performance": self.performance,
            "difficulty_path": self.difficulty_path,
        }


class ModuleRouter:
    """
    Routes module 2 and converts accuracy to the 200-800 style scale.

    Scale bands (accuracy -> score out of 800):
        [0.90, 1.00] -> 750..800
        [0.80, 0.90) -> 700..740
        [0.70, 0.80) -> 650..690
        [0.60, 0.70) -> 600..640
        [0.00, 0.60) -> 400..600
    """

    SCALE_MAX = 800

    # (lower bound, base score, points across the band, band width)
    SCALE_BANDS = [
        (0.90, 750, 50, 0.10),
        (0.80, 700, 40, 0.10),
        (0.70, 650, 40, 0.10),
        (0.60, 600, 40, 0.10),
    ]
    FLOOR_BASE = 400
    FLOOR_SPAN = 200
    FLOOR_WIDTH = 0.60

    def __init__(self, thresholds: Optional[Dict[str, float]] = None,
                 default_threshold: Optional[float] = None):
        self.thresholds = dict(thresholds or default_settings.routing_thresholds)
        if default_threshold is None:
            default_threshold = default_settings.default_routing_threshold
        self.default_threshold = default_threshold

    # ==================== Routing ====================

    def threshold_for(self, section: str) -> float:
        return self.thresholds.get(section, self.default_threshold)

    def decide_path(self, module_result: ModuleResult, threshold: Optional[float] = None) -> str:
        """
        Hard path when module 1 performance reaches the threshold (inclusive),
        easy path otherwise.
        """
        if threshold is None:
            threshold = self.threshold_for(module_result.section)
        path = "hard" if module_result.performance >= threshold else "easy"
        logger.info("Section %s module %d: %d/%d (%.3f) -> %s path",
                    module_result.section, module_result.module_number,
                    module_result.correct_count, module_result.total_questions,
                    module_result.performance, path)
        return path

    def build_module_result(self, section: str, module_number: int, correct_count: int,
                            total_questions: int, difficulty_path: str) -> ModuleResult:
        """Validate counts and build the immutable module record."""
        if total_questions <= 0:
            raise ValidationError(f"total_questions must be > 0, got {total_questions}")
        if correct_count < 0 or correct_count > total_questions:
            raise ValidationError(
                f"correct_count must be within [0, {total_questions}], got {correct_count}")
        if difficulty_path not in DIFFICULTY_PATHS:
            raise ValidationError(f"unknown difficulty path {difficulty_path!r}")
        if module_number < 1:
            raise ValidationError(f"module_number must be >= 1, got {module_number}")
        return ModuleResult(
            section=section,
            module_number=module_number,
            correct_count=correct_count,
            total_questions=total_questions,
            difficulty_path=difficulty_path,
        )

    # ==================== Scoring ====================

    def scale_score(self, overall_accuracy: float, max_section_score: int = SCALE_MAX) -> int:
        """
        Map raw section accuracy onto the scaled score.

        Args:
            overall_accuracy: Pooled accuracy across both modules, in [0, 1]
            max_section_score: Cap of the section (800 for a full SAT section)

        Returns:
            Integer score in [0, max_section_score], rounded half up.

        Raises:
            ValidationError: accuracy is NaN or outside [0, 1]
        """
        if overall_accuracy is None or math.isnan(overall_accuracy):
            raise ValidationError("accuracy must be a number")
        if overall_accuracy < 0.0 or overall_accuracy > 1.0:
            raise ValidationError(f"accuracy must be within [0, 1], got {overall_accuracy}")

        scaled = None
        for lower, base, span, width in self.SCALE_BANDS:
            if overall_accuracy >= lower:
                scaled = base + (overall_accuracy - lower) / width * span
                break
        if scaled is None:
            scaled = self.FLOOR_BASE + overall_accuracy / self.FLOOR_WIDTH * self.FLOOR_SPAN

        value = scaled / self.SCALE_MAX * max_section_score
        value = max(0.0, min(float(max_section_score), value))
        return int(math.floor(value + 0.5))

    @staticmethod
    def combine_section_scores(section_scores: Iterable[int], total_cap: int) -> int:
        """Sum of section scores, capped at the test total."""
        total = sum(section_scores)
        return max(0, min(total_cap, total))

    @staticmethod
    def section_accuracy(results: Iterable[ModuleResult]) -> float:
        """Correct over total, pooled across the section's modules."""
        results = list(results)
        total = sum(r.total_questions for r in results)
        if total == 0:
            return 0.0
        return sum(r.correct_count for r in results) / total

    # ==================== Test Form ====================

    @staticmethod
    def distribution_for(section: SectionForm, module_number: int, path: str = "baseline") -> DifficultyMix:
        """Difficulty mix for a module: module 1 is baseline, module 2 follows the path."""
        if module_number == 1 or path == "baseline":
            return section.module1_mix
        mix = section.path_mixes.get(path)
        if mix is None:
            raise ValidationError(f"section {section.id} has no {path!r} path")
        return mix
