"""
Mock test forms for the two-stage digital SAT format.

Each section runs a baseline module 1 followed by an easy or hard module 2.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class DifficultyMix:
    easy: float
    medium: float
    hard: float

    def as_weights(self) -> Dict[str, float]:
        return {"easy": self.easy, "medium": self.medium, "hard": self.hard}


@dataclass(frozen=True)
class SectionForm:
    id: str  # Subject of the section: "verbal" | "math"
    title: str
    module_count: int
    module_time_seconds: int
    questions_per_module: int
    max_section_score: int
    domains: List[str]
    module1_mix: DifficultyMix
    path_mixes: Dict[str, DifficultyMix]  # "easy" | "hard" -> mix for module 2


@dataclass(frozen=True)
class MockTestForm:
    id: str
    title: str
    total_score: int
    sections: List[SectionForm] = field(default_factory=list)

    def section(self, section_id: str) -> Optional[SectionForm]:
        for section in self.sections:
            if section.id == section_id:
                return section
        return None


VERBAL_SECTION = SectionForm(
    id="verbal",
    title="Reading & Writing",
    module_count=2,
    module_time_seconds=32 * 60,
    questions_per_module=27,
    max_section_score=800,
    domains=[
        "Information and Ideas",
        "Craft and Structure",
        "Expression of Ideas",
        "Standard English Conventions",
    ],
    module1_mix=DifficultyMix(easy=0.3, medium=0.5, hard=0.2),
    path_mixes={
        "easy": DifficultyMix(easy=0.6, medium=0.4, hard=0.0),
        "hard": DifficultyMix(easy=0.0, medium=0.2, hard=0.8),
    },
)

MATH_SECTION = SectionForm(
    id="math",
    title="Math",
    module_count=2,
    module_time_seconds=35 * 60,
    questions_per_module=22,
    max_section_score=800,
    domains=[
        "Algebra",
        "Advanced Math",
        "Problem Solving & Data Analysis",
        "Geometry and Trigonometry",
    ],
    module1_mix=DifficultyMix(easy=0.35, medium=0.45, hard=0.2),
    path_mixes={
        "easy": DifficultyMix(easy=0.55, medium=0.45, hard=0.0),
        "hard": DifficultyMix(easy=0.0, medium=0.25, hard=0.75),
    },
)

MOCK_TESTS: Dict[str, MockTestForm] = {
    "verbal-focus": MockTestForm(
        id="verbal-focus",
        title="Reading & Writing Mock Test",
        total_score=800,
        sections=[VERBAL_SECTION],
    ),
    "math-focus": MockTestForm(
        id="math-focus",
        title="Math Mock Test",
        total_score=800,
        sections=[MATH_SECTION],
    ),
    "digital-sat-1": MockTestForm(
        id="digital-sat-1",
        title="Full Digital SAT Mock Test",
        total_score=1600,
        sections=[VERBAL_SECTION, MATH_SECTION],
    ),
}


def get_mock_test(form_id: str) -> Optional[MockTestForm]:
    return MOCK_TESTS.get(form_id)
