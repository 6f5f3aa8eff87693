"""
Adaptive module - proficiency estimation, weakness ranking, module routing and question selection.

Components:
    - proficiency_estimator: 2PL IRT ability estimation with stopping rules
    - weakness_analyzer: Ranked weaknesses and difficulty recommendations
    - module_router: Two-stage module routing and scaled scoring
    - question_selector: Next-item selection (IRT, weakness, module mix, random)
    - skill_graph: Subject / domain / skill DAG with prerequisites
    - item_bank: Candidate question supply
    - mock_tests: Mock test forms (sections, quotas, difficulty mixes)
    - engine: Session service tying everything together
"""

from .errors import EngineError, ValidationError, EstimationError, PersistenceError
from .proficiency_estimator import ProficiencyEstimator, SkillProficiency, ItemParameters, IRTUpdateResult, StopDecision
from .weakness_analyzer import WeaknessAnalyzer, WeaknessPattern, AdaptiveResponse
from .module_router import ModuleRouter, ModuleResult
from .question_selector import QuestionSelector, Selection, SelectionContext, SelectionReason
from .skill_graph import SkillGraph
from .item_bank import ItemBank, Question
from .mock_tests import MockTestForm, SectionForm, DifficultyMix, get_mock_test
from .engine import (
    AdaptiveEngine,
    AnswerOutcome,
    EndOfPool,
    ModuleCompletion,
    SessionConfig,
    SessionHandle,
    SessionState,
)

__all__ = [
    "EngineError",
    "ValidationError",
    "EstimationError",
    "PersistenceError",
    "ProficiencyEstimator",
    "SkillProficiency",
    "ItemParameters",
    "IRTUpdateResult",
    "StopDecision",
    "WeaknessAnalyzer",
    "WeaknessPattern",
    "AdaptiveResponse",
    "ModuleRouter",
    "ModuleResult",
    "QuestionSelector",
    "Selection",
    "SelectionContext",
    "SelectionReason",
    "SkillGraph",
    "ItemBank",
    "Question",
    "MockTestForm",
    "SectionForm",
    "DifficultyMix",
    "get_mock_test",
    "AdaptiveEngine",
    "AnswerOutcome",
    "EndOfPool",
    "ModuleCompletion",
    "SessionConfig",
    "SessionHandle",
    "SessionState",
]
