"""
Central settings for the adaptive testing engine.

Values come from environment variables (a local `.env` is loaded first).
Every tunable constant of the estimator, analyzer, router and selector lives
here so deployments can calibrate test difficulty curves without code changes.
"""

import os
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    service_name: str = "adaptive-practice-engine"
    version: str = "1.0.0"
    log_level: str = "INFO"

    # Persistence ("redis" or "memory")
    persistence_backend: str = "redis"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    persistence_retries: int = 3

    # Item bank
    item_bank_dir: str = "data/items"
    skill_graph_path: str = "data/skill_graph.json"

    # Proficiency estimation (2PL)
    prior_theta: float = 0.0
    prior_sigma: float = 1.0
    min_sigma: float = 0.2
    max_sigma: float = 2.0
    max_theta_step: float = 0.75
    convergence_threshold: float = 0.3
    max_items_per_skill: int = 40
    mastery_theta: float = 1.5
    mastery_sigma: float = 0.35
    mastery_streak: int = 3
    recent_window: int = 8
    theta_decay_per_day: float = 0.02

    # Weakness analysis
    target_accuracy: float = 0.75
    weakness_min_attempts: int = 3
    review_accuracy: float = 0.80

    # Question selection
    irt_target_probability: float = 0.55
    selection_seed: int = 42
    default_difficulty_mix: Dict[str, float] = Field(
        default_factory=lambda: {"easy": 0.3, "medium": 0.5, "hard": 0.2}
    )
    default_max_questions: int = 20
    # Weakness sessions: share of focus, progression and review questions
    weakness_session_shares: Dict[str, float] = Field(
        default_factory=lambda: {"weakness": 0.7, "progression": 0.2, "review": 0.1}
    )

    # Module routing (section -> performance needed for the hard path)
    routing_thresholds: Dict[str, float] = Field(
        default_factory=lambda: {"verbal": 0.70, "math": 0.75}
    )
    default_routing_threshold: float = 0.70  # Sections without their own threshold

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        overrides = {}
        env_map = {
            "LOG_LEVEL": "log_level",
            "PERSISTENCE_BACKEND": "persistence_backend",
            "REDIS_HOST": "redis_host",
            "REDIS_PORT": "redis_port",
            "REDIS_PASSWORD": "redis_password",
            "REDIS_DB": "redis_db",
            "PERSISTENCE_RETRIES": "persistence_retries",
            "ITEM_BANK_DIR": "item_bank_dir",
            "SKILL_GRAPH_PATH": "skill_graph_path",
            "CONVERGENCE_THRESHOLD": "convergence_threshold",
            "MAX_ITEMS_PER_SKILL": "max_items_per_skill",
            "MASTERY_THETA": "mastery_theta",
            "TARGET_ACCURACY": "target_accuracy",
            "IRT_TARGET_PROBABILITY": "irt_target_probability",
            "SELECTION_SEED": "selection_seed",
        }
        for env_name, field_name in env_map.items():
            value = os.getenv(env_name)
            if value is not None and value != "":
                overrides[field_name] = value

        verbal = os.getenv("VERBAL_ROUTING_THRESHOLD")
        math_ = os.getenv("MATH_ROUTING_THRESHOLD")
        if verbal or math_:
            thresholds = dict(cls().routing_thresholds)
            if verbal:
                thresholds["verbal"] = float(verbal)
            if math_:
                thresholds["math"] = float(math_)
            overrides["routing_thresholds"] = thresholds

        return cls(**overrides)


settings = Settings.from_env()
