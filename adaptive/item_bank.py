"""
Item Bank - candidate question supply.

The engine only depends on `fetch_candidates`; this in-memory bank loads
questions from JSON files and tags each one with the subject and domain of its
skill. Any other bank exposing the same coroutine can be swapped in.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .skill_graph import SkillGraph

logger = logging.getLogger(__name__)


@dataclass
class Question:
    """Minimum item record the engine needs."""
    id: str
    skill_id: str
    difficulty_label: str
    correct_answer_key: str
    domain: Optional[str] = None
    subject: Optional[str] = None
    discrimination: Optional[float] = None  # Calibrated a, when known
    difficulty: Optional[float] = None  # Calibrated b, when known
    content: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Question":
        known = {"id", "skill_id", "difficulty_label", "correct_answer_key",
                 "domain", "subject", "discrimination", "difficulty"}
        return cls(
            id=str(data["id"]),
            skill_id=data["skill_id"],
            difficulty_label=str(data.get("difficulty_label", "medium")).lower(),
            correct_answer_key=str(data["correct_answer_key"]).strip().upper(),
            domain=data.get("domain"),
            subject=data.get("subject"),
            discrimination=data.get("discrimination"),
            difficulty=data.get("difficulty"),
            content={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "skill_id": self.skill_id,
            "difficulty_label": self.difficulty_label,
            "domain": self.domain,
            "subject": self.subject,
            "content": self.content,
        }


class ItemBank:
    """In-memory question bank keyed by question ID."""

    def __init__(self, questions: Iterable[Question] = (), skill_graph: Optional[SkillGraph] = None):
        self.skill_graph = skill_graph or SkillGraph()
        self.questions: Dict[str, Question] = {}
        for q in questions:
            self.add(q)

    @classmethod
    def from_directory(cls, data_dir: str, skill_graph: Optional[SkillGraph] = None) -> "ItemBank":
        """Load every *.json file in data_dir (a list of questions, or {"questions": [...]})."""
        bank = cls(skill_graph=skill_graph)
        path = Path(data_dir)
        if not path.exists():
            logger.warning("Item bank directory %s not found, bank is empty", data_dir)
            return bank

        for item_file in sorted(path.glob("*.json")):
            with open(item_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            records = data.get("questions", []) if isinstance(data, dict) else data
            for record in records:
                bank.add(Question.from_dict(record))

        logger.info("Loaded %d questions from %s", len(bank.questions), data_dir)
        return bank

    def add(self, question: Question):
        """Add a question, filling subject/domain from the skill graph when missing."""
        if question.subject is None:
            question.subject = self.skill_graph.subject_of(question.skill_id)
        if question.domain is None:
            question.domain = self.skill_graph.domain_of(question.skill_id)
        self.questions[question.id] = question

    def get(self, question_id: str) -> Optional[Question]:
        return self.questions.get(question_id)

    async def fetch_candidates(self, skill_id: Optional[str] = None, domain: Optional[str] = None,
                               difficulty_label: Optional[str] = None, exclude_ids: Iterable[str] = (),
                               subject: Optional[str] = None) -> List[Question]:
        """Questions matching every given filter, minus the excluded IDs."""
        excluded = set(exclude_ids)
        label = difficulty_label.lower() if difficulty_label else None
        return [
            q for q in self.questions.values()
            if q.id not in excluded
            and (skill_id is None or q.skill_id == skill_id)
            and (domain is None or q.domain == domain)
            and (label is None or q.difficulty_label == label)
            and (subject is None or q.subject == subject)
        ]
