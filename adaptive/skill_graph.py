"""
Skill Graph - subject / domain / skill taxonomy with prerequisites.

Features:
    - Hierarchical structure (subject -> domain -> skill)
    - Prerequisite relationships between skills as directed edges
    - Skill unlocking once every prerequisite is mastered
    - Lookup of subject and domain for an item's skill
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import networkx as nx

logger = logging.getLogger(__name__)


class SkillGraph:
    """
    Directed Acyclic Graph of skills with prerequisites.

    Structure:
        Subject (e.g., "math")
        └── Domain (e.g., "Algebra")
            └── Skill (e.g., "linear_equations")
    """

    def __init__(self, data: Optional[dict] = None):
        self.graph = nx.DiGraph()
        self.skills: Dict[str, dict] = {}
        self.domains: Dict[str, List[str]] = {}  # domain -> [skill_ids]

        if data:
            self._load(data)

    @classmethod
    def from_file(cls, path: str) -> "SkillGraph":
        """Load a graph from a JSON file; an absent file gives an empty graph."""
        file_path = Path(path)
        if not file_path.exists():
            logger.warning("Skill graph file %s not found, starting with an empty taxonomy", path)
            return cls()

        with open(file_path, "r", encoding="utf-8") as f:
            return cls(json.load(f))

    def _load(self, data: dict):
        """
        Expected format:
            {"subjects": {"math": {"Algebra": [{"id": ..., "name": ..., "prerequisites": [...]}]}}}
        """
        for subject, domains in data.get("subjects", {}).items():
            for domain, skills in domains.items():
                for skill in skills:
                    self.add_skill(skill, subject=subject, domain=domain)

        if not nx.is_directed_acyclic_graph(self.graph):
            raise ValueError("Skill prerequisites contain a cycle")

    def add_skill(self, skill: dict, subject: str, domain: str):
        """Add a skill node and its prerequisite edges."""
        sid = skill["id"]
        record = dict(skill)
        record["subject"] = subject
        record["domain"] = domain
        self.skills[sid] = record
        self.graph.add_node(sid, subject=subject, domain=domain)
        self.domains.setdefault(domain, [])
        if sid not in self.domains[domain]:
            self.domains[domain].append(sid)

        for prereq in skill.get("prerequisites", []):
            self.graph.add_edge(prereq, sid)

    # ==================== Query Methods ====================

    def get_skill(self, skill_id: str) -> Optional[dict]:
        return self.skills.get(skill_id)

    def subject_of(self, skill_id: str) -> Optional[str]:
        skill = self.skills.get(skill_id)
        return skill["subject"] if skill else None

    def domain_of(self, skill_id: str) -> Optional[str]:
        skill = self.skills.get(skill_id)
        return skill["domain"] if skill else None

    def skills_for(self, subject: Optional[str] = None, domain: Optional[str] = None) -> List[str]:
        """Skill IDs in topological order, optionally filtered."""
        ordered = [s for s in nx.topological_sort(self.graph) if s in self.skills]
        if subject is not None:
            ordered = [s for s in ordered if self.skills[s]["subject"] == subject]
        if domain is not None:
            ordered = [s for s in ordered if self.skills[s]["domain"] == domain]
        return ordered

    def get_prerequisites(self, skill_id: str) -> List[str]:
        """Immediate prerequisites (one level up)."""
        if skill_id not in self.graph:
            return []
        return list(self.graph.predecessors(skill_id))

    def get_all_prerequisites(self, skill_id: str) -> Set[str]:
        """All prerequisites recursively."""
        if skill_id not in self.graph:
            return set()
        return nx.ancestors(self.graph, skill_id)

    # ==================== Unlocking ====================

    def is_unlocked(self, skill_id: str, mastered: Iterable[str]) -> bool:
        """A skill is unlocked when every immediate prerequisite is mastered."""
        mastered = set(mastered)
        return all(p in mastered for p in self.get_prerequisites(skill_id))

    def unlocked_skills(self, mastered: Iterable[str], subject: Optional[str] = None) -> List[str]:
        mastered = set(mastered)
        return [s for s in self.skills_for(subject) if self.is_unlocked(s, mastered)]

    # ==================== Statistics ====================

    def get_stats(self) -> dict:
        return {
            "total_skills": len(self.skills),
            "total_edges": self.graph.number_of_edges(),
            "domains": list(self.domains.keys()),
            "skills_per_domain": {d: len(s) for d, s in self.domains.items()},
            "max_depth": nx.dag_longest_path_length(self.graph) if self.skills else 0,
        }
