"""Shared fixtures: a fake async Redis client, a small item bank and an engine on in-memory storage."""

import sys
sys.path.append(".")

import pytest
import redis

from adaptive.engine import AdaptiveEngine
from adaptive.errors import PersistenceError
from adaptive.item_bank import ItemBank, Question
from adaptive.skill_graph import SkillGraph
from config import Settings
from redis_store import InMemoryStore

GRAPH_DATA = {
    "subjects": {
        "math": {
            "Algebra": [
                {"id": "linear_equations", "name": "Linear equations", "prerequisites": []},
                {"id": "systems_of_equations", "name": "Systems", "prerequisites": ["linear_equations"]},
            ],
            "Geometry and Trigonometry": [
                {"id": "area_volume", "name": "Area and volume", "prerequisites": []},
            ],
        },
        "verbal": {
            "Craft and Structure": [
                {"id": "words_in_context", "name": "Words in context", "prerequisites": []},
            ],
        },
    }
}


class FakeAsyncRedis:
    """Just enough of redis.asyncio.Redis for the store. `fail = True` simulates an outage."""

    def __init__(self):
        self.hashes = {}
        self.lists = {}
        self.strings = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("connection refused")

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, field=None, value=None, mapping=None):
        self._check()
        h = self.hashes.setdefault(key, {})
        if mapping:
            h.update(mapping)
        if field is not None:
            h[field] = value
        return len(mapping or {}) + (1 if field is not None else 0)

    async def rpush(self, key, *values):
        self._check()
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lrange(self, key, start, end):
        self._check()
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    async def set(self, key, value):
        self._check()
        self.strings[key] = value
        return True

    async def get(self, key):
        self._check()
        return self.strings.get(key)

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            for store in (self.hashes, self.lists, self.strings):
                if key in store:
                    del store[key]
                    removed += 1
        return removed


class FailingStore(InMemoryStore):
    """In-memory store whose writes fail until `healthy` is set."""

    def __init__(self):
        super().__init__()
        self.healthy = False
        self.calls = 0

    async def _maybe_fail(self, operation):
        self.calls += 1
        if not self.healthy:
            raise PersistenceError(operation, ConnectionError("store offline"))

    async def load_proficiency(self, user_id):
        await self._maybe_fail("load_proficiency")
        return await super().load_proficiency(user_id)

    async def save_proficiency(self, user_id, records):
        await self._maybe_fail("save_proficiency")
        await super().save_proficiency(user_id, records)

    async def record_attempt(self, attempt):
        await self._maybe_fail("record_attempt")
        await super().record_attempt(attempt)

    async def archive_session(self, session_id, user_id, history, summary):
        await self._maybe_fail("archive_session")
        await super().archive_session(session_id, user_id, history, summary)


def make_questions():
    questions = []
    keys = "ABCD"
    n = 0
    for skill in ("linear_equations", "systems_of_equations", "area_volume", "words_in_context"):
        for label in ("easy", "medium", "hard"):
            for i in range(4):
                questions.append(Question(
                    id=f"{skill}-{label}-{i}",
                    skill_id=skill,
                    difficulty_label=label,
                    correct_answer_key=keys[n % 4],
                ))
                n += 1
    return questions


@pytest.fixture
def settings():
    return Settings(persistence_backend="memory", persistence_retries=2, selection_seed=7)


@pytest.fixture
def skill_graph():
    return SkillGraph(GRAPH_DATA)


@pytest.fixture
def item_bank(skill_graph):
    return ItemBank(make_questions(), skill_graph=skill_graph)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def engine(item_bank, store, settings, skill_graph):
    return AdaptiveEngine(item_bank, store=store, settings=settings, skill_graph=skill_graph)


@pytest.fixture
def fake_redis():
    return FakeAsyncRedis()


@pytest.fixture
def failing_store():
    return FailingStore()
