"""
Redis Store - learner proficiency and session archive persistence.

Key Structure:
    user:{user_id}:proficiency   -> Hash (skill_id -> JSON SkillProficiency)
    user:{user_id}:attempts      -> List (JSON of each answered item)
    session:{session_id}:history -> List (question IDs in serving order)
    session:{session_id}:summary -> String (JSON session summary)

Every Redis or connection failure is raised as PersistenceError; the engine
logs it and keeps the write queued.
"""

import json
import logging
import os
from typing import Dict, List, Optional

import redis
import redis.asyncio as aioredis
from dotenv import load_dotenv

from adaptive.errors import PersistenceError
from adaptive.proficiency_estimator import SkillProficiency

# Load environment variables from .env
load_dotenv()

logger = logging.getLogger(__name__)


class RedisStore:
    def __init__(self, client=None, settings=None):
        """Connect to Redis using settings, or environment variables when none are given."""
        if client is None:
            if settings is not None:
                host, port = settings.redis_host, settings.redis_port
                password, db = settings.redis_password, settings.redis_db
            else:
                host = os.getenv("REDIS_HOST", "localhost")
                port = int(os.getenv("REDIS_PORT", 6379))
                password = os.getenv("REDIS_PASSWORD", None)
                db = int(os.getenv("REDIS_DB", 0))
            client = aioredis.Redis(
                host=host,
                port=port,
                password=password,
                db=db,
                decode_responses=True  # Return strings instead of bytes
            )
        self.client = client

    # ==================== Key Builders ====================

    def _proficiency_key(self, user_id: str) -> str:
        return f"user:{user_id}:proficiency"

    def _attempts_key(self, user_id: str) -> str:
        return f"user:{user_id}:attempts"

    def _history_key(self, session_id: str) -> str:
        return f"session:{session_id}:history"

    def _summary_key(self, session_id: str) -> str:
        return f"session:{session_id}:summary"

    # ==================== Proficiency ====================

    async def load_proficiency(self, user_id: str) -> List[SkillProficiency]:
        """
        Load every stored skill state for a user.

        Args:
            user_id: Learner identifier

        Returns:
            List of SkillProficiency (empty for a new learner)
        """
        try:
            raw = await self.client.hgetall(self._proficiency_key(user_id))
        except (redis.RedisError, OSError) as e:
            raise PersistenceError("load_proficiency", e) from e

        records = []
        for skill_id, payload in raw.items():
            try:
                records.append(SkillProficiency.from_dict(json.loads(payload)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable proficiency record %s for %s: %s", skill_id, user_id, e)
        return records

    async def save_proficiency(self, user_id: str, records: List[SkillProficiency]):
        """Upsert skill states, one hash field per skill."""
        if not records:
            return
        mapping = {r.skill_id: json.dumps(r.to_dict()) for r in records}
        try:
            await self.client.hset(self._proficiency_key(user_id), mapping=mapping)
        except (redis.RedisError, OSError) as e:
            raise PersistenceError("save_proficiency", e) from e

    # ==================== Attempts ====================

    async def record_attempt(self, attempt: Dict):
        """Append an answered item to the learner's attempt log."""
        try:
            await self.client.rpush(self._attempts_key(attempt["user_id"]), json.dumps(attempt))
        except (redis.RedisError, OSError) as e:
            raise PersistenceError("record_attempt", e) from e

    async def get_attempts(self, user_id: str) -> List[Dict]:
        try:
            raw = await self.client.lrange(self._attempts_key(user_id), 0, -1)
        except (redis.RedisError, OSError) as e:
            raise PersistenceError("get_attempts", e) from e
        return [json.loads(a) for a in raw]

    # ==================== Session Archive ====================

    async def archive_session(self, session_id: str, user_id: str, history: List[str], summary: Dict):
        """
        Store the served question IDs and the end-of-session summary.

        Args:
            session_id: Session being archived
            user_id: Learner the session belongs to
            history: Question IDs in serving order
            summary: JSON-serializable session summary
        """
        payload = dict(summary)
        payload["user_id"] = user_id
        try:
            history_key = self._history_key(session_id)
            await self.client.delete(history_key)
            if history:
                await self.client.rpush(history_key, *history)
            await self.client.set(self._summary_key(session_id), json.dumps(payload, default=str))
        except (redis.RedisError, OSError) as e:
            raise PersistenceError("archive_session", e) from e

    async def get_session_archive(self, session_id: str) -> Optional[Dict]:
        try:
            summary = await self.client.get(self._summary_key(session_id))
            history = await self.client.lrange(self._history_key(session_id), 0, -1)
        except (redis.RedisError, OSError) as e:
            raise PersistenceError("get_session_archive", e) from e
        if summary is None:
            return None
        return {"summary": json.loads(summary), "history": history}

    async def delete_user(self, user_id: str):
        """Delete all stored data for a learner (for testing/cleanup)."""
        try:
            await self.client.delete(self._proficiency_key(user_id), self._attempts_key(user_id))
        except (redis.RedisError, OSError) as e:
            raise PersistenceError("delete_user", e) from e


class InMemoryStore:
    """Process-local store with the RedisStore interface, for development and tests."""

    def __init__(self):
        self.proficiency: Dict[str, Dict[str, dict]] = {}
        self.attempts: Dict[str, List[Dict]] = {}
        self.sessions: Dict[str, Dict] = {}

    async def load_proficiency(self, user_id: str) -> List[SkillProficiency]:
        return [SkillProficiency.from_dict(d) for d in self.proficiency.get(user_id, {}).values()]

    async def save_proficiency(self, user_id: str, records: List[SkillProficiency]):
        stored = self.proficiency.setdefault(user_id, {})
        for r in records:
            stored[r.skill_id] = r.to_dict()

    async def record_attempt(self, attempt: Dict):
        self.attempts.setdefault(attempt["user_id"], []).append(dict(attempt))

    async def get_attempts(self, user_id: str) -> List[Dict]:
        return list(self.attempts.get(user_id, []))

    async def archive_session(self, session_id: str, user_id: str, history: List[str], summary: Dict):
        payload = dict(summary)
        payload["user_id"] = user_id
        self.sessions[session_id] = {"summary": payload, "history": list(history)}

    async def get_session_archive(self, session_id: str) -> Optional[Dict]:
        return self.sessions.get(session_id)

    async def delete_user(self, user_id: str):
        self.proficiency.pop(user_id, None)
        self.attempts.pop(user_id, None)


def create_store(settings):
    """Store for the configured backend ("redis" or "memory")."""
    backend = (settings.persistence_backend or "redis").lower()
    if backend == "memory":
        logger.info("Using in-memory persistence")
        return InMemoryStore()
    logger.info("Using Redis persistence at %s:%s", settings.redis_host, settings.redis_port)
    return RedisStore(settings=settings)
