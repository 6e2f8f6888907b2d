"""Persistence utilities for interview conversations."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis
from redis import Redis
from redis.exceptions import RedisError

from .conversation import Conversation

try:  # pragma: no cover - optional dependency path
    from redis.commands.json.path import Path as RedisJsonPath
except ImportError:  # pragma: no cover - fallback when RedisJSON missing
    RedisJsonPath = None

logger = logging.getLogger(__name__)

INDEX_KEY = "conversations:index"


class PersistenceError(RuntimeError):
    """Raised when a conversation cannot be read or written."""


class ConversationRepository:
    """Stores conversation snapshots as JSON files and mirrors them into Redis.

    Every save writes the whole conversation (messages, reports, phase and
    timestamps), so repeating a write is harmless. The file is the source of
    truth; the Redis copy is best effort.
    """

    def __init__(self, data_dir: Path, redis_url: Optional[str]) -> None:
        self._data_dir = data_dir
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._redis_url = redis_url
        self._redis: Optional[Redis] = None

    def _get_redis(self) -> Optional[Redis]:
        if not self._redis_url:
            return None
        if self._redis is None:
            try:
                self._redis = redis.from_url(  # type: ignore[call-overload]
                    self._redis_url,
                    decode_responses=True,
                )
            except RedisError as exc:  # pragma: no cover - network guarded
                logger.warning("Redis connection failed: %s", exc)
                self._redis = None
        return self._redis

    def path_for(self, conversation_id: str) -> Path:
        safe_id = conversation_id.replace("/", "_").replace("\\", "_")
        return self._data_dir / f"{safe_id}.json"

    def save(self, conversation: Conversation) -> None:
        """Write ``conversation`` wholesale."""

        record = conversation.to_dict()
        target = self.path_for(conversation.id)
        scratch = target.with_suffix(".json.tmp")
        try:
            scratch.write_text(
                json.dumps(record, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            os.replace(scratch, target)
        except OSError as exc:
            raise PersistenceError(
                f"Unable to write conversation {conversation.id}: {exc}"
            ) from exc
        self._mirror(record, conversation.last_updated.timestamp())

    def load(self, conversation_id: str) -> Conversation:
        target = self.path_for(conversation_id)
        if not target.exists():
            record = self._load_from_redis(conversation_id)
            if record is None:
                raise PersistenceError(
                    f"Conversation {conversation_id} not found"
                )
        else:
            try:
                record = json.loads(target.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                raise PersistenceError(
                    f"Unable to read conversation {conversation_id}: {exc}"
                ) from exc
        try:
            return Conversation.from_dict(record)
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(
                f"Conversation {conversation_id} is malformed: {exc}"
            ) from exc

    def list_ids(self) -> List[str]:
        """Return stored conversation ids, most recently updated first."""

        paths = sorted(
            self._data_dir.glob("*.json"),
            key=lambda path: path.stat().st_mtime,
            reverse=True,
        )
        return [path.stem for path in paths]

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _mirror(self, record: Dict[str, Any], updated_ts: float) -> None:
        client = self._get_redis()
        if not client:
            return
        key = f"conversation:{record['id']}"
        try:
            if RedisJsonPath and hasattr(client, "json"):
                client.json().set(key, RedisJsonPath.root_path(), record)
            else:
                client.set(key, json.dumps(record, ensure_ascii=False))
            client.zadd(INDEX_KEY, {record["id"]: updated_ts})
        except RedisError as exc:  # pragma: no cover - best effort
            logger.warning("Redis persistence failed for %s: %s", key, exc)

    def _load_from_redis(
        self, conversation_id: str
    ) -> Optional[Dict[str, Any]]:
        client = self._get_redis()
        if not client:
            return None
        key = f"conversation:{conversation_id}"
        try:
            if RedisJsonPath and hasattr(client, "json"):
                payload = client.json().get(key)
            else:
                raw_value = client.get(key)
                payload = json.loads(raw_value) if raw_value else None
        except (RedisError, json.JSONDecodeError) as exc:
            logger.warning("Redis lookup failed for %s: %s", key, exc)
            return None
        if not isinstance(payload, dict):
            return None
        return payload
