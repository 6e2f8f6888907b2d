"""Conversation aggregate and transcript entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class Message:
    """A single transcript entry."""

    role: str
    content: str
    phase: str
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "phase": self.phase,
            "timestamp": _timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Message":
        role = str(payload.get("role", ""))
        if role not in {"user", "assistant"}:
            raise ValueError(f"Unsupported message role: {role}")
        return cls(
            role=role,
            content=str(payload.get("content", "")),
            phase=str(payload.get("phase", "")),
            timestamp=_parse_timestamp(payload.get("timestamp")) or _utcnow(),
        )


def _empty_messages() -> List[Message]:
    return []


def _empty_reports() -> Dict[str, str]:
    return {}


@dataclass(slots=True)
class Conversation:
    """Everything persisted about one interview."""

    subject_name: str
    current_phase: str
    id: str = field(default_factory=lambda: f"conv-{uuid4().hex[:12]}")
    thread_id: Optional[str] = None
    messages: List[Message] = field(default_factory=_empty_messages)
    reports: Dict[str, str] = field(default_factory=_empty_reports)
    created_at: datetime = field(default_factory=_utcnow)
    last_updated: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def append(self, role: str, content: str, phase: str) -> Message:
        message = Message(role=role, content=content, phase=phase)
        self.messages.append(message)
        return message

    def touch(self) -> None:
        self.last_updated = _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_name": self.subject_name,
            "thread_id": self.thread_id,
            "current_phase": self.current_phase,
            "messages": [message.to_dict() for message in self.messages],
            "reports": dict(self.reports),
            "created_at": _timestamp(self.created_at),
            "last_updated": _timestamp(self.last_updated),
            "completed_at": (
                _timestamp(self.completed_at) if self.completed_at else None
            ),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(payload["id"]),
            subject_name=str(payload.get("subject_name", "")),
            thread_id=payload.get("thread_id") or None,
            current_phase=str(payload.get("current_phase", "")),
            messages=[
                Message.from_dict(entry)
                for entry in payload.get("messages") or []
            ],
            reports={
                str(key): str(value)
                for key, value in (payload.get("reports") or {}).items()
            },
            created_at=_parse_timestamp(payload.get("created_at")) or _utcnow(),
            last_updated=(
                _parse_timestamp(payload.get("last_updated")) or _utcnow()
            ),
            completed_at=_parse_timestamp(payload.get("completed_at")),
        )
