"""Studio session audit records."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol


@dataclass(frozen=True)
class SessionRecord:
    """One completed generation, kept for history and audit."""

    user_id: str
    output_image_url: str
    prompt: str
    pipeline: str
    credits_cost: int
    product_id: str | None = None
    brand_id: str | None = None
    caption: str | None = None
    brief: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SupportsSessionStore(Protocol):
    """Protocol for the session store."""

    def create(self, record: SessionRecord) -> str:
        """Persist `record` and return its id."""
        ...


@dataclass
class InMemorySessionStore:
    records: dict[str, SessionRecord] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def create(self, record: SessionRecord) -> str:
        session_id = uuid.uuid4().hex
        with self._lock:
            self.records[session_id] = record
        return session_id
