"""Best-effort side effects: run, log failures, never raise."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a best-effort operation.

    Attributes:
        value: Return value when `ok`.
        error: The exception raised otherwise.
    """

    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def fire_and_log(label: str, fn: Callable[[], T]) -> Outcome[T]:
    """Call `fn` and wrap its result; exceptions are logged and captured."""
    try:
        return Outcome(value=fn())
    except Exception as e:
        LOG.warning("%s failed (non-fatal): %s", label, e, exc_info=True)
        return Outcome(error=e)
