"""
records.py - Per-account mining record shared by both stores.

Only ``key`` and ``updated_at`` are structural. Everything the mining service
learns about an account (balance, counters, probe responses) lives in the
opaque ``payload`` dict.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Optional


@dataclass
class MiningRecord:
    key: str
    updated_at: Optional[float] = None
    payload: dict = field(default_factory=dict)

    @property
    def clock(self) -> float:
        """Conflict-resolution clock; a missing timestamp counts as the epoch."""
        return self.updated_at if self.updated_at is not None else 0.0

    def with_payload(self, now: Optional[float] = None, **changes) -> "MiningRecord":
        """Return a copy with ``changes`` merged into the payload and a fresh clock."""
        payload = dict(self.payload)
        payload.update(changes)
        return replace(self, payload=payload, updated_at=time.time() if now is None else now)

    def to_dict(self) -> dict:
        return {
            "phone_number": self.key,
            "updated_at": self.updated_at,
            **self.payload,
        }


def placeholder(key: str) -> MiningRecord:
    """Record created when an account is first registered."""
    return MiningRecord(key=key, updated_at=None, payload={})
