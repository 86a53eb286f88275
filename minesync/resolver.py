"""
resolver.py - Session status inference.

Mining records carry several overlapping hints about whether a session is still
running: an explicit flag, two expiry timestamps that historically lived under
different names (top level or inside the raw probe response), the time of the
last probe, and the error text of the last failed probe. ``resolve`` folds them
into one SessionStatus. It is a pure function of the record and ``now``.

Rules, in order:
  1. Every timestamp is parsed defensively; anything unparsable is absent.
  2. ``expires_at`` beats ``valid_until`` when both parse.
  3. Active if the flag is set, the expiry is in the future, the last probe
     was within RECENT_ACTIVITY_SEC, or the last probe failed with an
     "already running" error.
  4. Without a parseable expiry, or with one older than GRACE_WINDOW_SEC, the
     status is forced inactive. Counters never lift this.
  5. The one exception to rule 4: no expiry parsed at all, an "already
     running" error, and a record written within GRACE_WINDOW_SEC. That
     reports active with every counter unknown.
  6. Counters come from the record's own columns, then from the probe blob.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from minesync.records import MiningRecord

logger = logging.getLogger("resolver")

GRACE_WINDOW_SEC = 24 * 3600
RECENT_ACTIVITY_SEC = 3600
KYC_SESSION_THRESHOLD = 30

UNKNOWN_COUNTDOWN = "??:??:??"
ZERO_COUNTDOWN = "00:00:00"

# Rules are paths into the record payload, tried in order.
Rule = Tuple[str, ...]

EXPIRES_AT_RULES: Tuple[Rule, ...] = (
    ("expires_at",),
    ("expiresAt",),
    ("mining_response", "expires_at"),
    ("mining_response", "expiresAt"),
)
VALID_UNTIL_RULES: Tuple[Rule, ...] = (
    ("valid_until",),
    ("validUntil",),
    ("mining_response", "valid_until"),
    ("mining_response", "validUntil"),
)
LAST_ACTIVITY_RULES: Tuple[Rule, ...] = (
    ("last_activity_at",),
    ("lastActivityAt",),
    ("last_mined_at",),
)
ERROR_RULES: Tuple[Rule, ...] = (
    ("mining_response", "error"),
    ("last_error",),
    ("error",),
)
NUMERIC_RULES: Dict[str, Tuple[Rule, ...]] = {
    "hourly_ratio": (
        ("hourly_ratio",),
        ("mining_response", "hourly_ratio"),
    ),
    "team_count": (
        ("team_count",),
        ("mining_response", "earning_team", "team_count"),
    ),
    "mining_count": (
        ("mining_count",),
        ("mining_response", "earning_team", "mining_count"),
    ),
    "completed_sessions": (
        ("completed_sessions_count",),
        ("mining_response", "completed_sessions_count"),
        ("mining_response", "proof_of_presence", "completed_sessions_count"),
    ),
}

ALREADY_RUNNING_PATTERNS = (
    re.compile(r"can['’]?t start mining at the moment", re.IGNORECASE),
    re.compile(r"already (?:mining|running)", re.IGNORECASE),
)


_FRACTION_RE = re.compile(r"(?<=:\d\d)\.(\d+)")


def _pad_fraction(match: "re.Match") -> str:
    return "." + match.group(1)[:6].ljust(6, "0")


@dataclass(frozen=True)
class ResolverConfig:
    grace_sec: float = GRACE_WINDOW_SEC
    recent_activity_sec: float = RECENT_ACTIVITY_SEC
    kyc_session_threshold: int = KYC_SESSION_THRESHOLD


DEFAULT_CONFIG = ResolverConfig()


@dataclass(frozen=True)
class SessionStatus:
    is_active: bool = False
    expires_at: Optional[float] = None
    hourly_ratio: Optional[float] = None
    team_count: Optional[int] = None
    mining_count: Optional[int] = None
    completed_sessions: Optional[int] = None
    expiry_unparsable: bool = False
    kyc_threshold: int = KYC_SESSION_THRESHOLD

    @property
    def kyc_warning(self) -> bool:
        return self.completed_sessions is not None and self.completed_sessions > self.kyc_threshold

    def to_dict(self) -> dict:
        return {
            "is_active": self.is_active,
            "expires_at": self.expires_at,
            "hourly_ratio": self.hourly_ratio,
            "team_count": self.team_count,
            "mining_count": self.mining_count,
            "completed_sessions": self.completed_sessions,
            "expiry_unparsable": self.expiry_unparsable,
            "kyc_warning": self.kyc_warning,
        }


def parse_timestamp(value: Any) -> Optional[float]:
    """Parse ``value`` to epoch seconds, or None. Never raises."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    if text.endswith("+00"):
        text = text[:-3]
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    text = _FRACTION_RE.sub(_pad_fraction, text, count=1)
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        return dt.timestamp()
    except (OverflowError, OSError, ValueError):
        return None


def _lookup(payload: Mapping, rule: Rule) -> Any:
    node: Any = payload
    for part in rule:
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


def _present(value: Any) -> bool:
    return value is not None and value != ""


def first_timestamp(payload: Mapping, rules: Iterable[Rule]) -> Tuple[Optional[float], bool]:
    """Return (first parseable timestamp, whether any candidate was present)."""
    seen = False
    for rule in rules:
        raw = _lookup(payload, rule)
        if not _present(raw):
            continue
        seen = True
        parsed = parse_timestamp(raw)
        if parsed is not None:
            return parsed, True
    return None, seen


def _first_number(payload: Mapping, rules: Iterable[Rule]) -> Optional[float]:
    for rule in rules:
        raw = _lookup(payload, rule)
        if isinstance(raw, bool) or raw is None:
            continue
        if isinstance(raw, (int, float)):
            if math.isfinite(raw):
                return raw
            continue
        if isinstance(raw, str):
            try:
                num = float(raw)
            except ValueError:
                continue
            if math.isfinite(num):
                return num
    return None


def _as_int(value: Optional[float]) -> Optional[int]:
    return None if value is None else int(value)


def error_says_already_running(text: Any) -> bool:
    if not isinstance(text, str):
        return False
    return any(p.search(text) for p in ALREADY_RUNNING_PATTERNS)


def resolve_expiry(payload: Mapping) -> Tuple[Optional[float], bool]:
    """Chosen expiry and whether an expiry was present but unparsable."""
    expires_at, expires_seen = first_timestamp(payload, EXPIRES_AT_RULES)
    valid_until, valid_seen = first_timestamp(payload, VALID_UNTIL_RULES)
    expiry = expires_at if expires_at is not None else valid_until
    unparsable = expiry is None and (expires_seen or valid_seen)
    return expiry, unparsable


def resolve(
    record: MiningRecord, now: float, config: ResolverConfig = DEFAULT_CONFIG
) -> SessionStatus:
    payload = record.payload if isinstance(record.payload, Mapping) else {}

    expiry, unparsable = resolve_expiry(payload)
    if unparsable:
        logger.debug("Unparsable expiry on %s, treating as absent", record.key)
    last_activity, _ = first_timestamp(payload, LAST_ACTIVITY_RULES)
    already_running = any(
        error_says_already_running(_lookup(payload, rule)) for rule in ERROR_RULES
    )

    # Bounded by the write time so a stale error blob cannot stay active forever
    if (
        already_running
        and expiry is None
        and record.updated_at is not None
        and abs(now - record.updated_at) <= config.grace_sec
    ):
        return SessionStatus(
            is_active=True,
            expiry_unparsable=unparsable,
            kyc_threshold=config.kyc_session_threshold,
        )

    has_future_expiry = expiry is not None and expiry > now
    recently_active = (
        last_activity is not None and abs(now - last_activity) <= config.recent_activity_sec
    )
    is_active = (
        payload.get("is_active") is True or has_future_expiry or recently_active or already_running
    )

    if expiry is None or now - expiry > config.grace_sec:
        is_active = False

    return SessionStatus(
        is_active=is_active,
        expires_at=expiry,
        hourly_ratio=_first_number(payload, NUMERIC_RULES["hourly_ratio"]),
        team_count=_as_int(_first_number(payload, NUMERIC_RULES["team_count"])),
        mining_count=_as_int(_first_number(payload, NUMERIC_RULES["mining_count"])),
        completed_sessions=_as_int(_first_number(payload, NUMERIC_RULES["completed_sessions"])),
        expiry_unparsable=unparsable,
        kyc_threshold=config.kyc_session_threshold,
    )


def resolve_all(
    records: Iterable[MiningRecord], now: float, config: ResolverConfig = DEFAULT_CONFIG
) -> Dict[str, SessionStatus]:
    return {r.key: resolve(r, now, config) for r in records}


def find_demotions(
    previous: Mapping[str, bool], current: Mapping[str, SessionStatus]
) -> List[str]:
    """Keys that were active last time and are inactive now."""
    return [
        key for key, status in current.items()
        if previous.get(key) and not status.is_active
    ]


def format_countdown(status: SessionStatus, now: float) -> str:
    """Remaining session time as HH:MM:SS for the dashboard."""
    if status.expiry_unparsable:
        return UNKNOWN_COUNTDOWN
    if status.expires_at is None:
        return ZERO_COUNTDOWN
    remaining = int(status.expires_at - now)
    if remaining <= 0:
        return ZERO_COUNTDOWN
    hours, rest = divmod(remaining, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
