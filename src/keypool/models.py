# src/keypool/models.py
"""
Passive data types for a credential pool.

Every type here is an immutable dataclass. State transitions live in
`usage_tracker`, `selector` and `recovery`; they return updated copies
built with `dataclasses.replace` rather than mutating in place.
"""

import itertools
import random
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5

DEFAULT_MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_COOLDOWN_MINUTES = 5

_id_counter = itertools.count(1)


def current_time_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def mask_secret(secret: str) -> str:
    """Shows the first and last 4 characters of a secret longer than 8."""
    if len(secret) <= 8:
        return secret
    return f"{secret[:4]}••••{secret[-4:]}"


class KeyStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"  # manual only
    ERROR = "error"
    RATE_LIMITED = "rate_limited"


class LoadBalanceStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    PRIORITY = "priority"
    LEAST_USED = "least_used"
    RANDOM = "random"


class ProbeMode(str, Enum):
    AWAIT = "await"
    FIRST_BYTE = "first_byte"


def _enum_or_default(enum_cls, value, default):
    try:
        return enum_cls(value)
    except (TypeError, ValueError):
        return default


def _int_or_default(value, default: Optional[int]) -> Optional[int]:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


@dataclass(frozen=True)
class KeyUsage:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    last_used_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "consecutive_failures": self.consecutive_failures,
            "last_used_at": self.last_used_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "KeyUsage":
        if not isinstance(data, dict):
            return cls()
        return cls(
            total_requests=max(0, _int_or_default(data.get("total_requests"), 0)),
            successful_requests=max(
                0, _int_or_default(data.get("successful_requests"), 0)
            ),
            failed_requests=max(0, _int_or_default(data.get("failed_requests"), 0)),
            consecutive_failures=max(
                0, _int_or_default(data.get("consecutive_failures"), 0)
            ),
            last_used_at=_int_or_default(data.get("last_used_at"), None),
        )


@dataclass(frozen=True)
class KeyRecord:
    """
    One credential plus its usage and status metadata.

    `enabled` is the manual on/off switch. `status` is driven by outcomes,
    except `KeyStatus.DISABLED` which is only ever set by hand.
    """

    id: str
    secret: str
    name: Optional[str] = None
    enabled: bool = True
    priority: int = DEFAULT_PRIORITY
    per_minute_limit: Optional[int] = None
    usage: KeyUsage = field(default_factory=KeyUsage)
    status: KeyStatus = KeyStatus.ACTIVE
    last_error: Optional[str] = None
    created_at: int = field(default_factory=current_time_ms)
    updated_at: int = field(default_factory=current_time_ms)

    def __post_init__(self):
        if not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise ValueError(
                f"priority must be within [{MIN_PRIORITY}, {MAX_PRIORITY}], got {self.priority}"
            )

    @classmethod
    def create(
        cls, secret: str, name: Optional[str] = None, priority: int = DEFAULT_PRIORITY
    ) -> "KeyRecord":
        """Creates a fresh, active record with a new creation-ordered id."""
        if not secret or not secret.strip():
            raise ValueError("secret must be a non-empty string")
        now = current_time_ms()
        return cls(
            id=generate_key_id(now),
            secret=secret.strip(),
            name=name,
            priority=priority,
            created_at=now,
            updated_at=now,
        )

    @property
    def display_name(self) -> str:
        if self.name and self.name.strip():
            return self.name
        return mask_secret(self.secret)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "secret": self.secret,
            "name": self.name,
            "enabled": self.enabled,
            "priority": self.priority,
            "per_minute_limit": self.per_minute_limit,
            "usage": self.usage.to_dict(),
            "status": self.status.value,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyRecord":
        """
        Builds a record from stored data. Missing or malformed fields fall back
        to defaults; `id` and `secret` are required.
        """
        if not isinstance(data, dict) or not data.get("id") or not data.get("secret"):
            raise ValueError("key record requires non-empty 'id' and 'secret'")
        now = current_time_ms()
        priority = _int_or_default(data.get("priority"), DEFAULT_PRIORITY)
        priority = min(MAX_PRIORITY, max(MIN_PRIORITY, priority))
        created_at = _int_or_default(data.get("created_at"), now)
        return cls(
            id=str(data["id"]),
            secret=str(data["secret"]),
            name=data.get("name") if isinstance(data.get("name"), str) else None,
            enabled=data.get("enabled") is not False,
            priority=priority,
            per_minute_limit=_int_or_default(data.get("per_minute_limit"), None),
            usage=KeyUsage.from_dict(data.get("usage")),
            status=_enum_or_default(KeyStatus, data.get("status"), KeyStatus.ACTIVE),
            last_error=(
                data.get("last_error") if isinstance(data.get("last_error"), str) else None
            ),
            created_at=created_at,
            updated_at=_int_or_default(data.get("updated_at"), created_at),
        )


def generate_key_id(now_ms: Optional[int] = None) -> str:
    """
    Returns `key_<ms>_<counter>_<random>`. The timestamp and counter are
    zero-padded so lexical order matches creation order within a process.
    """
    now_ms = current_time_ms() if now_ms is None else now_ms
    return f"key_{now_ms:013d}_{next(_id_counter):06d}_{random.getrandbits(24):06x}"


@dataclass(frozen=True)
class KeyPolicy:
    strategy: LoadBalanceStrategy = LoadBalanceStrategy.ROUND_ROBIN
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES
    auto_recovery_enabled: bool = True
    round_robin_cursor: int = 0

    def __post_init__(self):
        # Frozen, so coerce through object.__setattr__
        object.__setattr__(
            self,
            "strategy",
            _enum_or_default(
                LoadBalanceStrategy, self.strategy, LoadBalanceStrategy.ROUND_ROBIN
            ),
        )

    @property
    def cooldown_ms(self) -> int:
        return self.cooldown_minutes * 60 * 1000

    def with_cursor(self, cursor: int) -> "KeyPolicy":
        return replace(self, round_robin_cursor=cursor)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "max_consecutive_failures": self.max_consecutive_failures,
            "cooldown_minutes": self.cooldown_minutes,
            "auto_recovery_enabled": self.auto_recovery_enabled,
            "round_robin_cursor": self.round_robin_cursor,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "KeyPolicy":
        """Lenient parse: absent or malformed values use the defaults."""
        if not isinstance(data, dict):
            return cls()
        max_failures = _int_or_default(
            data.get("max_consecutive_failures"), DEFAULT_MAX_CONSECUTIVE_FAILURES
        )
        cooldown = _int_or_default(data.get("cooldown_minutes"), DEFAULT_COOLDOWN_MINUTES)
        auto_recovery = data.get("auto_recovery_enabled", True)
        return cls(
            strategy=_enum_or_default(
                LoadBalanceStrategy, data.get("strategy"), LoadBalanceStrategy.ROUND_ROBIN
            ),
            max_consecutive_failures=(
                max_failures if max_failures >= 1 else DEFAULT_MAX_CONSECUTIVE_FAILURES
            ),
            cooldown_minutes=cooldown if cooldown >= 0 else DEFAULT_COOLDOWN_MINUTES,
            auto_recovery_enabled=(
                auto_recovery if isinstance(auto_recovery, bool) else True
            ),
            round_robin_cursor=_int_or_default(data.get("round_robin_cursor"), 0),
        )


@dataclass(frozen=True)
class SelectionResult:
    key: Optional[KeyRecord]
    reason: str
    next_round_robin_cursor: int = 0


# --- Probe outcomes: a tagged union, dispatched on `kind` ---


@dataclass(frozen=True)
class ProbeSuccess:
    response_time_ms: int
    kind: Literal["success"] = field(default="success", init=False)


@dataclass(frozen=True)
class ProbeError:
    message: str
    kind: Literal["error"] = field(default="error", init=False)


@dataclass(frozen=True)
class ProbeRateLimited:
    retry_after_seconds: Optional[int] = None
    kind: Literal["rate_limited"] = field(default="rate_limited", init=False)


ProbeOutcome = Union[ProbeSuccess, ProbeError, ProbeRateLimited]


@dataclass(frozen=True)
class BatchProgress:
    total: int
    completed: int
    current_key_id: Optional[str]
    results: Dict[str, ProbeOutcome]

    @property
    def done(self) -> bool:
        return self.completed >= self.total and self.current_key_id is None
