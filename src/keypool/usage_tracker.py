# src/keypool/usage_tracker.py
"""
Folds probe or request outcomes into key records and evaluates cooldown
recovery. All functions are pure: they return a new KeyRecord.
"""

import logging
from dataclasses import replace
from typing import Optional

from .error_handler import mask_credential
from .models import (
    KeyPolicy,
    KeyRecord,
    KeyStatus,
    ProbeError,
    ProbeOutcome,
    ProbeRateLimited,
    ProbeSuccess,
    current_time_ms,
)

lib_logger = logging.getLogger("keypool")

RECOVERABLE_STATUSES = (KeyStatus.ERROR, KeyStatus.RATE_LIMITED)


def rate_limit_message(retry_after_seconds: Optional[int]) -> str:
    if retry_after_seconds is None:
        return "Rate limited"
    return f"Rate limited, retry after {retry_after_seconds}s"


def record_outcome(
    key: KeyRecord,
    outcome: ProbeOutcome,
    policy: Optional[KeyPolicy] = None,
    now: Optional[int] = None,
) -> KeyRecord:
    """
    Records one outcome against a key.

    - Success resets consecutive failures and returns the key to ACTIVE.
    - Error increments consecutive failures and moves the key to ERROR once
      the count reaches `policy.max_consecutive_failures`.
    - RateLimited counts as a failed request but leaves consecutive failures
      alone; the key moves to RATE_LIMITED unconditionally.
    """
    policy = policy or KeyPolicy()
    now = current_time_ms() if now is None else now
    usage = key.usage

    if isinstance(outcome, ProbeSuccess):
        return replace(
            key,
            usage=replace(
                usage,
                total_requests=usage.total_requests + 1,
                successful_requests=usage.successful_requests + 1,
                consecutive_failures=0,
                last_used_at=now,
            ),
            status=KeyStatus.ACTIVE,
            last_error=None,
            updated_at=now,
        )

    if isinstance(outcome, ProbeError):
        failures = usage.consecutive_failures + 1
        status = key.status
        if failures >= policy.max_consecutive_failures:
            if status != KeyStatus.ERROR:
                lib_logger.warning(
                    f"Key {mask_credential(key.secret)} reached {failures} consecutive failures. "
                    f"Marking as error."
                )
            status = KeyStatus.ERROR
        return replace(
            key,
            usage=replace(
                usage,
                total_requests=usage.total_requests + 1,
                failed_requests=usage.failed_requests + 1,
                consecutive_failures=failures,
                last_used_at=now,
            ),
            status=status,
            last_error=outcome.message,
            updated_at=now,
        )

    if isinstance(outcome, ProbeRateLimited):
        lib_logger.info(
            f"Key {mask_credential(key.secret)} is rate limited "
            f"(retry_after: {outcome.retry_after_seconds})."
        )
        return replace(
            key,
            usage=replace(
                usage,
                total_requests=usage.total_requests + 1,
                failed_requests=usage.failed_requests + 1,
                last_used_at=now,
            ),
            status=KeyStatus.RATE_LIMITED,
            last_error=rate_limit_message(outcome.retry_after_seconds),
            updated_at=now,
        )

    raise TypeError(f"Unknown probe outcome: {outcome!r}")


def is_recovery_due(key: KeyRecord, policy: KeyPolicy, now: int) -> bool:
    """True if the key is demoted and its cooldown has fully elapsed."""
    return key.status in RECOVERABLE_STATUSES and (
        now - key.updated_at >= policy.cooldown_ms
    )


def try_recover(
    key: KeyRecord, policy: Optional[KeyPolicy] = None, now: Optional[int] = None
) -> KeyRecord:
    """
    Returns an ACTIVE copy of a demoted key whose cooldown has elapsed, with
    consecutive failures and the last error cleared. Any other key is
    returned unchanged (the same object).
    """
    policy = policy or KeyPolicy()
    now = current_time_ms() if now is None else now
    if not is_recovery_due(key, policy, now):
        return key
    lib_logger.info(
        f"Recovering key {mask_credential(key.secret)} from {key.status.value} "
        f"after {policy.cooldown_minutes} minute cooldown."
    )
    return replace(
        key,
        usage=replace(key.usage, consecutive_failures=0),
        status=KeyStatus.ACTIVE,
        last_error=None,
        updated_at=now,
    )
