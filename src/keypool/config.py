# src/keypool/config.py
"""
Environment-driven defaults for the key pool.

Every value has a documented default. Invalid environment values are
logged and ignored rather than raised, so a typo in a .env file never
stops an application from starting.

    KEYPOOL_STRATEGY                  round_robin | priority | least_used | random
    KEYPOOL_MAX_CONSECUTIVE_FAILURES  failures before a key is marked as error (3)
    KEYPOOL_COOLDOWN_MINUTES          minutes before a demoted key is retried (5)
    KEYPOOL_AUTO_RECOVERY             true/false, enables the recovery sweep (true)
    KEYPOOL_PROBE_DELAY_MS            pause between probes in a batch (120)
    KEYPOOL_SWEEP_INTERVAL            seconds between background sweeps (60)
"""

import logging
import os
from typing import Mapping, Optional

from .models import (
    DEFAULT_COOLDOWN_MINUTES,
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    KeyPolicy,
    LoadBalanceStrategy,
)

lib_logger = logging.getLogger("keypool")

DEFAULT_BATCH_DELAY_MS = 120
DEFAULT_SWEEP_INTERVAL = 60

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _get_int_env(
    env: Mapping[str, str], name: str, default: int, minimum: int = 0
) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        lib_logger.warning(f"Invalid {name} '{raw}'. Falling back to {default}.")
        return default
    if value < minimum:
        lib_logger.warning(
            f"{name}={value} is below the minimum of {minimum}. Falling back to {default}."
        )
        return default
    return value


def _get_bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    lib_logger.warning(f"Invalid {name} '{raw}'. Falling back to {default}.")
    return default


def _get_strategy_env(env: Mapping[str, str]) -> LoadBalanceStrategy:
    raw = env.get("KEYPOOL_STRATEGY")
    if not raw:
        return LoadBalanceStrategy.ROUND_ROBIN
    try:
        return LoadBalanceStrategy(raw.strip().lower())
    except ValueError:
        lib_logger.warning(f"Unknown KEYPOOL_STRATEGY '{raw}'. Falling back to round_robin.")
        return LoadBalanceStrategy.ROUND_ROBIN


def load_policy_from_env(env: Optional[Mapping[str, str]] = None) -> KeyPolicy:
    """Builds a KeyPolicy from KEYPOOL_* environment variables."""
    env = os.environ if env is None else env
    return KeyPolicy(
        strategy=_get_strategy_env(env),
        max_consecutive_failures=_get_int_env(
            env, "KEYPOOL_MAX_CONSECUTIVE_FAILURES", DEFAULT_MAX_CONSECUTIVE_FAILURES, 1
        ),
        cooldown_minutes=_get_int_env(
            env, "KEYPOOL_COOLDOWN_MINUTES", DEFAULT_COOLDOWN_MINUTES
        ),
        auto_recovery_enabled=_get_bool_env(env, "KEYPOOL_AUTO_RECOVERY", True),
    )


def get_probe_delay_ms(env: Optional[Mapping[str, str]] = None) -> int:
    env = os.environ if env is None else env
    return _get_int_env(env, "KEYPOOL_PROBE_DELAY_MS", DEFAULT_BATCH_DELAY_MS)


def get_sweep_interval(env: Optional[Mapping[str, str]] = None) -> int:
    env = os.environ if env is None else env
    return _get_int_env(env, "KEYPOOL_SWEEP_INTERVAL", DEFAULT_SWEEP_INTERVAL, 1)
