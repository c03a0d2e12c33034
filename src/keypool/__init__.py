import logging
from typing import TYPE_CHECKING

from .models import (
    BatchProgress,
    KeyPolicy,
    KeyRecord,
    KeyStatus,
    KeyUsage,
    LoadBalanceStrategy,
    ProbeError,
    ProbeMode,
    ProbeOutcome,
    ProbeRateLimited,
    ProbeSuccess,
    SelectionResult,
)
from .usage_tracker import record_outcome, try_recover
from .selector import select_key
from .recovery import BackgroundSweeper, sweep
from .pool import apply_results, effective_api_key, replace_key
from .config import load_policy_from_env

lib_logger = logging.getLogger("keypool")
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())

# The prober and transports are lazy-loaded via __getattr__
if TYPE_CHECKING:
    from .prober import KeyProber
    from .transports import HttpxTransport, LiteLLMTransport, ProbeRequest, ProbeTransport

__all__ = [
    "BatchProgress",
    "KeyPolicy",
    "KeyRecord",
    "KeyStatus",
    "KeyUsage",
    "LoadBalanceStrategy",
    "ProbeError",
    "ProbeMode",
    "ProbeOutcome",
    "ProbeRateLimited",
    "ProbeSuccess",
    "SelectionResult",
    "record_outcome",
    "try_recover",
    "select_key",
    "sweep",
    "BackgroundSweeper",
    "apply_results",
    "effective_api_key",
    "replace_key",
    "load_policy_from_env",
    "KeyProber",
    "ProbeRequest",
    "ProbeTransport",
    "LiteLLMTransport",
    "HttpxTransport",
]

_LAZY_TRANSPORTS = {"ProbeRequest", "ProbeTransport", "LiteLLMTransport", "HttpxTransport"}


def __getattr__(name):
    """Lazy-load the prober and transports to speed up module import."""
    if name == "KeyProber":
        from .prober import KeyProber
        return KeyProber
    if name in _LAZY_TRANSPORTS:
        from . import transports
        return getattr(transports, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
