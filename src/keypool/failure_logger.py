import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from .error_handler import mask_credential
from .models import KeyRecord, ProbeError, ProbeOutcome, ProbeRateLimited

# Module-level state for resilience
_file_handler = None
_fallback_mode = False

LOG_DIR_ENV = "KEYPOOL_LOG_DIR"


class JsonFormatter(logging.Formatter):
    def format(self, record):
        # The message is already a dict, so we just format it as a JSON string
        return json.dumps(record.msg)


def _create_file_handler():
    """Create file handler with directory auto-recreation."""
    global _file_handler, _fallback_mode
    log_dir = os.getenv(LOG_DIR_ENV, "logs")

    try:
        os.makedirs(log_dir, exist_ok=True)
        handler = RotatingFileHandler(
            os.path.join(log_dir, "probe_failures.log"),
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=2,
            delay=True,
        )
        handler.setFormatter(JsonFormatter())
        _file_handler = handler
        _fallback_mode = False
        return handler
    except (OSError, PermissionError) as e:
        logging.getLogger("keypool").warning(
            f"Cannot create probe failure log file handler: {e}"
        )
        _fallback_mode = True
        return None


def _get_failure_logger() -> logging.Logger:
    """Returns the dedicated JSON logger, attaching a file handler on first use."""
    logger = logging.getLogger("keypool.probe_failures")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if _file_handler is None or _fallback_mode:
        for old_handler in logger.handlers:
            old_handler.close()
        logger.handlers.clear()
        handler = _create_file_handler()
        logger.addHandler(handler if handler else logging.NullHandler())
    return logger


main_lib_logger = logging.getLogger("keypool")


def log_probe_failure(
    key: KeyRecord,
    outcome: ProbeOutcome,
    model: Optional[str] = None,
    error: Optional[Exception] = None,
):
    """
    Writes a detailed JSON entry for a failed probe to probe_failures.log and
    a one-line summary to the library logger. Successful outcomes are ignored.
    """
    if not isinstance(outcome, (ProbeError, ProbeRateLimited)):
        return

    detailed_log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "key_id": key.id,
        "api_key_ending": mask_credential(key.secret),
        "model": model,
        "outcome": outcome.kind,
        "error_type": type(error).__name__ if error is not None else None,
        "error_message": str(error)[:5000] if error is not None else None,
        "retry_after": getattr(outcome, "retry_after_seconds", None),
    }

    summary_message = (
        f"Probe failed for key {key.display_name} ({mask_credential(key.secret)}). "
        f"Outcome: {outcome.kind}. See probe_failures.log for details."
    )

    try:
        _get_failure_logger().error(detailed_log_data)
    except OSError as e:
        global _fallback_mode
        _fallback_mode = True
        main_lib_logger.error(f"Failed to write to probe_failures.log: {e}")

    main_lib_logger.warning(summary_message)
