"""Audit logging utilities.

Writes structured JSON lines to a dedicated audit log file and standard logger.
Each event describes a security-relevant action on Microsoft 365 credentials
(connect, disconnect, configuration changes). Never pass secrets as metadata.
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

_AUDIT_LOG_PATH = os.getenv("AUDIT_LOG_FILE", "storage/audit.log")
_logger = logging.getLogger("audit")


def log_audit_event(
    action: str,
    user_id: str | None = None,
    studio_id: str | None = None,
    status: str = "success",
    **metadata: Any,
) -> None:
    """Record an audit event.

    Parameters:
        action: A machine-readable action key (e.g. 'm365.connect.start', 'm365.config.save').
        user_id: The acting user's ID (if available).
        studio_id: Tenant the action applies to.
        status: 'success' | 'failure' | 'denied'.
        **metadata: Additional context fields (codes, flags, counts).
    """
    event = {
        "ts": int(time.time()),
        "action": action,
        "user_id": user_id,
        "studio_id": studio_id,
        "status": status,
        **metadata,
    }
    line = json.dumps(event, separators=(",", ":"), default=str)
    # Append to file (best effort)
    try:
        os.makedirs(os.path.dirname(_AUDIT_LOG_PATH), exist_ok=True)
        with open(_AUDIT_LOG_PATH, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except OSError:
        _logger.debug("Failed to write audit event to file: %s", event)
    _logger.info(line)


def log_failure(
    action: str,
    user_id: str | None = None,
    studio_id: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    log_audit_event(action, user_id=user_id, studio_id=studio_id, status="failure", error=error, **extra)
