"""Operational log for the AI proxy.

Every /ai-proxy call ends in one JSON outcome line on the ``gateway`` logger
(success or the rejection kind), keyed by the request id and the caller once
known. A credit that could not be consumed adds a ``credit_commit_failed``
line, and interaction writes that fail or time out report to the same logger.
Lines go to stdout and to the log file named by ``log_file`` in the config.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("gateway")


def setup_logging(log_file: str) -> None:
    """Configure the gateway logger with stdout and file handlers.

    Args:
        log_file: Path to the append-only log file.
    """
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(logging.INFO)
        stdout_fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        stdout_handler.setFormatter(stdout_fmt)
        logger.addHandler(stdout_handler)

        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(stdout_fmt)
        logger.addHandler(file_handler)


def log_request(
    *,
    outcome: str,
    request_id: str,
    user_id: Optional[str] = None,
    provider: Optional[str] = None,
    error: Optional[str] = None,
    wait_seconds: Optional[int] = None,
    usage: Optional[Dict[str, Any]] = None,
) -> None:
    """Log a single request outcome as one JSON line.

    Args:
        outcome: Short outcome label (e.g. "success", "rate_limited").
        request_id: Gateway-assigned request ID.
        user_id: The caller's identity, once known.
        provider: The requested provider, once validated.
        error: Operator-facing error detail if the request failed.
        wait_seconds: Retry-after for rate-limited requests.
        usage: Provider token accounting if available.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "user_id": user_id,
        "provider": provider,
        "outcome": outcome,
    }

    if error:
        record["error"] = error

    if wait_seconds is not None:
        record["wait_seconds"] = wait_seconds

    if usage:
        record["usage"] = usage

    level = logging.INFO if outcome == "success" else logging.WARNING
    logger.log(level, json.dumps(record))
