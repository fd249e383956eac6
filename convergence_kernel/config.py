"""
Kernel configuration loading.

Defaults live on the pydantic models in `convergence_kernel.models.config`.
`load_config` overlays `CK_`-prefixed environment variables on top:

    CK_DB_PATH                  — sqlite file backing the ledger and snapshot map
    CK_BACKEND_URL              — remote backend base URL; unset delivers in-process
    CK_LOG_LEVEL                — DEBUG, INFO, WARNING, ERROR
    CK_VALIDATION_MODE          — relaxed | strict
    CK_MAX_ATTEMPTS             — delivery attempts per operation
    CK_RETRY_DELAY_SECONDS      — base delay between attempts
    CK_BACKOFF                  — fixed | exponential
    CK_ENDPOINT                 — endpoint operations are sent to
    CK_REQUEST_TIMEOUT_SECONDS  — per-request timeout for HTTP delivery
    CK_ACTIVITY_FEED_SIZE       — entries kept in the recent-activity feed
"""

import os
from typing import Dict, Mapping, Optional

from convergence_kernel.models.config import KernelConfig

ENV_PREFIX = "CK_"

_TOP_LEVEL = {
    "DB_PATH": "db_path",
    "BACKEND_URL": "backend_url",
    "LOG_LEVEL": "log_level",
    "VALIDATION_MODE": "validation_mode",
}

_SUBMISSION = {
    "MAX_ATTEMPTS": "max_attempts",
    "RETRY_DELAY_SECONDS": "retry_delay_seconds",
    "BACKOFF": "backoff",
    "BACKOFF_MULTIPLIER": "backoff_multiplier",
    "MAX_RETRY_DELAY_SECONDS": "max_retry_delay_seconds",
    "ENDPOINT": "endpoint",
    "REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
}

_RECONCILER = {
    "ACTIVITY_FEED_SIZE": "activity_feed_size",
}


def load_config(environ: Optional[Mapping[str, str]] = None) -> KernelConfig:
    """
    Build a KernelConfig from the environment.

    Values are handed to pydantic as strings; invalid ones raise
    pydantic.ValidationError here, before any component is constructed.
    """
    if environ is None:
        environ = os.environ

    data: Dict[str, object] = {}
    submission: Dict[str, str] = {}
    reconciler: Dict[str, str] = {}

    for suffix, field in _TOP_LEVEL.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value is not None:
            data[field] = value

    for suffix, field in _SUBMISSION.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value is not None:
            submission[field] = value

    for suffix, field in _RECONCILER.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value is not None:
            reconciler[field] = value

    if submission:
        data["submission"] = submission
    if reconciler:
        data["reconciler"] = reconciler

    return KernelConfig.model_validate(data)
