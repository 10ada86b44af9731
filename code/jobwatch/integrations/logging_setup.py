"""structlog configuration for jobwatch.

Watcher events carry the job as ``key=...``; anything logged while a status
check runs (the REST client, poll functions) picks up ``job_key`` from the
context the watcher binds for that check.  Both end up under ``job_key`` so a
single job can be followed through one field.

``configure_logging()`` is called by ``jobwatch.session.open_session``; call
it directly only when wiring the watcher by hand.
"""
from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping, Optional

import structlog

from jobwatch import __version__
from jobwatch.config import settings

_configured = False


def configure_logging(
    level: Optional[str] = None,
    json_logs: Optional[bool] = None,
    force: bool = False,
) -> None:
    """Configure structlog once per process.

    Args:
        level: Log level name; defaults to ``settings.LOG_LEVEL``.
        json_logs: Force JSON (True) or console (False) rendering.  By default
            local environments get the console renderer.
        force: Reconfigure even if logging was already set up.
    """
    global _configured
    if _configured and not force:
        return

    level_name = (level or settings.LOG_LEVEL or "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)
    use_json = (not settings.is_local) if json_logs is None else json_logs

    root = logging.getLogger()
    root.setLevel(log_level)
    if not root.handlers:
        root.addHandler(logging.StreamHandler(sys.stdout))
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.configure(
        processors=build_processors(json_logs=use_json),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True
    structlog.get_logger(__name__).debug("logging_configured", level=level_name, json=use_json)


def build_processors(json_logs: bool) -> list:
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=True)
    return [
        promote_job_key,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_service_context,
        structlog.processors.format_exc_info,
        renderer,
    ]


def promote_job_key(
    logger: Any,
    method: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Report the watched job under ``job_key`` whichever way it was logged."""
    if "key" in event_dict and "job_key" not in event_dict:
        event_dict["job_key"] = event_dict.pop("key")
    return event_dict


def add_service_context(
    logger: Any,
    method: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    event_dict.setdefault("service", settings.SERVICE_NAME)
    event_dict.setdefault("env", settings.ENVIRONMENT)
    event_dict.setdefault("version", __version__)
    return event_dict


def reset_logging() -> None:
    """Undo ``configure_logging`` (tests)."""
    global _configured
    structlog.reset_defaults()
    _configured = False
