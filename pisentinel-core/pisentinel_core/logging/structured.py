"""
PiSentinel Structured Logging
=============================

Usage:
    from pisentinel_core.logging import setup_logging, bind_instance

    setup_logging(service_name="pisentinel")

    with bind_instance("a1b2"):
        logger.info("session_renewed")

Component modules log through ``structlog.get_logger(__name__)``; records are
rendered by the stdlib root handler so third-party (httpx) logs share the same
format. Secrets never reach the output: the redaction processor masks
password, TOTP, session and key-material fields.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, MutableMapping

import structlog

service_name_var: ContextVar[str] = ContextVar("service_name", default="pisentinel")
instance_id_var: ContextVar[str] = ContextVar("instance_id", default="")

REDACTED = "<redacted>"

SENSITIVE_KEYS = frozenset({
    "password",
    "totp",
    "sid",
    "csrf",
    "master_key",
    "key_material",
    "x-ftl-sid",
    "x-ftl-csrf",
})


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor that masks sensitive values, including nested headers/bodies."""
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if str(key).lower() in SENSITIVE_KEYS and value is not None:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = _redact_mapping(value)
    return event_dict


def _redact_mapping(mapping: Dict[str, Any]) -> Dict[str, Any]:
    redacted = {}
    for key, value in mapping.items():
        if str(key).lower() in SENSITIVE_KEYS:
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = _redact_mapping(value)
        else:
            redacted[key] = value
    return redacted


def add_service_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Attach the service name and the instance currently being worked on."""
    event_dict.setdefault("service", service_name_var.get())
    instance_id = instance_id_var.get()
    if instance_id:
        event_dict.setdefault("instance_id", instance_id)
    return event_dict


@contextmanager
def bind_instance(instance_id: str) -> Iterator[None]:
    """Tag every record emitted inside the block with ``instance_id``."""
    token = instance_id_var.set(instance_id)
    try:
        yield
    finally:
        instance_id_var.reset(token)


def setup_logging(
    service_name: str = "pisentinel",
    level: str = "INFO",
    json_output: bool = True,
) -> logging.Logger:
    """
    Configure stdlib logging and structlog for the process.

    Args:
        service_name: Name stamped on every record
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines (production) or human-readable console output

    Returns:
        Configured root logger
    """
    service_name_var.set(service_name)
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    structlog.get_logger(__name__).info("logging_configured", service=service_name)
    return root_logger


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger with the given name."""
    return structlog.get_logger(name)
