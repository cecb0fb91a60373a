"""
PiSentinel Logging Module

Structured logging shared by all components.
"""

from .structured import (
    # Setup
    setup_logging,
    get_logger,

    # Processors
    redact_secrets,
    add_service_context,

    # Context
    bind_instance,
    instance_id_var,
    service_name_var,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "redact_secrets",
    "add_service_context",
    "bind_instance",
    "instance_id_var",
    "service_name_var",
]
