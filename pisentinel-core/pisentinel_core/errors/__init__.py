"""
PiSentinel Core - Errors
========================
Error classification and user-facing messages.
"""

from .classification import ErrorKind, USER_MESSAGES, classify, user_message

__all__ = [
    "ErrorKind",
    "USER_MESSAGES",
    "classify",
    "user_message",
]
