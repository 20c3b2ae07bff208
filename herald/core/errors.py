# herald/core/errors.py
"""
Error taxonomy for the publish pipeline.

Fatal errors are raised; per-item problems are reported as ``Skipped``
records so callers can inspect why something was left out.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

# Error message of a DeliveryResult when the transport did not settle in time
TIMEOUT_ERROR = "timeout"


class PublishError(Exception):
    """Base exception for publish pipeline operations"""
    pass


class ConfigurationError(PublishError):
    """Mandatory connection settings are missing or invalid"""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = list(missing or [])


class EmptyTargetSetError(PublishError):
    """Target selection resolved to zero delivery addresses"""

    def __init__(self, channel: str):
        super().__init__(f"No targets resolved for channel '{channel}'")
        self.channel = channel


class TransportError(PublishError):
    """Outbound transport rejected the message or failed at protocol level"""
    pass


class SkipReason(Enum):
    """Why a single target, attachment or address was left out"""
    INVALID_REFERENCE = "invalid_reference"
    NOT_FOUND = "not_found"
    MISSING_TARGET_TYPE = "missing_target_type"
    UNSUPPORTED_TARGET_TYPE = "unsupported_target_type"
    INVALID_VALUE = "invalid_value"
    PATH_REJECTED = "path_rejected"
    UNREADABLE = "unreadable"


@dataclass(frozen=True)
class Skipped:
    """A non-fatal exclusion recorded during resolution"""
    reason: SkipReason
    ref: Any
    detail: str = ""

    @property
    def is_security_rejection(self) -> bool:
        return self.reason == SkipReason.PATH_REJECTED
