"""Error taxonomy shared by the recording pipeline."""

from __future__ import annotations


class ProctorMediaError(RuntimeError):
    """Base class for all pipeline errors."""


class ValidationError(ProctorMediaError):
    """Raised when a request is malformed. Never retried."""


class PayloadTooLargeError(ValidationError):
    """Raised when an uploaded segment exceeds the configured size limit."""


class NotFoundError(ProctorMediaError):
    """Raised when a session, segment or recording reference cannot be resolved."""


class TransientBackendError(ProctorMediaError):
    """Raised for network or timeout failures that may succeed on retry."""


class DataLossError(ProctorMediaError):
    """Raised when bytes that should exist are missing from their backend."""


class ConsistencyError(ProctorMediaError):
    """Raised when a resolvable reference points at bytes that are not there."""


class NoValidInputError(ProctorMediaError):
    """Raised when a merge is attempted without a single valid segment."""


class InvalidTransitionError(ProctorMediaError):
    """Raised when a merge status change is not allowed by the state machine."""


class ConcatenationError(ProctorMediaError):
    """Raised when staged segments cannot be joined without re-encoding."""


__all__ = [
    "ConcatenationError",
    "ConsistencyError",
    "DataLossError",
    "InvalidTransitionError",
    "NoValidInputError",
    "NotFoundError",
    "PayloadTooLargeError",
    "ProctorMediaError",
    "TransientBackendError",
    "ValidationError",
]
