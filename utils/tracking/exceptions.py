"""
Error taxonomy for the detection core.

Each error carries a ``retryable`` flag so the scheduler invoking a
detection pass can decide whether to back off and retry.
"""

from __future__ import annotations

from typing import Optional


class TailguardError(Exception):
    """Base class for detection core errors."""

    retryable = False


class TransientStorageError(TailguardError):
    """Storage read/write timed out or hit lock contention."""

    retryable = True


class MalformedInputError(TailguardError):
    """An advertisement payload or record could not be interpreted."""


class ConfigurationError(TailguardError):
    """Detection configuration is invalid. Never retried."""


class ComputationError(TailguardError):
    """Unexpected failure while scoring a single device."""

    def __init__(self, device_id: int, message: str, cause: Optional[BaseException] = None):
        super().__init__(f'Device {device_id}: {message}')
        self.device_id = device_id
        self.cause = cause
