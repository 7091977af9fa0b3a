"""Typed errors raised by the biometric pipeline.

Every error carries a stable machine-readable ``code`` so the API layer can
return ``{"error": ..., "code": ...}`` without inspecting messages.
"""

from __future__ import annotations


class BiometricServiceError(Exception):
    """Generic orchestration failure.

    Attributes:
        code:      Stable error code (e.g. 'DEVICE_CONNECTION_FAILED').
        user_id:   User the failure relates to, if any.
        device_id: Device the failure relates to, if any.
    """

    default_code = "BIOMETRIC_SERVICE_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        user_id: str | None = None,
        device_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.user_id = user_id
        self.device_id = device_id

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class DeviceConnectionError(BiometricServiceError):
    """A device adapter failed or timed out.  Safe to retry."""

    default_code = "DEVICE_CONNECTION_ERROR"
    retryable = True


class DeviceNotFoundError(BiometricServiceError):
    default_code = "DEVICE_NOT_FOUND"


class DataValidationError(BiometricServiceError):
    """A reading batch could not be interpreted.  The caller must fix the input."""

    default_code = "DATA_VALIDATION_ERROR"


class PrivacyViolationError(BiometricServiceError):
    """A consent or aggregation rule would be breached."""

    default_code = "PRIVACY_VIOLATION"


class ProfileNotFoundError(BiometricServiceError):
    default_code = "PROFILE_NOT_FOUND"

    def __init__(self, user_id: str) -> None:
        super().__init__(
            f"Biometric profile not found for user {user_id}", user_id=user_id
        )


class StreamError(BiometricServiceError):
    default_code = "STREAM_ERROR"
