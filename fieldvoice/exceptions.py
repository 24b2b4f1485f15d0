"""
FIELDVOICE Custom Exceptions

Domain-specific exception hierarchy for the voice command pipeline. Every
stage-terminal failure is one of these, carrying a FailureKind so the
orchestrator can map it to a user-facing recovery action.

Exception Hierarchy:
    FieldVoiceError (base)
    ├── ConfigurationError
    └── VoicePipelineError
        ├── DeviceUnavailableError
        ├── LowConfidenceError
        ├── NoProviderAvailableError
        ├── MalformedProviderOutputError
        │   └── InvalidReasoningOutputError
        ├── UserCancelledError
        └── ProviderTransientError
"""

from typing import Any, Optional

from fieldvoice.types import FailureKind, ProviderRole


class FieldVoiceError(Exception):
    """Base exception for all FIELDVOICE errors.

    Attributes:
        message: Human-readable error description
        details: Optional dict with additional error context
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(FieldVoiceError):
    """Error in configuration file or settings."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_file: Optional[str] = None,
    ) -> None:
        details = {}
        if config_key:
            details["config_key"] = config_key
        if config_file:
            details["config_file"] = config_file
        super().__init__(message, details)
        self.config_key = config_key
        self.config_file = config_file


# =============================================================================
# Pipeline Errors
# =============================================================================

class VoicePipelineError(FieldVoiceError):
    """Base class for failures that terminate a pipeline stage.

    Subclasses pin ``kind``; the orchestrator only ever looks at the kind.
    """

    kind: FailureKind = FailureKind.PROVIDER_TRANSIENT

    def __init__(
        self,
        message: str,
        role: Optional[ProviderRole] = None,
        provider: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs
        if role is not None:
            details["role"] = role.value
        if provider:
            details["provider"] = provider
        super().__init__(message, details)
        self.role = role
        self.provider = provider


class DeviceUnavailableError(VoicePipelineError):
    """Microphone cannot be acquired (permission denied or no input device)."""

    kind = FailureKind.DEVICE_UNAVAILABLE

    def __init__(self, message: str, device: Optional[str] = None) -> None:
        super().__init__(message)
        if device:
            self.details["device"] = device
        self.device = device


class LowConfidenceError(VoicePipelineError):
    """Final transcript confidence fell below the trust floor."""

    kind = FailureKind.LOW_CONFIDENCE

    def __init__(
        self,
        message: str,
        confidence: float,
        floor: float,
        provider: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            role=ProviderRole.STT,
            provider=provider,
            confidence=round(confidence, 3),
            floor=floor,
        )
        self.confidence = confidence
        self.floor = floor


class NoProviderAvailableError(VoicePipelineError):
    """No viable provider for a role under the current degradation level."""

    kind = FailureKind.NO_PROVIDER_AVAILABLE


class MalformedProviderOutputError(VoicePipelineError):
    """Provider reply was undecodable or violated the expected shape."""

    kind = FailureKind.MALFORMED_PROVIDER_OUTPUT


class InvalidReasoningOutputError(MalformedProviderOutputError):
    """Reasoning reply was malformed or violated the intent schema."""

    kind = FailureKind.INVALID_REASONING_OUTPUT


class UserCancelledError(VoicePipelineError):
    """Turn aborted by an explicit user stop. Never retried."""

    kind = FailureKind.USER_CANCELLED


class ProviderTransientError(VoicePipelineError):
    """Timeout, network error or quota exhaustion at a provider."""

    kind = FailureKind.PROVIDER_TRANSIENT

    def __init__(
        self,
        message: str,
        role: Optional[ProviderRole] = None,
        provider: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        extra = {"status": status} if status is not None else {}
        super().__init__(message, role=role, provider=provider, **extra)
        self.status = status


# =============================================================================
# Convenience aliases
# =============================================================================

Error = FieldVoiceError
