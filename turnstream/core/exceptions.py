"""
Exception hierarchy for turnstream.

Every error raised by the stream reconciliation engine, the content
aggregator, or the context pruner inherits from TurnStreamException so the
orchestration layer can serialize it with to_dict() and decide whether the
turn may be retried.

Design Principles:
- Technical details are preserved for logging
- A user-facing message and recovery suggestions accompany every error
- None of these errors is retryable: each one signals a contract violation
  or a payload the provider would reject anyway
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class ErrorSeverity(Enum):
    """Severity levels for exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TurnStreamException(Exception):
    """
    Base exception class for all turnstream errors.

    Attributes:
        message: Technical error message for logging
        user_facing_message: User-friendly error message
        recovery_suggestions: List of suggested actions for recovery
        severity: Error severity level
        error_code: Unique error code for tracking
        retryable: Whether repeating the same call could succeed
        metadata: Additional error context
    """

    def __init__(
        self,
        message: str,
        user_facing_message: Optional[str] = None,
        recovery_suggestions: Optional[List[str]] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        error_code: Optional[str] = None,
        retryable: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.user_facing_message = user_facing_message or message
        self.recovery_suggestions = recovery_suggestions or []
        self.severity = severity
        self.error_code = error_code or self.__class__.__name__
        self.retryable = retryable
        self.metadata = metadata or {}
        self.timestamp = datetime.now(timezone.utc)

    def user_message(self) -> str:
        """Get the user-friendly error message."""
        return self.user_facing_message

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for structured error reporting.

        Returns:
            Dictionary representation of the exception
        """
        return {
            "error": self.error_code,
            "message": self.user_facing_message,
            "technical_message": self.message,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "recovery_suggestions": self.recovery_suggestions,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        """String representation for logging."""
        return f"{self.error_code}: {self.message}"


class ContextMissingError(TurnStreamException):
    """
    Raised when the per-turn context needed to route an event is absent.

    This is a programming-contract violation upstream: a missing dispatch
    sink, missing run metadata, or an agent context that was never
    registered. Callers must not attempt recovery.
    """

    def __init__(
        self,
        message: str = "No config provided",
        missing: Optional[Sequence[str]] = None,
        **kwargs,
    ):
        self.missing = list(missing or [])
        metadata = kwargs.pop("metadata", {})
        metadata["missing"] = self.missing

        super().__init__(
            message=message,
            user_facing_message=kwargs.pop(
                "user_facing_message",
                "The response stream could not be routed to a destination.",
            ),
            recovery_suggestions=kwargs.pop(
                "recovery_suggestions",
                [
                    "Pass the run config and metadata with every streamed chunk",
                    "Register an agent context before streaming starts",
                ],
            ),
            severity=kwargs.pop("severity", ErrorSeverity.CRITICAL),
            metadata=metadata,
            **kwargs,
        )


class MissingMetadataError(ContextMissingError):
    """Raised when a step key cannot be built because coordinates are missing."""

    def __init__(self, missing: Sequence[str], **kwargs):
        names = ", ".join(missing)
        super().__init__(
            message=f"Missing metadata: {names}",
            missing=missing,
            user_facing_message="The response stream is missing run metadata.",
            recovery_suggestions=[
                "Ensure run_id, thread_id, langgraph_node and langgraph_step are set",
            ],
            **kwargs,
        )


class StepLookupMissError(TurnStreamException):
    """
    Raised when a run step cannot be found for a step key or tool call id.

    The reconciliation engine catches this, logs it, and drops the delta.
    """

    def __init__(self, key: str, kind: str = "step_key", **kwargs):
        self.key = key
        self.kind = kind
        super().__init__(
            message=f"No step found for {kind} {key}",
            user_facing_message="Part of the streamed response could not be placed.",
            severity=ErrorSeverity.MEDIUM,
            metadata={"key": key, "kind": kind},
            **kwargs,
        )


class ContentTypeMismatchError(TurnStreamException):
    """Raised in strict aggregation when an update changes a part's type family."""

    def __init__(self, index: int, existing_type: str, incoming_type: str, **kwargs):
        self.index = index
        self.existing_type = existing_type
        self.incoming_type = incoming_type
        super().__init__(
            message=(
                f"Content type mismatch at index {index}: "
                f"{incoming_type} does not extend {existing_type}"
            ),
            severity=ErrorSeverity.LOW,
            metadata={
                "index": index,
                "existing_type": existing_type,
                "incoming_type": incoming_type,
            },
            **kwargs,
        )


class MalformedThinkingSequenceError(TurnStreamException):
    """
    Raised when pruning cannot keep a mandatory thinking block in the window.

    Providers with extended reasoning reject tool-using assistant turns whose
    thinking block was dropped, so the payload is never sent.
    """

    def __init__(self, reason: str, max_tokens: Optional[int] = None, **kwargs):
        self.reason = reason
        self.max_tokens = max_tokens
        super().__init__(
            message=f"Malformed thinking sequence: {reason}",
            user_facing_message=(
                "The conversation is too long to keep the model's reasoning "
                "for the current tool step."
            ),
            recovery_suggestions=[
                "Increase the max context tokens",
                "Shorten the message",
            ],
            severity=ErrorSeverity.HIGH,
            metadata={"reason": reason, "max_tokens": max_tokens},
            **kwargs,
        )


class EmptyContextAfterPruningError(TurnStreamException):
    """Raised when the budget cannot fit even the newest message."""

    def __init__(
        self,
        max_tokens: int,
        required_tokens: Optional[int] = None,
        message_count: int = 0,
        **kwargs,
    ):
        self.max_tokens = max_tokens
        self.required_tokens = required_tokens
        detail = f" (needs at least {required_tokens})" if required_tokens is not None else ""
        super().__init__(
            message=f"No messages fit within {max_tokens} tokens{detail}",
            user_facing_message="The message is too long for this model's context window.",
            recovery_suggestions=[
                "Increase the max context tokens",
                "Shorten the message or the system instructions",
            ],
            severity=ErrorSeverity.HIGH,
            metadata={
                "max_tokens": max_tokens,
                "required_tokens": required_tokens,
                "message_count": message_count,
            },
            **kwargs,
        )
