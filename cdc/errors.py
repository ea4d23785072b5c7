from __future__ import annotations

from typing import Any, Optional

from cdc.models import StreamIdentifier


class SyncError(Exception):
    """Base for every error the sync core raises; carries where it happened."""

    def __init__(
        self,
        message: str,
        *,
        stream: Optional[StreamIdentifier] = None,
        position: Optional[Any] = None,
        phase: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stream = stream
        self.position = position
        self.phase = phase

    def context(self) -> dict[str, Any]:
        return {
            "stream": str(self.stream) if self.stream else None,
            "position": self.position,
            "phase": self.phase,
        }

    def __str__(self) -> str:
        details = ", ".join(f"{key}={value}" for key, value in self.context().items() if value is not None)
        if details:
            return f"{self.message} ({details})"
        return self.message


class ConfigError(SyncError):
    """Invalid catalog/state combination; raised before any phase starts."""


class TransientIOError(SyncError):
    """Connection dropped mid-snapshot or mid-stream; retryable."""


class PositionExpired(SyncError):
    """The resume position is no longer available on the transport."""


class SnapshotFailure(SyncError):
    """A stream's snapshot could not be completed in this invocation."""


class SyncTimeout(SyncError):
    """The whole sync invocation ran past its caller-supplied deadline."""
