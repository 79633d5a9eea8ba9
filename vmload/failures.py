"""
Typed failure reasons attached to a lifecycle run.

Every reason carries a stable ``kind`` used as the aggregation key and a
``describe()`` rendering that keeps the diagnostic context (status codes,
close codes, byte counts) that produced it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional


@dataclass(frozen=True)
class FailureReason:
    kind: ClassVar[str] = "failure"

    def describe(self) -> str:
        return self.kind

    def __str__(self) -> str:
        return self.describe()


@dataclass(frozen=True)
class CreateFailed(FailureReason):
    kind: ClassVar[str] = "create_failed"

    status: Optional[int] = None
    cause: Optional[str] = None

    def describe(self) -> str:
        if self.status is not None:
            return f"VM creation failed: HTTP {self.status}"
        return f"VM creation failed: {self.cause or 'unknown error'}"


@dataclass(frozen=True)
class DeleteFailed(FailureReason):
    kind: ClassVar[str] = "delete_failed"

    status: Optional[int] = None
    cause: Optional[str] = None

    def describe(self) -> str:
        if self.status is not None:
            return f"VM deletion failed: HTTP {self.status}"
        return f"VM deletion failed: {self.cause or 'unknown error'}"


@dataclass(frozen=True)
class ConnectFailed(FailureReason):
    kind: ClassVar[str] = "connect_failed"

    cause: str = ""

    def describe(self) -> str:
        return f"port-forward connect failed: {self.cause}"


@dataclass(frozen=True)
class ConnectTimeout(FailureReason):
    kind: ClassVar[str] = "connect_timeout"

    seconds: float = 0.0

    def describe(self) -> str:
        return f"port-forward did not open within {self.seconds:g}s"


@dataclass(frozen=True)
class TransportError(FailureReason):
    kind: ClassVar[str] = "transport_error"

    cause: str = ""

    def describe(self) -> str:
        return f"WebSocket error: {self.cause}"


@dataclass(frozen=True)
class IdleTimeout(FailureReason):
    kind: ClassVar[str] = "idle_timeout"

    seconds: float = 0.0

    def describe(self) -> str:
        return f"no data received for {self.seconds:g}s"


@dataclass(frozen=True)
class AbnormalClose(FailureReason):
    kind: ClassVar[str] = "abnormal_close"

    code: Optional[int] = None

    def describe(self) -> str:
        return f"connection closed with code {self.code}, expected 1000"


@dataclass(frozen=True)
class ByteCountMismatch(FailureReason):
    kind: ClassVar[str] = "byte_count_mismatch"

    expected: int = 0
    actual: int = 0

    def describe(self) -> str:
        return f"expected {self.expected} bytes back, received {self.actual}"


@dataclass(frozen=True)
class DigestMismatch(FailureReason):
    kind: ClassVar[str] = "digest_mismatch"

    expected: str = ""
    actual: str = ""

    def describe(self) -> str:
        return f"sha256 mismatch: sent {self.expected}, received {self.actual}"


@dataclass(frozen=True)
class Interrupted(FailureReason):
    kind: ClassVar[str] = "interrupted"

    grace_seconds: Optional[float] = None

    def describe(self) -> str:
        if self.grace_seconds is None:
            return "lifecycle cancelled before it finished"
        return f"lifecycle still running {self.grace_seconds:g}s after stop, cancelled"


@dataclass(frozen=True)
class UnexpectedError(FailureReason):
    kind: ClassVar[str] = "unexpected_error"

    cause: str = ""

    def describe(self) -> str:
        return f"lifecycle crashed: {self.cause}"


__all__ = [
    "AbnormalClose",
    "ByteCountMismatch",
    "ConnectFailed",
    "ConnectTimeout",
    "CreateFailed",
    "DeleteFailed",
    "DigestMismatch",
    "FailureReason",
    "IdleTimeout",
    "Interrupted",
    "TransportError",
    "UnexpectedError",
]
