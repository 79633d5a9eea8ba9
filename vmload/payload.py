from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

DEFAULT_PAYLOAD_BYTES = 64 * 1024
MAX_PAYLOAD_BYTES = 64 * 1024 * 1024


class GenerationError(ValueError):
    """Raised when a payload cannot be generated for the requested size."""


@dataclass(frozen=True)
class TunnelPayload:
    content: bytes
    digest: str

    @property
    def size(self) -> int:
        return len(self.content)


def digest_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def generate(size: int) -> TunnelPayload:
    """Return ``size`` fresh random bytes together with their SHA-256 hex digest."""
    if isinstance(size, bool) or not isinstance(size, int):
        raise GenerationError(f"payload size must be an integer, got {size!r}")
    if size <= 0:
        raise GenerationError(f"payload size must be positive, got {size}")
    if size > MAX_PAYLOAD_BYTES:
        raise GenerationError(
            f"payload size {size} exceeds the {MAX_PAYLOAD_BYTES} byte limit"
        )

    content = secrets.token_bytes(size)
    return TunnelPayload(content=content, digest=digest_of(content))


__all__ = [
    "DEFAULT_PAYLOAD_BYTES",
    "MAX_PAYLOAD_BYTES",
    "GenerationError",
    "TunnelPayload",
    "digest_of",
    "generate",
]
