from __future__ import annotations

import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .control import VMControlClient, VMControlError
from .failures import CreateFailed, DeleteFailed, FailureReason
from .payload import DEFAULT_PAYLOAD_BYTES
from .tunnel import (
    CONNECT_GRACE_SECONDS,
    DEFAULT_PORT,
    DEFAULT_WAIT_SECONDS,
    TunnelResult,
    TunnelSession,
)

LOGGER = logging.getLogger("vmload.lifecycle")

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_STARTUP_SCRIPT_PATH = BASE_DIR / "scripts" / "startup.sh"
DEFAULT_IMAGE = "ghcr.io/cirruslabs/macos-tahoe-base:latest"
DEFAULT_NAME_PREFIX = "vmload"


class Outcome(enum.Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


def load_startup_script(path: Optional[Path] = None) -> str:
    return (path or DEFAULT_STARTUP_SCRIPT_PATH).read_text(encoding="utf-8")


def generate_vm_name(prefix: str = DEFAULT_NAME_PREFIX) -> str:
    return f"{prefix}-{uuid.uuid4()}"


@dataclass(frozen=True)
class LifecycleConfig:
    image: str = DEFAULT_IMAGE
    startup_script: str = ""
    headless: bool = True
    payload_size: int = DEFAULT_PAYLOAD_BYTES
    port: int = DEFAULT_PORT
    wait_seconds: int = DEFAULT_WAIT_SECONDS
    connect_timeout: Optional[float] = None
    idle_timeout: Optional[float] = None
    tunnel_after_failed_create: bool = False
    name_prefix: str = DEFAULT_NAME_PREFIX

    @property
    def effective_connect_timeout(self) -> float:
        if self.connect_timeout is not None:
            return self.connect_timeout
        return self.wait_seconds + CONNECT_GRACE_SECONDS


@dataclass
class LifecycleRun:
    name: str
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    outcome: Outcome = Outcome.PENDING
    failure: Optional[FailureReason] = None
    create_status: Optional[int] = None
    delete_status: Optional[int] = None
    delete_attempted: bool = False
    delete_failure: Optional[FailureReason] = None
    tunnel: Optional[TunnelResult] = None

    @property
    def duration_s(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return max(self.finished_at - self.started_at, 0.0)

    def record_failure(self, reason: FailureReason) -> None:
        # the first failure decides the outcome
        if self.failure is None:
            self.failure = reason

    def complete(self) -> None:
        self.finished_at = time.time()
        self.outcome = Outcome.FAILED if self.failure is not None else Outcome.PASSED


class LifecycleExecutor:
    """Runs create, tunnel-verify and delete for one virtual-user iteration."""

    def __init__(self, control: VMControlClient, config: LifecycleConfig) -> None:
        self._control = control
        self._config = config

    @property
    def config(self) -> LifecycleConfig:
        return self._config

    async def run(self, name: Optional[str] = None) -> LifecycleRun:
        run = LifecycleRun(name=name or generate_vm_name(self._config.name_prefix))

        try:
            created = await self._create(run)
            if created or self._config.tunnel_after_failed_create:
                await self._verify_tunnel(run)
        finally:
            await self._delete(run)

        run.complete()
        return run

    async def _create(self, run: LifecycleRun) -> bool:
        try:
            run.create_status = await self._control.create_vm(
                run.name,
                image=self._config.image,
                startup_script=self._config.startup_script,
                headless=self._config.headless,
            )
        except VMControlError as exc:
            run.create_status = exc.status
            reason = CreateFailed(status=exc.status, cause=None if exc.status else str(exc))
            run.record_failure(reason)
            LOGGER.warning("Failed to create VM %s: %s", run.name, reason)
            return False
        return True

    async def _verify_tunnel(self, run: LifecycleRun) -> None:
        session = TunnelSession(
            self._control.session,
            self._control.port_forward_url(
                run.name, self._config.port, self._config.wait_seconds
            ),
            payload_size=self._config.payload_size,
            vm_name=run.name,
            headers=self._control.headers,
            connect_timeout=self._config.effective_connect_timeout,
            idle_timeout=self._config.idle_timeout,
        )
        result = await session.run()
        run.tunnel = result
        if result.failure is not None:
            run.record_failure(result.failure)
            LOGGER.warning("Port-forward check failed for VM %s: %s", run.name, result.failure)

    async def _delete(self, run: LifecycleRun) -> None:
        run.delete_attempted = True
        try:
            run.delete_status = await self._control.delete_vm(run.name)
        except VMControlError as exc:
            run.delete_status = exc.status
            reason = DeleteFailed(status=exc.status, cause=None if exc.status else str(exc))
            run.delete_failure = reason
            run.record_failure(reason)
            LOGGER.warning("Failed to delete VM %s: %s", run.name, reason)


__all__ = [
    "DEFAULT_IMAGE",
    "DEFAULT_NAME_PREFIX",
    "DEFAULT_STARTUP_SCRIPT_PATH",
    "LifecycleConfig",
    "LifecycleExecutor",
    "LifecycleRun",
    "Outcome",
    "generate_vm_name",
    "load_startup_script",
]
