from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

OutputCallback = Callable[[str], Awaitable[None]]
ExitCallback = Callable[[int], Awaitable[None]]


@dataclass(frozen=True)
class SandboxLimits:
    memory: str = "256m"
    cpus: str = "0.5"
    network_disabled: bool = True


class SandboxProcess(Protocol):
    """Handle to one spawned sandbox.

    Output chunks are delivered to on_output in order; on_exit is awaited
    exactly once after the last chunk.
    """

    @property
    def pid(self) -> int | None: ...

    async def write(self, data: bytes) -> None: ...

    def kill(self) -> None: ...


class SandboxBackend(Protocol):
    """Abstract sandbox substrate.

    spawn() must return once the process exists. kill() on the handle and
    kill_by_name() are independent, non-blocking termination requests.
    """

    async def spawn(
        self,
        *,
        name: str,
        workdir: str,
        entry_file: str,
        limits: SandboxLimits,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> SandboxProcess: ...

    async def kill_by_name(self, name: str) -> None: ...
