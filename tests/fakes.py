from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from nixpackpy.errors import SandboxError


class FakeClient:
    def __init__(
        self, session_id: str = "client-1", *, open: bool = True, fail_send: bool = False
    ) -> None:
        self.session_id = session_id
        self.environment_id: str | None = None
        self.open = open
        self.fail_send = fail_send
        self.sent: list[dict[str, Any]] = []

    @property
    def is_open(self) -> bool:
        return self.open

    async def send(self, message: dict[str, Any]) -> None:
        if self.fail_send:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    def events(self) -> list[str]:
        return [m["event"] for m in self.sent]

    def of(self, event: str) -> list[dict[str, Any]]:
        return [m["data"] for m in self.sent if m["event"] == event]


class FakeProcess:
    def __init__(self, on_output, on_exit) -> None:
        self._on_output = on_output
        self._on_exit = on_exit
        self.killed = False
        self.fail_writes = False
        self.written: list[bytes] = []

    @property
    def pid(self) -> int | None:
        return 4242

    async def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise SandboxError("pty closed")
        self.written.append(data)

    def kill(self) -> None:
        self.killed = True

    async def emit(self, text: str) -> None:
        await self._on_output(text)

    async def finish(self, code: int) -> None:
        await self._on_exit(code)


@dataclass
class SpawnCall:
    name: str
    workdir: str
    entry_file: str
    files: dict[str, str]
    process: FakeProcess
    limits: Any = None


@dataclass
class FakeBackend:
    fail_spawn: bool = False
    spawned: list[SpawnCall] = field(default_factory=list)
    killed_names: list[str] = field(default_factory=list)

    async def spawn(self, *, name, workdir, entry_file, limits, on_output, on_exit):
        if self.fail_spawn:
            raise SandboxError("docker is not available")
        root = Path(workdir)
        files = {
            str(p.relative_to(root)): p.read_text(encoding="utf-8")
            for p in sorted(root.rglob("*"))
            if p.is_file()
        }
        proc = FakeProcess(on_output, on_exit)
        self.spawned.append(
            SpawnCall(
                name=name,
                workdir=workdir,
                entry_file=entry_file,
                files=files,
                process=proc,
                limits=limits,
            )
        )
        return proc

    async def kill_by_name(self, name: str) -> None:
        self.killed_names.append(name)

    @property
    def last(self) -> SpawnCall:
        return self.spawned[-1]
