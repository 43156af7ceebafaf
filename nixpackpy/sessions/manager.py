"""Per-environment sandbox session lifecycle.

Each environment has at most one running session. The session owns a
snapshot of the environment's files materialized into a working directory and
a sandbox process whose terminal output is relayed to every client watching
the environment.

State per environment: NO_SESSION -> STARTING -> RUNNING -> STOPPING ->
NO_SESSION. Explicit stop, process exit, last-client disconnect and restart all
return the environment to NO_SESSION.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from nixpackpy import config
from nixpackpy.errors import ValidationError
from nixpackpy.locks import KeyedLocks
from nixpackpy.sandbox_backends.base import SandboxLimits

if TYPE_CHECKING:  # pragma: no cover
    from nixpackpy.collab.registry import ClientRegistry
    from nixpackpy.files.store import FileStore
    from nixpackpy.sandbox_backends.base import SandboxBackend, SandboxProcess

logger = logging.getLogger(__name__)

DEFAULT_ENTRY_FILE = "main.py"
DEFAULT_ENTRY_BODY = 'import time\nwhile True:\n print("hello world")\n time.sleep(1)'
SANDBOX_NAME_PREFIX = "nixpackpy"

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]")


class SessionState(Enum):
    NO_SESSION = "no_session"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class Session:
    environment_id: str
    name: str
    workdir: str
    entry_file: str
    process: SandboxProcess | None = None
    state: SessionState = SessionState.STARTING
    # Set once the manager has stopped this session; late output/exit from the
    # old process must not reach clients of a newer run.
    detached: bool = field(default=False)


def content_hash(files: dict[str, str]) -> str:
    """SHA-256 over the compact JSON encoding of an ordered name -> content map.

    Matches a browser's JSON.stringify(files) byte for byte, so clients can
    compute the same digest locally.
    """
    raw = json.dumps(files, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _safe_label(environment_id: str) -> str:
    label = _UNSAFE_NAME_RE.sub("-", environment_id)
    if label != environment_id or not label.strip("."):
        digest = hashlib.sha256(environment_id.encode("utf-8")).hexdigest()[:8]
        label = f"{label}-{digest}"
    return label


def sandbox_name(environment_id: str) -> str:
    # Deterministic so at most one container per environment can exist.
    return f"{SANDBOX_NAME_PREFIX}_{_safe_label(environment_id)}"


def entry_file_for(file_names: list[str]) -> str:
    if DEFAULT_ENTRY_FILE in file_names:
        return DEFAULT_ENTRY_FILE
    if not file_names:
        raise ValidationError("fileNames must not be empty")
    return file_names[0]


def _safe_path(root: Path, rel_path: str) -> Path:
    p = rel_path.strip().lstrip("/")
    if not p:
        raise ValidationError("empty file name")
    full = (root / p).resolve()
    if root not in full.parents:
        raise ValidationError(f"file name escapes the working directory: {rel_path!r}")
    return full


def materialize_files(workdir: str, files: dict[str, str]) -> None:
    """Write files into workdir; every name is checked before anything is written."""
    root = Path(workdir).resolve()
    targets = [(_safe_path(root, name), content) for name, content in files.items()]
    root.mkdir(parents=True, exist_ok=True)
    for path, content in targets:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content if isinstance(content, str) else str(content), encoding="utf-8")


def fresh_run_dir(environment_dir: str) -> str:
    """Discard earlier run directories of an environment and create a new one.

    The sandbox writes into its mount as its own user, so removal of old runs
    is best effort and never blocks the next run.
    """
    root = Path(environment_dir)
    if root.is_dir():
        for child in root.iterdir():
            shutil.rmtree(child, ignore_errors=True)
    root.mkdir(parents=True, exist_ok=True)
    return tempfile.mkdtemp(dir=root, prefix="run-")


def stage_files(environment_dir: str, files: dict[str, str]) -> str:
    run_dir = fresh_run_dir(environment_dir)
    try:
        materialize_files(run_dir, files)
    except Exception:
        shutil.rmtree(run_dir, ignore_errors=True)
        raise
    return run_dir


def usable_client_files(files: Any) -> dict[str, str] | None:
    if not isinstance(files, dict):
        return None
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in files.items()):
        return None
    return dict(files)


def _message(event: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event": event, "data": data}


class SessionManager:
    """Owns the mapping environment_id -> running Session."""

    def __init__(
        self,
        *,
        store: FileStore,
        registry: ClientRegistry,
        backend: SandboxBackend,
        work_root: str | None = None,
        limits: SandboxLimits | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._backend = backend
        self._work_root = work_root or config.work_root()
        self._limits = limits or SandboxLimits(
            memory=config.sandbox_memory(),
            cpus=config.sandbox_cpus(),
            network_disabled=config.sandbox_network_disabled(),
        )
        self._sessions: dict[str, Session] = {}
        self._transitions: dict[str, SessionState] = {}
        self._locks = KeyedLocks()

    def environment_dir(self, environment_id: str) -> str:
        return os.path.join(self._work_root, _safe_label(environment_id))

    def state(self, environment_id: str) -> SessionState:
        if environment_id in self._transitions:
            return self._transitions[environment_id]
        if environment_id in self._sessions:
            return SessionState.RUNNING
        return SessionState.NO_SESSION

    def get(self, environment_id: str) -> Session | None:
        return self._sessions.get(environment_id)

    def active_environments(self) -> list[str]:
        return list(self._sessions.keys())

    async def build_files(
        self, environment_id: str, file_names: list[str]
    ) -> tuple[dict[str, str], str]:
        contents = await asyncio.gather(
            *(self._store.read(environment_id, name) for name in file_names)
        )
        files: dict[str, str] = {}
        for name, content in zip(file_names, contents):
            if not content and name == DEFAULT_ENTRY_FILE:
                content = DEFAULT_ENTRY_BODY
            files[name] = content or ""
        return files, content_hash(files)

    async def start(
        self,
        environment_id: str,
        file_names: list[str],
        client_hash: str | None = None,
        client_files: Any = None,
    ) -> bool:
        async with self._locks.hold(environment_id):
            if environment_id in self._sessions:
                await self._stop_locked(environment_id)
                await self._registry.broadcast(
                    environment_id,
                    _message(
                        "stopped",
                        {
                            "environmentId": environment_id,
                            "success": True,
                            "reason": "restarted",
                        },
                    ),
                )

            self._transitions[environment_id] = SessionState.STARTING
            try:
                return await self._start_locked(
                    environment_id, file_names, client_hash, client_files
                )
            except Exception as exc:
                logger.exception("Starting session failed (environment=%s)", environment_id)
                await self._registry.broadcast(
                    environment_id,
                    _message("output", {"output": f"Error starting session: {exc}"}),
                )
                await self._registry.broadcast(
                    environment_id, _message("exit", {"exitCode": 1})
                )
                return False
            finally:
                self._transitions.pop(environment_id, None)

    async def _start_locked(
        self,
        environment_id: str,
        file_names: list[str],
        client_hash: str | None,
        client_files: Any,
    ) -> bool:
        entry_file = entry_file_for(file_names)
        files, server_hash = await self.build_files(environment_id, file_names)
        if client_hash != server_hash:
            usable = usable_client_files(client_files)
            if usable is not None:
                logger.info(
                    "Client view diverged from store; running client files (environment=%s)",
                    environment_id,
                )
                files = usable
            else:
                logger.warning(
                    "Hash mismatch without usable client files; running stored files (environment=%s)",
                    environment_id,
                )

        workdir = await asyncio.to_thread(
            stage_files, self.environment_dir(environment_id), files
        )
        session = Session(
            environment_id=environment_id,
            name=sandbox_name(environment_id),
            workdir=workdir,
            entry_file=entry_file,
        )

        async def _on_output(chunk: str) -> None:
            await self._relay_output(session, chunk)

        async def _on_exit(code: int) -> None:
            await self._relay_exit(session, code)

        session.process = await self._backend.spawn(
            name=session.name,
            workdir=session.workdir,
            entry_file=entry_file,
            limits=self._limits,
            on_output=_on_output,
            on_exit=_on_exit,
        )
        # No await between spawn returning and recording the session, so the
        # exit relay always sees it.
        session.state = SessionState.RUNNING
        self._sessions[environment_id] = session
        logger.info(
            "Session started (environment=%s name=%s entry=%s)",
            environment_id,
            session.name,
            entry_file,
        )
        return True

    async def _relay_output(self, session: Session, chunk: str) -> None:
        if session.detached:
            return
        await self._registry.broadcast(
            session.environment_id, _message("output", {"output": chunk})
        )

    async def _relay_exit(self, session: Session, code: int) -> None:
        if session.detached:
            return
        session.state = SessionState.NO_SESSION
        if self._sessions.get(session.environment_id) is session:
            self._sessions.pop(session.environment_id, None)
        logger.info(
            "Session exited (environment=%s code=%s)", session.environment_id, code
        )
        await self._registry.broadcast(
            session.environment_id, _message("exit", {"exitCode": code})
        )

    async def send_input(self, environment_id: str, text: str) -> bool:
        session = self._sessions.get(environment_id)
        if session is None or session.process is None:
            return False
        data = text if text.endswith("\n") else text + "\n"
        try:
            await session.process.write(data.encode("utf-8"))
            return True
        except Exception:
            logger.exception("Sending input failed (environment=%s)", environment_id)
            return False

    async def stop(self, environment_id: str) -> bool:
        async with self._locks.hold(environment_id):
            return await self._stop_locked(environment_id)

    async def _stop_locked(self, environment_id: str) -> bool:
        session = self._sessions.pop(environment_id, None)
        if session is None:
            return False

        session.detached = True
        session.state = SessionState.STOPPING
        self._transitions[environment_id] = SessionState.STOPPING
        ok = True
        try:
            # Two independent requests; neither waits for the sandbox to die.
            try:
                await self._backend.kill_by_name(session.name)
            except Exception:
                logger.warning(
                    "Killing sandbox %s by name failed", session.name, exc_info=True
                )
                ok = False
            try:
                if session.process is not None:
                    session.process.kill()
            except Exception:
                logger.exception(
                    "Killing sandbox process failed (environment=%s)", environment_id
                )
                ok = False
        finally:
            session.state = SessionState.NO_SESSION
            self._transitions.pop(environment_id, None)

        logger.info("Session stopped (environment=%s ok=%s)", environment_id, ok)
        return ok

    async def shutdown(self) -> None:
        for environment_id in list(self._sessions.keys()):
            await self.stop(environment_id)
