from __future__ import annotations

import asyncio
import codecs
import contextlib
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios

from nixpackpy import config
from nixpackpy.errors import SandboxError
from nixpackpy.sandbox_backends.base import ExitCallback, OutputCallback, SandboxLimits

logger = logging.getLogger(__name__)

PTY_COLS = 80
PTY_ROWS = 30
CONTAINER_WORKDIR = "/workspace"
_READ_CHUNK = 4096


def build_docker_args(
    *,
    name: str,
    workdir: str,
    entry_file: str,
    limits: SandboxLimits,
    image: str,
) -> list[str]:
    args = ["run", "--rm", "-it", "--name", name]
    if limits.network_disabled:
        args.append("--network=none")
    args += [
        f"--memory={limits.memory}",
        f"--cpus={limits.cpus}",
        "-v",
        f"{workdir}:{CONTAINER_WORKDIR}",
        "-w",
        CONTAINER_WORKDIR,
        image,
        "python3",
        "-u",
        entry_file,
    ]
    return args


def _set_winsize(fd: int, *, rows: int, cols: int) -> None:
    with contextlib.suppress(OSError):
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyProcess:
    """A child process attached to a pseudo-terminal.

    Reads from the PTY master are funneled through a queue and a single pump
    task, so output callbacks run strictly in order and the exit callback runs
    after the last chunk.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        *,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> None:
        self._proc = proc
        self._fd: int | None = master_fd
        self._on_output = on_output
        self._on_exit = on_exit
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._loop = asyncio.get_running_loop()
        self._reading = False
        self._pump_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    def start(self) -> None:
        if self._fd is None:
            raise SandboxError("pty is already closed")
        os.set_blocking(self._fd, False)
        self._loop.add_reader(self._fd, self._on_readable)
        self._reading = True
        self._pump_task = self._loop.create_task(self._pump())

    def _stop_reading(self) -> None:
        if self._reading and self._fd is not None:
            self._loop.remove_reader(self._fd)
        self._reading = False

    def _on_readable(self) -> None:
        if self._fd is None:
            return
        try:
            data = os.read(self._fd, _READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave end is closed.
            data = b""
        if not data:
            self._stop_reading()
            self._queue.put_nowait(None)
            return
        text = self._decoder.decode(data)
        if text:
            self._queue.put_nowait(text)

    async def _pump(self) -> None:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                break
            try:
                await self._on_output(chunk)
            except Exception:
                logger.exception("Sandbox output callback failed (pid=%s)", self.pid)

        rc = await self._proc.wait()
        tail = self._decoder.decode(b"", final=True)
        if tail:
            with contextlib.suppress(Exception):
                await self._on_output(tail)
        self._close_fd()
        try:
            await self._on_exit(int(rc))
        except Exception:
            logger.exception("Sandbox exit callback failed (pid=%s)", self.pid)

    def _close_fd(self) -> None:
        self._stop_reading()
        if self._fd is not None:
            with contextlib.suppress(OSError):
                os.close(self._fd)
            self._fd = None

    async def write(self, data: bytes) -> None:
        if self._fd is None or self._proc.returncode is not None:
            raise SandboxError("sandbox is not running")
        view = memoryview(data)
        while view:
            try:
                n = os.write(self._fd, view)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            except OSError as exc:
                raise SandboxError(f"write failed: {exc}") from exc
            view = view[n:]

    def kill(self) -> None:
        if self._proc.returncode is not None:
            return
        # start_new_session=True makes the child's pid its process group id.
        try:
            os.killpg(self._proc.pid, signal.SIGTERM)
        except Exception:
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()


class DockerPtyBackend:
    """Runs each sandbox as `docker run -it` under a local PTY."""

    def __init__(self, *, docker_bin: str | None = None, image: str | None = None) -> None:
        self._docker_bin = docker_bin or config.docker_bin()
        self._image = image or config.sandbox_image()
        self._reapers: set[asyncio.Task[None]] = set()

    async def spawn(
        self,
        *,
        name: str,
        workdir: str,
        entry_file: str,
        limits: SandboxLimits,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> PtyProcess:
        args = build_docker_args(
            name=name,
            workdir=workdir,
            entry_file=entry_file,
            limits=limits,
            image=self._image,
        )
        env = os.environ.copy()
        env["TERM"] = "xterm-color"

        master_fd, slave_fd = pty.openpty()
        _set_winsize(slave_fd, rows=PTY_ROWS, cols=PTY_COLS)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._docker_bin,
                *args,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=workdir,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            os.close(master_fd)
            raise SandboxError(f"failed to spawn {self._docker_bin}: {exc}") from exc
        finally:
            os.close(slave_fd)

        logger.info("Spawned sandbox %s (pid=%s entry=%s)", name, proc.pid, entry_file)
        handle = PtyProcess(proc, master_fd, on_output=on_output, on_exit=on_exit)
        handle.start()
        return handle

    async def kill_by_name(self, name: str) -> None:
        # Returns once `docker kill` has been launched; it is reaped in the background.
        try:
            proc = await asyncio.create_subprocess_exec(
                self._docker_bin,
                "kill",
                name,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning("docker kill %s could not be started: %s", name, exc)
            return

        async def _reap() -> None:
            rc = await proc.wait()
            # Non-zero usually means the container was already gone.
            logger.debug("docker kill %s exited with %s", name, rc)

        task = asyncio.get_running_loop().create_task(_reap())
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)
