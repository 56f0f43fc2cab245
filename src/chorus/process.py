"""Spawning interactive agent processes on pseudo-terminals.

The session registry only talks to the ``ProcessSpawner`` / ``ProcessHandle``
interfaces, so tests can swap in fakes and other hosts can swap in their own
PTY layer. ``PtyProcessSpawner`` is the default POSIX implementation.
"""

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import shutil
import struct
import subprocess
import termios
import uuid
from typing import Callable, Dict, List, Optional, Sequence

from .errors import ProcessError

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[int], None]


class ProcessHandle:
    pid: Optional[int] = None

    @property
    def returncode(self) -> Optional[int]:
        raise NotImplementedError

    def write(self, data: str) -> None:
        raise NotImplementedError

    def resize(self, rows: int, cols: int) -> None:
        raise NotImplementedError

    async def terminate(self, grace: float = 2.0) -> None:
        raise NotImplementedError


class ProcessSpawner:
    async def spawn(
        self,
        argv: Sequence[str],
        cwd: str,
        env: Optional[Dict[str, str]],
        rows: int,
        cols: int,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> ProcessHandle:
        raise NotImplementedError


def default_command() -> List[str]:
    return [os.environ.get("SHELL") or "/bin/sh"]


def apply_venv_env(env: Dict[str, str], work_dir: str) -> None:
    """Put a project-local virtualenv first on PATH when one exists."""
    venv_path = env.get("CHORUS_VENV")
    if not venv_path:
        for candidate in (".venv", "venv"):
            candidate_path = os.path.join(work_dir, candidate)
            if os.path.isdir(candidate_path):
                venv_path = candidate_path
                break
    if not venv_path:
        return

    venv_bin = os.path.join(venv_path, "bin")
    env["VIRTUAL_ENV"] = venv_path
    env["PATH"] = f"{venv_bin}:{env.get('PATH', '')}"


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyProcess(ProcessHandle):
    def __init__(self, popen: subprocess.Popen, master_fd: int, on_output: OutputCallback, on_exit: ExitCallback):
        self.popen = popen
        self.pid = popen.pid
        self.master_fd = master_fd
        self._on_output = on_output
        self._on_exit = on_exit
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._loop = asyncio.get_running_loop()
        self._reading = False
        self._exit_task: Optional[asyncio.Task] = None

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.poll()

    def start_reading(self) -> None:
        self._loop.add_reader(self.master_fd, self._on_readable)
        self._reading = True

    def _on_readable(self) -> None:
        try:
            data = os.read(self.master_fd, 65536)
        except OSError:
            # EIO once the child side of the pty is gone.
            data = b""
        if not data:
            self._stop_reading()
            self._exit_task = self._loop.create_task(self._wait_exit())
            return
        text = self._decoder.decode(data)
        if text:
            self._on_output(text)

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self.master_fd)
            self._reading = False
        try:
            os.close(self.master_fd)
        except OSError:
            pass

    async def _wait_exit(self) -> None:
        code = await self._loop.run_in_executor(None, self.popen.wait)
        self._on_exit(code)

    def write(self, data: str) -> None:
        if not self._reading:
            raise ProcessError(f"Process {self.pid} is no longer accepting input")
        os.write(self.master_fd, data.encode("utf-8"))

    def resize(self, rows: int, cols: int) -> None:
        if self._reading:
            _set_winsize(self.master_fd, rows, cols)

    async def terminate(self, grace: float = 2.0) -> None:
        if self.popen.poll() is not None:
            return
        try:
            self.popen.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self._loop.run_in_executor(None, self.popen.wait), grace)
        except asyncio.TimeoutError:
            logger.warning(f"Process {self.pid} ignored SIGTERM, killing")
            self.popen.kill()


class PtyProcessSpawner(ProcessSpawner):
    """Runs each session in its own pty and process group."""

    def __init__(self, term: str = "xterm-256color") -> None:
        self.term = term

    async def spawn(self, argv, cwd, env, rows, cols, on_output, on_exit) -> ProcessHandle:
        if not argv:
            raise ProcessError("Empty command")
        if shutil.which(argv[0]) is None and not os.path.isfile(argv[0]):
            raise ProcessError(f"Command not found: {argv[0]}")

        full_env = os.environ.copy()
        full_env["TERM"] = self.term
        apply_venv_env(full_env, cwd)
        if env:
            full_env.update(env)

        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, rows, cols)
            popen = subprocess.Popen(
                list(argv),
                cwd=cwd,
                env=full_env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as e:
            os.close(master_fd)
            raise ProcessError(f"Failed to spawn {argv[0]}: {e}") from e
        finally:
            os.close(slave_fd)

        handle = PtyProcess(popen, master_fd, on_output, on_exit)
        handle.start_reading()
        logger.info(f"Spawned {argv[0]} (pid {popen.pid}) in {cwd}")
        return handle


class WorkdirProvisioner:
    """Creates and releases an isolated working copy for a session."""

    async def provision(self, session_id: int, base_dir: str) -> str:
        raise NotImplementedError

    async def release(self, session_id: int, path: str) -> None:
        raise NotImplementedError


class GitWorktreeProvisioner(WorkdirProvisioner):
    """One git worktree and branch per session under ``<repo>/.chorus-worktrees``.

    Names carry a random suffix; session ids restart with every server.
    """

    def __init__(self, dirname: str = ".chorus-worktrees", branch_prefix: str = "chorus/session-") -> None:
        self.dirname = dirname
        self.branch_prefix = branch_prefix
        self._branches: Dict[str, str] = {}

    async def _git(self, cwd: str, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            "git", *args, cwd=cwd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ProcessError(
                f"git {' '.join(args)} failed: {stderr.decode(errors='replace').strip()}",
                exit_code=proc.returncode,
                stderr=stderr.decode(errors="replace"),
            )
        return stdout.decode(errors="replace").strip()

    async def provision(self, session_id: int, base_dir: str) -> str:
        root = await self._git(base_dir, "rev-parse", "--show-toplevel")
        name = f"{session_id}-{uuid.uuid4().hex[:8]}"
        path = os.path.join(root, self.dirname, f"session-{name}")
        branch = f"{self.branch_prefix}{name}"
        await self._git(root, "worktree", "add", "-b", branch, path)
        self._branches[path] = branch
        logger.info(f"Created worktree for session {session_id} at {path}")
        return path

    async def release(self, session_id: int, path: str) -> None:
        root = os.path.dirname(os.path.dirname(path))
        await self._git(root, "worktree", "remove", "--force", path)
        branch = self._branches.pop(path, None)
        if branch:
            await self._git(root, "branch", "-D", branch)
        logger.info(f"Removed worktree for session {session_id} at {path}")
