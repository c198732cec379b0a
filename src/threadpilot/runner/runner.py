"""Async streaming runner for the Claude CLI."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..errors import RunnerNotFoundError, SpawnError, StreamError
from .utils import child_environment

logger = logging.getLogger(__name__)

OnData = Callable[[bytes], None]
OnStarted = Callable[[Any], None]

READ_CHUNK_SIZE = 64 * 1024


@dataclass(slots=True)
class ExecutionResult:
    """Holds the outcome of a streamed CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ClaudeRunner:
    """Execute the Claude CLI on the host and stream its stdout."""

    command_name = "claude"

    def __init__(self, executable: Path | None = None, *, termination_timeout: float = 5.0) -> None:
        self._executable_path = self._resolve_executable(executable)
        self.termination_timeout = termination_timeout

    @classmethod
    def _resolve_executable(cls, explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise RunnerNotFoundError(f"{cls.command_name} executable not found at {candidate}")

        binary = shutil.which(cls.command_name)
        if binary is None:
            raise RunnerNotFoundError(f"{cls.command_name} executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def build_command(self, args: Sequence[str], cwd: str) -> list[str]:
        return [str(self._executable_path), *args]

    def build_environment(self, env: Mapping[str, str] | None) -> dict[str, str]:
        return child_environment(env)

    async def version(self) -> str:
        process = await asyncio.create_subprocess_exec(
            str(self._executable_path),
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await process.communicate()
        return stdout.decode("utf-8", errors="replace").strip()

    async def execute_streaming(
        self,
        args: Sequence[str],
        cwd: str,
        on_data: OnData,
        cancel_event: asyncio.Event | None = None,
        on_started: OnStarted | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ExecutionResult:
        """Run the CLI, forwarding stdout chunks to ``on_data`` as they arrive.

        ``on_started`` is only called once a real process exists. Setting
        ``cancel_event`` terminates the child and raises ``StreamError`` with
        ``cancelled=True``.
        """

        cmd = self.build_command(args, cwd)
        logger.debug("Spawning CLI", extra={"cmd": cmd[:3], "cwd": cwd})
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self.build_environment(env),
            )
        except OSError as exc:
            raise SpawnError(f"Failed to start {cmd[0]}: {exc}") from exc

        if on_started is not None:
            on_started(process)

        stderr_chunks: list[bytes] = []

        async def pump_stdout() -> None:
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                on_data(chunk)

        async def pump_stderr() -> None:
            stderr_chunks.append(await process.stderr.read())

        pumps = [asyncio.ensure_future(pump_stdout()), asyncio.ensure_future(pump_stderr())]
        readers = asyncio.gather(*pumps)
        waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        try:
            if waiter is not None:
                done, _ = await asyncio.wait({readers, waiter}, return_when=asyncio.FIRST_COMPLETED)
                if readers not in done:
                    await self._abort(process, readers, pumps)
                    raise StreamError("Execution was cancelled", cancelled=True)
            await readers
        except StreamError:
            raise
        except (OSError, ValueError) as exc:
            await self._abort(process, readers, pumps)
            raise StreamError(f"Failed to read CLI output: {exc}") from exc
        except BaseException:
            await self._abort(process, readers, pumps)
            raise
        finally:
            if waiter is not None:
                waiter.cancel()

        returncode = await process.wait()
        return ExecutionResult(
            args=tuple(cmd),
            returncode=returncode,
            stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        )

    async def _abort(
        self, process: asyncio.subprocess.Process, readers: asyncio.Future, pumps: list[asyncio.Future]
    ) -> None:
        await self.terminate(process)
        # A finished gather does not cancel its remaining children.
        readers.cancel()
        for pump in pumps:
            pump.cancel()
        await asyncio.gather(readers, *pumps, return_exceptions=True)

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate ``process``, escalating to kill after the timeout."""

        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=self.termination_timeout)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning("CLI did not exit after SIGTERM; killing", extra={"pid": process.pid})
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()


class DevcontainerRunner(ClaudeRunner):
    """Execute the Claude CLI inside the repository's devcontainer."""

    command_name = "devcontainer"

    def __init__(
        self,
        executable: Path | None = None,
        *,
        gh_token: str | None = None,
        termination_timeout: float = 5.0,
    ) -> None:
        super().__init__(executable, termination_timeout=termination_timeout)
        self.gh_token = gh_token

    def build_command(self, args: Sequence[str], cwd: str) -> list[str]:
        return [str(self._executable_path), "exec", "--workspace-folder", cwd, "claude", *args]

    def build_environment(self, env: Mapping[str, str] | None) -> dict[str, str]:
        extra = {"DOCKER_DEFAULT_PLATFORM": "linux/amd64"}
        if self.gh_token:
            extra["GH_TOKEN"] = self.gh_token
            extra["GITHUB_TOKEN"] = self.gh_token
        extra.update(env or {})
        return child_environment(extra)


@dataclass(slots=True)
class FakeExecution:
    """Scripted outcome for ``FakeRunner``."""

    chunks: list[bytes] = field(default_factory=list)
    returncode: int = 0
    stderr: str = ""
    spawn_error: bool = False
    wait_for_cancel: bool = False


class FakeRunner(ClaudeRunner):
    """Test double that replays scripted stdout chunks."""

    def __init__(self, executions: Iterable[FakeExecution] | None = None) -> None:  # type: ignore[override]
        self._executions = list(executions or [])
        self._invocations: list[dict[str, Any]] = []
        self._executable_path = Path("/tmp/fake-claude")
        self.termination_timeout = 0.0
        self.started = asyncio.Event()

    def queue(self, execution: FakeExecution) -> None:
        self._executions.append(execution)

    @property
    def invocations(self) -> list[dict[str, Any]]:
        return self._invocations

    async def execute_streaming(  # type: ignore[override]
        self,
        args: Sequence[str],
        cwd: str,
        on_data: OnData,
        cancel_event: asyncio.Event | None = None,
        on_started: OnStarted | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ExecutionResult:
        self._invocations.append({"args": list(args), "cwd": cwd, "env": dict(env or {})})
        execution = self._executions.pop(0) if self._executions else FakeExecution()
        if execution.spawn_error:
            raise SpawnError("fake spawn failure")
        if on_started is not None:
            on_started(self)
        self.started.set()

        for chunk in execution.chunks:
            if cancel_event is not None and cancel_event.is_set():
                raise StreamError("Execution was cancelled", cancelled=True)
            on_data(chunk)
            await asyncio.sleep(0)

        if execution.wait_for_cancel and cancel_event is not None:
            await cancel_event.wait()
        if cancel_event is not None and cancel_event.is_set():
            raise StreamError("Execution was cancelled", cancelled=True)

        return ExecutionResult(args=tuple(args), returncode=execution.returncode, stderr=execution.stderr)


__all__ = [
    "ClaudeRunner",
    "DevcontainerRunner",
    "ExecutionResult",
    "FakeExecution",
    "FakeRunner",
]
