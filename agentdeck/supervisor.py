"""Backend process lifecycle.

One OS process per in-flight request. A ``ProcessHandle`` owns its process
and guarantees cleanup on every exit path (normal completion, timeout,
cancellation, consumer abandoning the stream). The supervisor keeps a
registry of live handles for one purpose only: terminating stragglers on
``shutdown()``. Request code never looks processes up through it.

Termination is graceful first: SIGTERM, wait ``grace`` seconds, then SIGKILL.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from agentdeck.errors import BackendTimeout, SpawnFailure
from agentdeck.stream import MAX_LINE_LENGTH

logger = logging.getLogger(__name__)

DEFAULT_GRACE = 5.0


async def terminate_process(process: asyncio.subprocess.Process, grace: float = DEFAULT_GRACE) -> None:
    """Stop ``process``: terminate, wait up to ``grace``, then kill."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} ignored SIGTERM for {grace}s, killing")
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


@dataclass(eq=False)
class ProcessHandle:
    """A spawned backend process plus what was observed while it ran.

    Attributes:
        process: The asyncio subprocess
        command: Executable that was started (for logs and errors)
        timeout: Request deadline in seconds, measured from ``run()``
        grace: Seconds between SIGTERM and SIGKILL during cleanup
        exit_code: Set once the process has been reaped
        stderr_lines: stderr output, collected while stdout is read
    """

    process: asyncio.subprocess.Process
    command: str
    timeout: float
    grace: float = DEFAULT_GRACE
    exit_code: int | None = None
    stderr_lines: list[str] = field(default_factory=list)
    timed_out: bool = False
    _on_cleanup: Callable[["ProcessHandle"], None] | None = None
    _cleaned: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    async def cleanup(self) -> None:
        """Terminate the process if still running. Safe to call repeatedly."""
        if self._cleaned:
            return
        self._cleaned = True
        try:
            await terminate_process(self.process, self.grace)
            if self.exit_code is None:
                self.exit_code = self.process.returncode
        finally:
            if self._on_cleanup is not None:
                self._on_cleanup(self)


class ProcessSupervisor:
    """Spawn backend processes and drive them to completion.

    Usage:
        supervisor = ProcessSupervisor(grace=5.0)
        handle = await supervisor.spawn("claude", ["--print"], cwd=ws, env=env, timeout=300)
        async for line in supervisor.run(handle, prompt):
            ...
        handle.exit_code, handle.stderr_lines
    """

    def __init__(self, grace: float = DEFAULT_GRACE, line_limit: int = MAX_LINE_LENGTH):
        self.grace = grace
        self.line_limit = line_limit
        self._live: set[ProcessHandle] = set()

    @property
    def live_count(self) -> int:
        return len(self._live)

    async def spawn(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float = 300.0,
    ) -> ProcessHandle:
        """Start ``command`` with piped stdio.

        Raises:
            SpawnFailure: The OS refused to start the binary
        """
        try:
            # Security: no shell, arguments passed as a vector
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                limit=self.line_limit,
            )
        except (OSError, ValueError) as e:
            # ValueError: arguments the OS cannot accept, e.g. embedded NUL bytes
            raise SpawnFailure(f"Could not start {command}: {e}", command=command) from e

        handle = ProcessHandle(
            process=process,
            command=command,
            timeout=timeout,
            grace=self.grace,
            _on_cleanup=self._live.discard,
        )
        self._live.add(handle)
        logger.debug(f"Spawned {command} (pid {process.pid})")
        return handle

    async def run(self, handle: ProcessHandle, stdin_data: str | None = None) -> AsyncIterator[str]:
        """Feed ``stdin_data`` and yield stdout lines until EOF.

        When the generator finishes, ``handle.exit_code`` and
        ``handle.stderr_lines`` are populated. The process is always cleaned
        up, including when the consumer stops iterating early.

        Raises:
            BackendTimeout: The deadline passed; the process has been stopped
        """
        process = handle.process
        loop = asyncio.get_running_loop()
        deadline = loop.time() + handle.timeout
        stderr_task = asyncio.create_task(self._drain_stderr(handle))

        def remaining() -> float:
            left = deadline - loop.time()
            if left <= 0:
                raise self._timeout(handle)
            return left

        try:
            if process.stdin is not None:
                try:
                    if stdin_data:
                        process.stdin.write(stdin_data.encode("utf-8"))
                        left = remaining()
                        await asyncio.wait_for(process.stdin.drain(), timeout=left)
                except (BrokenPipeError, ConnectionResetError):
                    logger.debug(f"{handle.command} closed stdin early")
                except asyncio.TimeoutError:
                    raise self._timeout(handle) from None
                finally:
                    process.stdin.close()

            while True:
                left = remaining()
                try:
                    raw = await asyncio.wait_for(process.stdout.readline(), timeout=left)
                except asyncio.TimeoutError:
                    raise self._timeout(handle) from None
                except ValueError:
                    # Line longer than the stream limit; the reader discards it
                    yield f"[output line exceeded {self.line_limit} bytes and was dropped]"
                    continue
                if not raw:
                    break
                yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

            try:
                left = remaining()
                handle.exit_code = await asyncio.wait_for(process.wait(), timeout=left)
                left = remaining()
                await asyncio.wait_for(stderr_task, timeout=left)
            except asyncio.TimeoutError:
                raise self._timeout(handle) from None

            logger.debug(f"{handle.command} (pid {handle.pid}) exited with {handle.exit_code}")

        finally:
            await handle.cleanup()
            if not stderr_task.done():
                stderr_task.cancel()
                try:
                    await stderr_task
                except asyncio.CancelledError:
                    pass

    async def _drain_stderr(self, handle: ProcessHandle) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                continue
            if not raw:
                return
            handle.stderr_lines.append(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    def _timeout(self, handle: ProcessHandle) -> BackendTimeout:
        handle.timed_out = True
        logger.warning(f"{handle.command} (pid {handle.pid}) exceeded {handle.timeout}s deadline")
        return BackendTimeout(
            f"{handle.command} did not finish within {handle.timeout:g}s",
            command=handle.command,
            timeout=handle.timeout,
        )

    async def shutdown(self) -> None:
        """Terminate every process still running. Used on service teardown."""
        handles = list(self._live)
        if handles:
            logger.info(f"Terminating {len(handles)} backend process(es)")
        await asyncio.gather(*(h.cleanup() for h in handles), return_exceptions=True)


# ============================================================================
# One-shot probes
# ============================================================================


@dataclass(frozen=True)
class ProbeResult:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


async def probe_command(
    command: str,
    args: Sequence[str],
    timeout: float,
    env: Mapping[str, str] | None = None,
) -> ProbeResult:
    """Run a short command (e.g. ``--version``) with a hard timeout.

    Raises:
        SpawnFailure: The binary could not be started
    """
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
        )
    except (OSError, ValueError) as e:
        raise SpawnFailure(f"Could not start {command}: {e}", command=command) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await terminate_process(process, grace=1.0)
        return ProbeResult(exit_code=None, timed_out=True)
    finally:
        if process.returncode is None:
            await terminate_process(process, grace=1.0)

    return ProbeResult(
        exit_code=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
