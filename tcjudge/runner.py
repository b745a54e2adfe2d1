import asyncio
import enum
import io
import json
import logging
import os
import re
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple

import psutil

from .config import TIMING_MARKER, JudgeSettings
from .models import FileIO, InlineIO, IOValue, Verdict
from .scratch import ScratchDir

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
MEMORY_POLL_INTERVAL = 0.01  # s
# Bytes at the end of a file-backed stderr searched for the timing marker
MARKER_TAIL = 4096
# How long leftover pipe readers get once the process is gone
DRAIN_TIMEOUT = 1.0  # s


class CancelToken:
    """Cancellation signal scoped to one batch run.

    ``reason`` is recorded so the orchestrator can tell a request to stop
    only the in-flight case from a request to stop the whole batch.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None):
        # a later request may widen the scope of an earlier one
        self.reason = reason
        self._event.set()

    async def wait(self):
        await self._event.wait()


class AbortReason(str, enum.Enum):
    TIMEOUT = "timeout"
    USER = "user_abort"


@dataclass
class ExecuteResult:
    returncode: Optional[int] = None
    abort_reason: Optional[AbortReason] = None
    elapsed_ms: float = 0
    memory_mb: Optional[float] = None
    stdout: str = ""
    stderr: str = ""
    stdout_path: Optional[str] = None
    stderr_path: Optional[str] = None
    error: Optional[str] = None

    @property
    def signal_name(self) -> Optional[str]:
        if self.returncode is None or self.returncode >= 0:
            return None
        try:
            return signal.Signals(-self.returncode).name
        except ValueError:
            return str(-self.returncode)


@dataclass
class RunOutcome:
    verdict: Verdict
    message: str
    elapsed_ms: float
    memory_mb: Optional[float]
    stdout: IOValue
    stderr: IOValue


def extract_timing(stderr: str) -> Tuple[str, Optional[float]]:
    """Strip the timing marker from stderr, returning its duration in ms."""
    match = re.search(TIMING_MARKER, stderr, re.S)
    if not match:
        return stderr, None
    clean = (stderr[:match.start()] + stderr[match.end():]).strip()
    try:
        micros = float(json.loads(match.group(1))["time"])
    except (ValueError, KeyError, TypeError) as e:
        logger.warning("[Runner] Malformed timing data %r: %s",
                       match.group(1), e)
        return clean, None
    return clean, max(micros, 1) / 1000.0


class _MemoryWatcher:

    def __init__(self, pid: int):
        self.pid = pid
        self.peak = 0
        # set once the process has exited, even if its pipes are still open
        self.exited = asyncio.Event()

    async def watch(self):
        try:
            process = psutil.Process(self.pid)
            while process.status() != psutil.STATUS_ZOMBIE:
                self.peak = max(self.peak, process.memory_info().rss)
                await asyncio.sleep(MEMORY_POLL_INTERVAL)
        except psutil.Error:
            # process is gone, the peak so far is all we get
            pass
        self.exited.set()

    @property
    def peak_mb(self) -> Optional[float]:
        return self.peak / 1024 / 1024 if self.peak else None


class ProcessRunner:

    def __init__(self, settings: JudgeSettings, scratch: ScratchDir):
        self.settings = settings
        self.scratch = scratch

    async def execute(
        self,
        cmd: Sequence[str],
        *,
        cwd: Optional[str] = None,
        stdin: IOValue = InlineIO(),
        timeout_ms: Optional[float] = None,
        token: Optional[CancelToken] = None,
        stdout_path: Optional[Path] = None,
        stderr_path: Optional[Path] = None,
    ) -> ExecuteResult:
        """Spawn ``cmd`` and race its exit against cancellation and timeout.

        Whichever of the three happens first decides ``abort_reason``. When
        ``stdout_path`` or ``stderr_path`` is given that stream is written
        there instead of being kept in memory.

        The program runs in its own process group, which is killed once the
        program exits or is aborted, so descendants holding its pipes cannot
        stretch the run.
        """
        if not isinstance(stdin, (InlineIO, FileIO)):
            raise TypeError(f"not an IO value: {stdin!r}")
        if token is not None and token.cancelled:
            return ExecuteResult(abort_reason=AbortReason.USER)
        if isinstance(stdin, FileIO) and not Path(stdin.path).is_file():
            return ExecuteResult(error=f"Input file not found: {stdin.path}")

        logger.debug("[Runner] Executing %s in %s", list(cmd), cwd)
        start_time = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning("[Runner] Failed to start %s: %s", cmd[0], e)
            return ExecuteResult(error=f"{type(e).__name__}: {e}")

        stdout_sink = (open(stdout_path, "wb")
                       if stdout_path is not None else io.BytesIO())
        stderr_sink = (open(stderr_path, "wb")
                       if stderr_path is not None else io.BytesIO())
        watcher = _MemoryWatcher(process.pid)
        watch_task = asyncio.ensure_future(watcher.watch())
        io_tasks = [
            asyncio.ensure_future(self._feed(process, stdin)),
            asyncio.ensure_future(self._pump(process.stdout, stdout_sink)),
            asyncio.ensure_future(self._pump(process.stderr, stderr_sink)),
        ]
        # process.wait() only returns once every pipe is closed
        exit_task = asyncio.ensure_future(process.wait())
        exited_task = asyncio.ensure_future(watcher.exited.wait())
        cancel_task = (asyncio.ensure_future(token.wait())
                       if token is not None else None)
        try:
            waiters = {exit_task, exited_task}
            if cancel_task is not None:
                waiters.add(cancel_task)

            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout_ms / 1000.0 if timeout_ms else None,
                return_when=asyncio.FIRST_COMPLETED,
            )
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            abort_reason = None
            if exit_task not in done and exited_task not in done:
                if cancel_task is not None and cancel_task in done:
                    abort_reason = AbortReason.USER
                    logger.info("[Runner] Process %d aborted by user",
                                process.pid)
                else:
                    abort_reason = AbortReason.TIMEOUT
                    logger.info("[Runner] Process %d killed after %.0fms",
                                process.pid, elapsed_ms)
            self._kill(process)

            # A descendant that left the process group may still hold a pipe
            _, pending = await asyncio.wait(
                [exit_task, *io_tasks], timeout=DRAIN_TIMEOUT)
            if pending:
                logger.warning("[Runner] Pipes of %d still open after exit",
                               process.pid)
            for task in pending:
                task.cancel()
            for outcome in await asyncio.gather(*io_tasks,
                                                return_exceptions=True):
                if isinstance(outcome, Exception):
                    raise outcome
        finally:
            for task in (watch_task, exit_task, exited_task, cancel_task):
                if task is not None:
                    task.cancel()
            await asyncio.gather(watch_task, exit_task, exited_task,
                                 return_exceptions=True)
            if stdout_path is not None:
                stdout_sink.close()
            if stderr_path is not None:
                stderr_sink.close()

        return ExecuteResult(
            returncode=process.returncode,
            abort_reason=abort_reason,
            elapsed_ms=elapsed_ms,
            memory_mb=watcher.peak_mb,
            stdout=("" if stdout_path is not None else
                    stdout_sink.getvalue().decode("utf-8", errors="replace")),
            stderr=("" if stderr_path is not None else
                    stderr_sink.getvalue().decode("utf-8", errors="replace")),
            stdout_path=str(stdout_path) if stdout_path is not None else None,
            stderr_path=str(stderr_path) if stderr_path is not None else None,
        )

    async def run(
        self,
        cmd: Sequence[str],
        stdin: IOValue,
        time_limit_ms: float,
        token: Optional[CancelToken] = None,
        *,
        cwd: Optional[str] = None,
        output_key: Tuple[str, ...] = (),
    ) -> RunOutcome:
        """Run a program under test once and classify how it ended.

        A clean exit is reported as UKE: whether the output is right is for
        the comparator or checker to decide.
        """
        if output_key:
            stdout_path = self.scratch.io_path(*output_key, suffix=".out")
            stderr_path = self.scratch.io_path(*output_key, suffix=".err")
        else:
            stdout_path = self.scratch.create_io()
            stderr_path = self.scratch.create_io()
        stdout_path.unlink(missing_ok=True)
        stderr_path.unlink(missing_ok=True)
        result = await self.execute(
            cmd,
            cwd=cwd or str(Path(cmd[0]).parent),
            stdin=stdin,
            timeout_ms=time_limit_ms + self.settings.time_addition_ms,
            token=token,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )

        stdout_io = self._capture_stdout(stdout_path)
        stderr_io, precise_ms = self._capture_stderr(stderr_path)
        elapsed_ms = precise_ms if precise_ms is not None else result.elapsed_ms

        if result.error is not None:
            verdict, message = Verdict.SE, result.error
        elif result.abort_reason == AbortReason.TIMEOUT:
            verdict, message = Verdict.TLE, "Killed due to timeout"
        elif result.abort_reason == AbortReason.USER:
            verdict, message = Verdict.RJ, "Aborted by user"
        elif result.signal_name is not None:
            verdict = Verdict.RE
            message = f"Process exited with signal: {result.signal_name}."
        elif result.returncode:
            verdict = Verdict.RE
            message = f"Process exited with code: {result.returncode}."
        else:
            verdict, message = Verdict.UKE, ""
        return RunOutcome(
            verdict=verdict,
            message=message,
            elapsed_ms=elapsed_ms,
            memory_mb=result.memory_mb,
            stdout=stdout_io,
            stderr=stderr_io,
        )

    def _capture_stdout(self, path: Path) -> IOValue:
        if not path.exists():
            return InlineIO()
        captured = self.scratch.inline_small(
            FileIO(str(path)), self.settings.max_inline_length)
        if isinstance(captured, InlineIO):
            return InlineIO(captured.data.strip())
        return captured

    def _capture_stderr(self,
                        path: Path) -> Tuple[IOValue, Optional[float]]:
        """Captured stderr and the duration from its timing marker, if any.

        Large stderr stays in its file and only its tail is searched for
        the marker, so the judge never holds it in memory.
        """
        if not path.exists():
            return InlineIO(), None
        size = path.stat().st_size
        if size <= self.settings.max_inline_length:
            stderr, precise_ms = extract_timing(
                path.read_bytes().decode("utf-8", errors="replace"))
            return InlineIO(stderr.strip()), precise_ms
        with open(path, "rb") as f:
            f.seek(max(size - MARKER_TAIL, 0))
            tail = f.read().decode("utf-8", errors="replace")
        _, precise_ms = extract_timing(tail)
        return FileIO(str(path)), precise_ms

    @staticmethod
    async def _feed(process: asyncio.subprocess.Process, stdin: IOValue):
        try:
            if isinstance(stdin, FileIO):
                with open(stdin.path, "rb") as f:
                    while True:
                        chunk = f.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        process.stdin.write(chunk)
                        await process.stdin.drain()
            else:
                process.stdin.write(stdin.data.encode("utf-8"))
                await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # the program exited without reading all of its input
            logger.debug("[Runner] stdin of %d closed early", process.pid)
        finally:
            process.stdin.close()

    @staticmethod
    async def _pump(stream: asyncio.StreamReader, sink):
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            sink.write(chunk)

    @staticmethod
    def _kill(process: asyncio.subprocess.Process):
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except (ProcessLookupError, PermissionError):
            pass  # the whole group already exited
