"""External process lifecycle: spawn, stream output, enforce timeouts

Tool failures are returned as values (``ProcessOk`` / ``ProcessErr``) so the
callers decide which pipeline error to raise and raw tool output never
escapes on its own.
"""
import asyncio
import logging
import shutil
import tempfile
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from reelhouse.core.metrics import active_transcodes_gauge
from reelhouse.services.media.errors import ToolUnavailableError

logger = logging.getLogger(__name__)

STDERR_TAIL_LIMIT = 2000
STREAM_LINE_LIMIT = 1024 * 1024

LineCallback = Callable[[str], None]


def trim_tail(s: str, limit: int = STDERR_TAIL_LIMIT) -> str:
    if not s:
        return ""
    return s[-limit:] if len(s) > limit else s


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


@contextmanager
def temp_workdir(base_dir: Path, prefix: str):
    """Scratch directory under ``base_dir``, removed on exit"""
    ensure_dir(Path(base_dir))
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=base_dir))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


class ProcessErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    EXIT = "exit"


@dataclass
class ProcessOk:
    stdout: str
    stderr: str
    returncode: int = 0
    ok: bool = field(default=True, init=False)


@dataclass
class ProcessErr:
    kind: ProcessErrorKind
    detail: str
    returncode: Optional[int] = None
    stderr: str = ""
    ok: bool = field(default=False, init=False)


ProcessResult = Union[ProcessOk, ProcessErr]


class ProcessRunner:
    """Runs one external command as an asyncio child process

    stdout is read line by line and forwarded to ``on_line``; a callback that
    raises is logged and ignored. Only the tail of stderr is kept. On timeout
    or task cancellation the child is killed and reaped before returning.
    """

    async def run(
        self,
        cmd: Sequence[str],
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
    ) -> ProcessResult:
        cmd = [str(part) for part in cmd]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
            )
        except (FileNotFoundError, PermissionError) as e:
            return ProcessErr(ProcessErrorKind.NOT_FOUND, f"{cmd[0]}: {e}")

        stdout_lines: List[str] = []
        stderr_tail = ""

        async def read_stdout():
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                stdout_lines.append(line)
                if on_line is not None:
                    try:
                        on_line(line)
                    except Exception as e:
                        logger.warning(f"Output callback for {cmd[0]} raised: {e}", exc_info=True)

        async def read_stderr():
            nonlocal stderr_tail
            async for raw in proc.stderr:
                stderr_tail = trim_tail(stderr_tail + raw.decode("utf-8", errors="replace"))

        active_transcodes_gauge.inc()
        try:
            try:
                await asyncio.wait_for(
                    asyncio.gather(read_stdout(), read_stderr(), proc.wait()),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                await self._kill(proc)
                logger.warning(f"{cmd[0]} timed out after {timeout}s and was killed")
                return ProcessErr(
                    ProcessErrorKind.TIMEOUT,
                    f"{cmd[0]} timed out after {timeout}s",
                    proc.returncode,
                    stderr_tail,
                )
            except asyncio.CancelledError:
                await self._kill(proc)
                raise
        finally:
            active_transcodes_gauge.dec()

        stdout = "\n".join(stdout_lines)
        if proc.returncode != 0:
            return ProcessErr(
                ProcessErrorKind.EXIT,
                f"{cmd[0]} exited with code {proc.returncode}: {stderr_tail.strip()}",
                proc.returncode,
                stderr_tail,
            )
        return ProcessOk(stdout=stdout, stderr=stderr_tail)

    @staticmethod
    async def _kill(proc) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await asyncio.shield(proc.wait())


@dataclass
class ToolStatus:
    name: str
    binary: str
    available: bool
    version: Optional[str] = None
    error: Optional[str] = None


class MediaToolchain:
    """Availability of ffmpeg and ffprobe, checked once and cached"""

    def __init__(self, runner: ProcessRunner, ffmpeg_bin: str, ffprobe_bin: str, timeout: float = 10.0):
        self.runner = runner
        self.binaries = {"ffmpeg": ffmpeg_bin, "ffprobe": ffprobe_bin}
        self.timeout = timeout
        self._status: Optional[Dict[str, ToolStatus]] = None

    async def check(self, refresh: bool = False) -> Dict[str, ToolStatus]:
        if self._status is not None and not refresh:
            return self._status

        status = {}
        for name, binary in self.binaries.items():
            result = await self.runner.run([binary, "-version"], timeout=self.timeout)
            if result.ok:
                first_line = result.stdout.splitlines()[0] if result.stdout else ""
                status[name] = ToolStatus(name, binary, True, version=first_line.strip() or None)
            else:
                status[name] = ToolStatus(name, binary, False, error=result.detail)
        self._status = status
        return status

    @property
    def checked(self) -> bool:
        return self._status is not None

    async def require(self) -> None:
        """Raise ToolUnavailableError when any tool is missing"""
        status = await self.check()
        missing = [s for s in status.values() if not s.available]
        if missing:
            raise ToolUnavailableError(
                detail="; ".join(f"{s.binary}: {s.error}" for s in missing)
            )


class TranscodeLimiter:
    """Bounds how many external media processes run at once

    One limiter is shared by every job, so the bound holds across uploads
    regardless of how many qualities each requests. The semaphore is
    recreated when used from a different event loop.
    """

    def __init__(self, max_concurrent: int):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop = None
        self.active = 0
        self.peak = 0

    def _get_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
            self._loop = loop
        return self._semaphore

    @asynccontextmanager
    async def slot(self):
        async with self._get_semaphore():
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                yield
            finally:
                self.active -= 1
