"""Agent interfaces and the shared subprocess streaming machinery."""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from typing import IO, TYPE_CHECKING, Optional

from quibble.retry import is_transient_error, with_retry

if TYPE_CHECKING:
    from quibble.models import AuthorResponse, ConsensusCheck, Review

logger = logging.getLogger(__name__)

# (text, token_count, status) -> None
ProgressCallback = Callable[[str, Optional[int], Optional[str]], None]

LineHandler = Callable[[str], None]

DEFAULT_INACTIVITY_TIMEOUT = 900.0


class AgentError(Exception):
    """An agent invocation failed."""

    transient = False


class AgentTimeoutError(AgentError):
    """The agent produced no output for longer than the inactivity window."""

    transient = True


class AgentProcessError(AgentError):
    """The agent process exited with a non-zero status."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class AgentNotFoundError(AgentError):
    """The agent executable is not installed or not on PATH."""


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, AgentNotFoundError):
        return False
    return is_transient_error(exc)


def notify(on_progress: ProgressCallback | None, text: str, tokens: int | None, status: str | None = None) -> None:
    """Invoke a progress callback without letting it break the stream."""
    if on_progress is None:
        return
    try:
        on_progress(text, tokens, status)
    except Exception:
        logger.debug("Progress callback raised", exc_info=True)


class AgentEngine(abc.ABC):
    """Common surface of reviewer and author agents."""

    # Token usage reported by the most recent invocation, if any.
    last_token_count: int | None = None
    last_tokens_estimated: bool = False

    async def close(self) -> None:
        """Release any resources held by the engine."""


class ReviewerEngine(AgentEngine):
    @abc.abstractmethod
    async def review(
        self,
        document: str,
        context_block: str | None = None,
        on_progress: ProgressCallback | None = None,
        debug_path: Path | None = None,
    ) -> Review:
        """Critique *document* and return structured findings."""
        ...

    @abc.abstractmethod
    async def check_consensus(
        self,
        original_document: str,
        original_feedback: str,
        author_responses: str,
        updated_document: str,
        context_block: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ConsensusCheck:
        """Judge whether the author's responses settle the review."""
        ...


class AuthorEngine(AgentEngine):
    @abc.abstractmethod
    async def respond(
        self,
        document: str,
        feedback: str,
        context_block: str | None = None,
        on_progress: ProgressCallback | None = None,
        debug_path: Path | None = None,
    ) -> AuthorResponse:
        """Answer each feedback item and return the revised document."""
        ...


class TriggerEngine(abc.ABC):
    """Runs an agent CLI as a subprocess and streams its output line by line."""

    executable: str = ""

    def __init__(
        self,
        *,
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT,
        cwd: str | Path | None = None,
    ) -> None:
        self._inactivity_timeout = inactivity_timeout
        self._cwd = str(cwd) if cwd else None
        self._close_wait_seconds = 2.0
        self._procs: set[asyncio.subprocess.Process] = set()

    async def _run_streaming(
        self,
        args: list[str],
        on_line: LineHandler,
        debug_path: Path | None = None,
        on_attempt: Callable[[], None] | None = None,
    ) -> str:
        """Run *args*, feeding every non-blank stdout/stderr line to *on_line*.

        Returns the collected stdout.  Transient failures are retried with
        backoff; *on_attempt* runs before each try so stream state can be
        reset, and every attempt appends to the same debug log.
        """
        debug_file: IO[str] | None = None
        if debug_path is not None:
            debug_path.parent.mkdir(parents=True, exist_ok=True)
            debug_file = open(debug_path, "a", encoding="utf-8")
        try:
            async def attempt() -> str:
                if on_attempt is not None:
                    on_attempt()
                return await self._run_once(args, on_line, debug_file)

            return await with_retry(attempt, is_retryable)
        finally:
            if debug_file is not None:
                debug_file.close()

    async def _run_once(
        self,
        args: list[str],
        on_line: LineHandler,
        debug_file: IO[str] | None,
    ) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                limit=1024 * 1024,  # 1MB line buffer
            )
        except FileNotFoundError as e:
            raise AgentNotFoundError(
                f"{args[0]} CLI not found. Install it and make sure it is on PATH."
            ) from e

        self._procs.add(proc)
        queue: asyncio.Queue[tuple[str, str] | None] = asyncio.Queue()
        readers = [
            asyncio.create_task(self._pump(proc.stdout, "stdout", queue)),
            asyncio.create_task(self._pump(proc.stderr, "stderr", queue)),
        ]
        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        try:
            open_streams = len(readers)
            while open_streams:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=self._inactivity_timeout)
                except asyncio.TimeoutError:
                    await self._stop(proc)
                    raise AgentTimeoutError(
                        f"{args[0]} timed out after {int(self._inactivity_timeout)}s without output"
                    ) from None
                if item is None:
                    open_streams -= 1
                    continue
                source, line = item
                (stdout_lines if source == "stdout" else stderr_lines).append(line)
                if debug_file is not None:
                    debug_file.write(f"[{source}] {line}\n")
                    debug_file.flush()
                if line.strip():
                    on_line(line)
            returncode = await proc.wait()
        finally:
            for task in readers:
                task.cancel()
            for task in readers:
                with suppress(asyncio.CancelledError):
                    await task
            self._procs.discard(proc)

        if returncode != 0:
            detail = "\n".join(stderr_lines).strip() or "\n".join(stdout_lines).strip()
            raise AgentProcessError(
                f"{args[0]} exited with code {returncode}: {detail[-2000:]}", returncode,
            )
        return "\n".join(stdout_lines)

    @staticmethod
    async def _pump(stream, source: str, queue: asyncio.Queue) -> None:
        """Forward decoded lines from *stream* into *queue*, then a None marker."""
        try:
            if stream is None:
                return
            async for raw_line in stream:
                queue.put_nowait((source, raw_line.decode("utf-8", errors="replace").rstrip("\r\n")))
        finally:
            queue.put_nowait(None)

    async def _stop(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        with suppress(ProcessLookupError):
            proc.terminate()
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=self._close_wait_seconds)
            return
        with suppress(ProcessLookupError):
            proc.kill()
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=self._close_wait_seconds)

    async def close(self) -> None:
        """Terminate any agent processes that are still running."""
        procs = list(self._procs)
        for proc in procs:
            await self._stop(proc)
        self._procs.clear()
