"""Cancellable external process runner.

Every tool invocation goes through :func:`run_command`. Aborting a running
tool (timeout or cancellation) first sends SIGINT so terraform and helm can
release their state locks and exit cleanly, then SIGKILL once the grace
period has elapsed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..primitives.exceptions import StepExecutionError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence
    from pathlib import Path

    from ..primitives.cancellation import CancellationToken

logger = logging.getLogger("deploy_engine.process")

DEFAULT_KILL_GRACE_PERIOD = 300.0
# Grandchildren (terraform provider plugins) can keep our pipes open after the
# tool itself exited.
_PIPE_DRAIN_TIMEOUT = 5.0
_STREAM_LIMIT = 1024 * 1024


class AbortReason(str, Enum):
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CommandResult:
    command: tuple[str, ...]
    returncode: int | None
    stdout: tuple[str, ...] = ()
    stderr: tuple[str, ...] = ()
    duration: float = 0.0
    abort_reason: AbortReason | None = None

    @property
    def success(self) -> bool:
        return self.abort_reason is None and self.returncode == 0

    @property
    def stdout_text(self) -> str:
        return "\n".join(self.stdout)

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr)


async def run_command(
    command: Sequence[str],
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    token: CancellationToken | None = None,
    timeout: float | None = None,
    kill_grace_period: float = DEFAULT_KILL_GRACE_PERIOD,
    on_stdout: Callable[[str], None] | None = None,
    on_stderr: Callable[[str], None] | None = None,
) -> CommandResult:
    """Run ``command`` to completion, timeout or cancellation.

    Output is streamed line by line to the ``deploy_engine.process`` logger
    and the optional callbacks, and captured in the result.

    Raises:
        StepExecutionError: The binary could not be started (returncode 127).
    """
    argv = tuple(str(a) for a in command)
    tool = os.path.basename(argv[0])
    started = time.monotonic()

    if token is not None and token.is_cancelled:
        return CommandResult(argv, None, abort_reason=AbortReason.CANCELLED)

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env={**os.environ, **env} if env is not None else None,
            limit=_STREAM_LIMIT,
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise StepExecutionError(
            f"cannot execute {argv[0]}: {exc}",
            tool=tool,
            command=argv,
            returncode=127,
        ) from exc

    logger.info(
        "Running %s", " ".join(argv), extra={"tool": tool, "pid": process.pid}
    )
    stdout: list[str] = []
    stderr: list[str] = []
    readers = asyncio.ensure_future(
        asyncio.gather(
            _pump(process.stdout, stdout, on_stdout, tool, logging.DEBUG),
            _pump(process.stderr, stderr, on_stderr, tool, logging.INFO),
        )
    )
    exited = asyncio.ensure_future(process.wait())
    watchers: set[asyncio.Future[Any]] = {exited}
    cancelled = asyncio.ensure_future(token.wait()) if token is not None else None
    if cancelled is not None:
        watchers.add(cancelled)

    abort_reason: AbortReason | None = None
    try:
        done, _ = await asyncio.wait(
            watchers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if exited not in done:
            abort_reason = (
                AbortReason.CANCELLED
                if cancelled is not None and cancelled in done
                else AbortReason.TIMEOUT
            )
            logger.warning(
                "Aborting %s (%s), pid %d",
                tool,
                abort_reason.value,
                process.pid,
            )
            await _terminate(process, exited, kill_grace_period)
        drained, _ = await asyncio.wait({readers}, timeout=_PIPE_DRAIN_TIMEOUT)
        if readers not in drained:
            logger.warning("Output pipes of %s still open after exit", tool)
    finally:
        if cancelled is not None:
            cancelled.cancel()
        if not readers.done():
            readers.cancel()
        if process.returncode is None:
            # The awaiting task itself was cancelled.
            with contextlib.suppress(ProcessLookupError):
                process.kill()

    result = CommandResult(
        command=argv,
        returncode=process.returncode,
        stdout=tuple(stdout),
        stderr=tuple(stderr),
        duration=time.monotonic() - started,
        abort_reason=abort_reason,
    )
    logger.info(
        "%s exited with %s after %.1fs",
        tool,
        result.returncode,
        result.duration,
        extra={"tool": tool, "returncode": result.returncode},
    )
    return result


async def _terminate(
    process: asyncio.subprocess.Process,
    exited: asyncio.Future[int],
    grace_period: float,
) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.send_signal(signal.SIGINT)
    done, _ = await asyncio.wait({exited}, timeout=grace_period)
    if exited in done:
        return
    logger.warning(
        "pid %d ignored SIGINT for %.0fs, killing", process.pid, grace_period
    )
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await exited


async def _pump(
    stream: asyncio.StreamReader | None,
    sink: list[str],
    callback: Callable[[str], None] | None,
    tool: str,
    level: int,
) -> None:
    if stream is None:
        return
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # The reader discards a line longer than its limit.
            sink.append("<line too long, discarded>")
            continue
        if not raw:
            return
        line = raw.decode(errors="replace").rstrip("\r\n")
        sink.append(line)
        logger.log(level, "[%s] %s", tool, line)
        if callback is not None:
            callback(line)
