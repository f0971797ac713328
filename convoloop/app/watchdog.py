"""
convoloop — Stage Watchdog / Timeout Guard

``run_with_timeout`` guards one suspension point of the turn loop
(device acquisition, capture stop, dialogue round-trip):
    1. Enforces a hard wall-clock deadline.
    2. Optionally aborts early when a cancel event is set.
    3. Captures the stage's exception instead of raising it.
    4. Returns a ``WatchdogResult`` with timing metadata.

Usage:
    result = await run_with_timeout(
        client.converse(session, clip),
        timeout_secs=60.0,
        stage_name="dialogue",
        cancel_evt=cancel_evt,
    )
    if result.cancelled:
        ...
    elif result.timed_out or result.exception:
        ...
    else:
        reply = result.value
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


@dataclass
class WatchdogResult:
    """Outcome of a watchdog-guarded stage."""
    value: Any = None
    timed_out: bool = False
    cancelled: bool = False
    elapsed_ms: float = 0.0
    stage: str = ""
    exception: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return not (self.timed_out or self.cancelled or self.exception is not None)


async def run_with_timeout(
    coro: Coroutine,
    timeout_secs: float,
    stage_name: str = "unknown",
    cancel_evt: Optional[asyncio.Event] = None,
) -> WatchdogResult:
    """
    Execute *coro* with a hard timeout and optional cancel-event check.

    Args:
        coro:              The coroutine to guard.
        timeout_secs:      Maximum wall-clock seconds before abort.
        stage_name:        Stage label for logs.
        cancel_evt:        If provided, abort early when this event is set.

    Returns:
        WatchdogResult with the coroutine's value, its exception, or
        timeout/cancellation flags.
    """
    t0 = time.monotonic()
    result = WatchdogResult(stage=stage_name)

    task = asyncio.ensure_future(coro)
    waiters = {task}
    cancel_task: Optional[asyncio.Task] = None
    if cancel_evt is not None:
        cancel_task = asyncio.ensure_future(cancel_evt.wait())
        waiters.add(cancel_task)

    try:
        done, _pending = await asyncio.wait(
            waiters, timeout=timeout_secs, return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        # Our own caller was cancelled.
        task.cancel()
        if cancel_task:
            cancel_task.cancel()
        raise

    elapsed = time.monotonic() - t0
    result.elapsed_ms = round(elapsed * 1000, 1)

    # ---- normal completion (wins over a simultaneous cancel) ----------
    if task in done:
        if cancel_task:
            cancel_task.cancel()
        exc = task.exception()
        if exc is not None:
            result.exception = exc
            logger.warning(
                "watchdog ERROR  stage=%s  error=%s  elapsed=%.0fms",
                stage_name, exc, elapsed * 1000,
            )
        else:
            result.value = task.result()
        return result

    await _cancel_and_wait(task)

    # ---- cancel event fired -------------------------------------------
    if cancel_task and cancel_task in done:
        result.cancelled = True
        logger.info(
            "watchdog CANCELLED  stage=%s  elapsed=%.0fms", stage_name, elapsed * 1000,
        )
        return result

    # ---- timeout (nothing completed) ----------------------------------
    if cancel_task:
        cancel_task.cancel()
    result.timed_out = True
    logger.warning(
        "watchdog TIMEOUT  stage=%s  elapsed=%.0fms  limit=%.0fms",
        stage_name, elapsed * 1000, timeout_secs * 1000,
    )
    return result


async def _cancel_and_wait(task: asyncio.Future) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug("stage raised while cancelling: %s", e)
