"""Per-request progress reporting over the caller's push channel.

The MCP call handler binds a reporter for the duration of one tool call;
code deep inside a handler (the PBS throttle wait) calls
:func:`report_progress_nowait` without knowing about sessions or transports.
"""

import asyncio
import contextvars
import logging
from typing import Awaitable, Callable, Optional, Set

from medical_mcp.constants import PROGRESS_SEND_TIMEOUT

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[str], Awaitable[None]]

_current_reporter: contextvars.ContextVar[Optional[ProgressReporter]] = contextvars.ContextVar(
    "medical_mcp_progress_reporter", default=None
)

# Strong references to in-flight notifications.
_pending: Set["asyncio.Task[None]"] = set()


def bind_reporter(reporter: Optional[ProgressReporter]) -> contextvars.Token:
    return _current_reporter.set(reporter)


def unbind_reporter(token: contextvars.Token) -> None:
    _current_reporter.reset(token)


async def report_progress(message: str, timeout: Optional[float] = PROGRESS_SEND_TIMEOUT) -> None:
    """Send *message* to the current caller, if it asked for progress.

    Delivery is best-effort: a closed or stalled push stream must not
    fail the call. Sends taking longer than *timeout* are abandoned.
    """
    reporter = _current_reporter.get()
    if reporter is None:
        return
    try:
        await asyncio.wait_for(reporter(message), timeout)
    except asyncio.TimeoutError:
        logger.debug("Progress notification timed out after %ss: %s", timeout, message)
    except Exception:
        logger.debug("Progress notification not delivered: %s", message, exc_info=True)


def report_progress_nowait(
    message: str, timeout: Optional[float] = PROGRESS_SEND_TIMEOUT
) -> Optional["asyncio.Task[None]"]:
    """Schedule :func:`report_progress` in the background and return its task.

    The PBS throttle calls this while holding its lock.
    """
    if _current_reporter.get() is None:
        return None
    task = asyncio.ensure_future(report_progress(message, timeout))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task
