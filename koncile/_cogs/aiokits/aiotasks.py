"""
Starting, waiting, and stopping the controller's asyncio tasks.

Only tasks are supported, not arbitrary awaitables: the controller
not only waits for its watchers and drivers, but also cancels them.
"""
import asyncio
from collections.abc import Collection, Coroutine
from typing import TYPE_CHECKING, Any

from koncile._cogs.helpers import typedefs

# The generic aliases are not subscriptable at runtime on all supported versions.
if TYPE_CHECKING:
    Future = asyncio.Future[Any]
    Task = asyncio.Task[Any]
else:
    Future = asyncio.Future
    Task = asyncio.Task


async def guard(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        cancellable: bool = False,
        logger: typedefs.Logger | None = None,
) -> None:
    """
    Run a never-ending coroutine and report how it has ended.

    The watchers and the drivers are started in the background and are
    awaited only at exit, so their failures are logged immediately instead.
    A return is reported too: these coroutines are expected to run until
    cancelled. An expected cancellation (``cancellable``) is not reported.
    """
    title = name[:1].upper() + name[1:]
    try:
        await coro
    except asyncio.CancelledError:
        if logger is not None and not cancellable:
            logger.debug(f"{title} is cancelled.")
        raise
    except Exception as e:
        if logger is not None:
            logger.exception(f"{title} has failed: {e}")
        raise
    if logger is not None:
        logger.warning(f"{title} has finished unexpectedly.")


def create_guarded_task(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        cancellable: bool = False,
        logger: typedefs.Logger | None = None,
) -> Task:
    """ Start a named task with the coroutine wrapped into :func:`guard`. """
    guarded = guard(coro, name, cancellable=cancellable, logger=logger)
    return asyncio.create_task(guarded, name=name)


async def wait(
        tasks: Collection[Task],
        *,
        timeout: float | None = None,
        return_when: Any = asyncio.ALL_COMPLETED,
) -> tuple[set[Task], set[Task]]:
    """ Same as :func:`asyncio.wait`, but an empty collection is done at once. """
    if not tasks:
        return set(), set()
    return await asyncio.wait(tasks, timeout=timeout, return_when=return_when)


async def stop(
        tasks: Collection[Task],
        *,
        title: str,
        cancelled: bool = False,
        interval: float | None = None,
        logger: typedefs.Logger | None = None,
) -> tuple[set[Task], set[Task]]:
    """
    Cancel the tasks and wait until they are all gone.

    There is no timeout: the tasks either exit, or the stopper itself
    is cancelled. In the latter case, the tasks are left as they are.
    With an ``interval``, the tasks still running are reported after
    every such interval of waiting, so that the stuck tasks are visible.

    ``cancelled`` means that the stopper runs because of a cancellation
    of its own caller; it only changes the wording of the logs.
    """
    title = title[:1].upper() + title[1:]
    if not tasks:
        if logger is not None:
            logger.debug(f"{title} tasks stopping is skipped: no tasks given.")
        return set(), set()

    for task in tasks:
        task.cancel()

    done: set[Task] = set()
    pending: set[Task] = set(tasks)
    while pending:
        try:
            just_done, pending = await wait(pending, timeout=interval)
        except asyncio.CancelledError:
            if logger is not None:
                left = {task for task in tasks if not task.done()}
                status = 'are not stopped' if left else 'are stopped'
                reason = 'double-cancelling' if cancelled else 'cancelling'
                logger.debug(f"{title} tasks {status}: {reason} at stopping; tasks left: {left!r}")
            raise
        done |= just_done
        if logger is not None:
            status = 'are not stopped' if pending else 'are stopped'
            reason = 'cancelling normally' if cancelled else 'finishing normally'
            logger.debug(f"{title} tasks {status}: {reason}; tasks left: {pending!r}")

    return done, pending


async def reraise(tasks: Collection[Task]) -> None:
    """ Raise the first regular error of the finished tasks; ignore cancellations. """
    for task in tasks:
        if not task.cancelled():
            task.result()


async def all_tasks(*, ignored: Collection[Task] = frozenset()) -> Collection[Task]:
    """
    All tasks of the current loop, except the current task and the ``ignored`` ones.

    A snapshot taken before the controller starts serves as ``ignored``
    at exit: whatever remains after that is left by the controller.
    """
    current = asyncio.current_task()
    return {task for task in asyncio.all_tasks() if task is not current and task not in ignored}
