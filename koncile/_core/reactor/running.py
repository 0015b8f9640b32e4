import asyncio
import contextlib
import logging
import signal
import threading
from collections.abc import AsyncIterator, Collection, Mapping
from typing import Any

from koncile._cogs.aiokits import aioflags, aiotasks
from koncile._cogs.clients import auth
from koncile._cogs.configs import configuration
from koncile._cogs.structs import credentials, references
from koncile._core.engines import registration
from koncile._core.intents import piggybacking, registries
from koncile._core.reactor import driving, multiplexing, queueing

logger = logging.getLogger(__name__)


def run(
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        registry: registries.ControllerRegistry | None = None,
        settings: configuration.ControllerSettings | None = None,
        connection: credentials.ConnectionInfo | None = None,
        namespace: str | None = None,
        crds: Collection[Mapping[str, Any]] = (),
        context: Any = None,
        stop_flag: aioflags.Flag | None = None,
        ready_flag: aioflags.Flag | None = None,
) -> None:
    """ Run the controllers in a new event loop (or the given one) until stopped. """
    coro = operator(
        registry=registry,
        settings=settings,
        connection=connection,
        namespace=namespace,
        crds=crds,
        context=context,
        stop_flag=stop_flag,
        ready_flag=ready_flag,
    )
    try:
        if loop is not None:
            loop.run_until_complete(coro)
        else:
            asyncio.run(coro)
    except asyncio.CancelledError:
        pass


async def operator(
        *,
        registry: registries.ControllerRegistry | None = None,
        settings: configuration.ControllerSettings | None = None,
        connection: credentials.ConnectionInfo | None = None,
        namespace: str | None = None,
        crds: Collection[Mapping[str, Any]] = (),
        context: Any = None,
        stop_flag: aioflags.Flag | None = None,
        ready_flag: aioflags.Flag | None = None,
) -> None:
    """
    Run the controllers in the current event loop until stopped.

    The login, the CRDs, and the API session wrap `spawn_tasks` + `run_tasks`.
    The startup errors (login, CRDs) are raised from here; all other errors
    are retried inside for as long as the controller runs.
    """
    registry = registry if registry is not None else registries.get_default_registry()
    settings = settings if settings is not None else configuration.ControllerSettings()
    async with session(connection):
        existing_tasks = await aiotasks.all_tasks()
        await registration.ensure_crds(list(registry.crds) + list(crds), settings=settings)
        controller_tasks = await spawn_tasks(
            registry=registry,
            settings=settings,
            namespace=namespace,
            context=context,
            stop_flag=stop_flag,
            ready_flag=ready_flag,
        )
        await run_tasks(controller_tasks, ignored=existing_tasks)


def apply(
        *,
        crds: Collection[Mapping[str, Any]],
        settings: configuration.ControllerSettings | None = None,
        connection: credentials.ConnectionInfo | None = None,
) -> None:
    """
    Apply the schemas and exit, without running any controllers.
    """
    async def _apply() -> None:
        async with session(connection):
            await registration.ensure_crds(crds, settings=real_settings)

    real_settings = settings if settings is not None else configuration.ControllerSettings()
    asyncio.run(_apply())


@contextlib.asynccontextmanager
async def session(
        connection: credentials.ConnectionInfo | None = None,
) -> AsyncIterator[auth.APIContext]:
    """
    Login and keep the API session for all the tasks started inside.
    """
    info = piggybacking.login(connection)
    api_context = auth.APIContext(info)
    token = auth.context_var.set(api_context)
    try:
        yield api_context
    finally:
        await api_context.close()
        auth.context_var.reset(token)


async def spawn_tasks(
        *,
        registry: registries.ControllerRegistry,
        settings: configuration.ControllerSettings,
        namespace: str | None = None,
        context: Any = None,
        stop_flag: aioflags.Flag | None = None,
        ready_flag: aioflags.Flag | None = None,
) -> Collection[aiotasks.Task]:
    """
    Start the root tasks: per controller, a queue with its watchers & its driver.

    Besides them, two service tasks stop the controller on the stop-flag
    or an OS signal, and hard-kill it if the graceful stopping takes too long.
    """
    signal_flag: aiotasks.Future = asyncio.Future()
    ns = references.NamespaceName(namespace) if namespace else None

    controllers = registry.controllers
    if not controllers:
        logger.warning("No reconcilers are registered: the controller has nothing to do.")

    tasks: list[aiotasks.Task] = [
        asyncio.create_task(_stop_flag_checker(signal_flag=signal_flag, stop_flag=stop_flag),
                            name="stop-flag checker"),
        asyncio.create_task(_ultimate_termination(settings=settings, stop_flag=stop_flag),
                            name="ultimate termination"),
    ]
    for controller in controllers:
        queue: queueing.WorkQueue[references.ObjectKey] = queueing.WorkQueue()
        feeders = {
            f"watcher of {controller.resource}": multiplexing.feed_primary(
                queue=queue, controller=controller, settings=settings, namespace=ns),
        }
        for watch in controller.watches:
            feeders[f"watcher of {watch.resource} for {controller.resource}"] = multiplexing.feed_secondary(
                queue=queue, watch=watch, settings=settings, namespace=ns)
        feeders[f"driver of {controller.resource}"] = driving.driver(
            queue=queue, controller=controller, settings=settings,
            context=controller.context if controller.context is not None else context)
        for name, coro in feeders.items():
            tasks.append(aiotasks.create_guarded_task(coro, name, cancellable=True, logger=logger))

    # Let the tasks enter their guards, so that an early cancellation is still guarded.
    await asyncio.sleep(0)

    _install_signal_handlers(signal_flag)
    aioflags.raise_flag(ready_flag)
    return tasks


def _install_signal_handlers(signal_flag: aiotasks.Future) -> None:
    # Ctrl+C and the pod's termination stop the controller gracefully.
    if threading.current_thread() is not threading.main_thread():
        logger.warning("OS signals are ignored: running not in the main thread.")
        return
    loop = asyncio.get_running_loop()
    try:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_flag.set_result, signum)
    except NotImplementedError:
        logger.warning("OS signals are ignored: can't add signal handler in Windows.")


async def run_tasks(
        root_tasks: Collection[aiotasks.Task],
        *,
        ignored: Collection[aiotasks.Task] = frozenset(),
) -> None:
    """
    Run the root tasks until any of them exits, then stop everything.

    The root tasks never exit on their own: an exit means a failure or
    a stop request. All other root tasks are then cancelled; the drivers
    let their in-flight reconciles finish. The tasks that remain afterwards
    (i.e. not ``ignored``: spawned while running) get a few seconds
    to finish and are cancelled after that.

    A cancellation of the controller itself cancels all the tasks at once.
    The errors of the tasks are re-raised at the end.
    """
    try:
        root_done, root_pending = await aiotasks.wait(root_tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await aiotasks.stop(root_tasks, title="Root", logger=logger, cancelled=True, interval=10)
        hung_tasks = await aiotasks.all_tasks(ignored=ignored)
        await aiotasks.stop(hung_tasks, title="Hung", logger=logger, cancelled=True, interval=1)
        raise

    root_cancelled, _ = await aiotasks.stop(root_pending, title="Root", logger=logger)

    hung_tasks = await aiotasks.all_tasks(ignored=ignored)
    try:
        hung_done, hung_pending = await aiotasks.wait(hung_tasks, timeout=5)
    except asyncio.CancelledError:
        await aiotasks.stop(hung_tasks, title="Hung", logger=logger, cancelled=True, interval=1)
        raise
    hung_cancelled, _ = await aiotasks.stop(hung_pending, title="Hung", logger=logger, interval=1)

    await aiotasks.reraise(root_done | root_cancelled | hung_done | hung_cancelled)


async def _stop_flag_checker(
        signal_flag: aiotasks.Future,
        stop_flag: aioflags.Flag | None,
) -> None:
    """ Exit (and so stop the controller) on an OS signal or on the stop-flag. """
    waiters: list[aiotasks.Future] = [signal_flag]
    if stop_flag is not None:
        waiters.append(asyncio.create_task(aioflags.wait_flag(stop_flag), name="stop-flag waiter"))

    try:
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        reason = await done.pop()
    except asyncio.CancelledError:
        pass  # stopping for another reason
    else:
        if reason is None:
            logger.info("Stop-flag is raised. Controller is stopping.")
        elif isinstance(reason, signal.Signals):
            logger.info("Signal %s is received. Controller is stopping.", reason.name)
        else:
            logger.info("Stop-flag is set to %r. Controller is stopping.", reason)
    finally:
        for waiter in waiters[1:]:
            waiter.cancel()


async def _ultimate_termination(
        *,
        settings: configuration.ControllerSettings,
        stop_flag: aioflags.Flag | None,
) -> None:
    """
    Kill the controller's thread if its graceful stopping takes too long.

    Only the thread is killed, which is the whole process in the usual case
    of the main thread. A stop via the stop-flag is never forced this way:
    the embedding application is in charge then.
    """
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        timeout = settings.process.ultimate_exiting_timeout
        if timeout is not None and not aioflags.check_flag(stop_flag):
            asyncio.get_running_loop().call_later(
                timeout, signal.pthread_kill, threading.get_ident(), signal.SIGKILL)
        raise
