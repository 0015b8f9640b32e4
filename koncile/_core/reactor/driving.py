"""
The reconciler driver: from the queued keys to the reconciles and back.

The driver takes the ready keys from the work queue, re-fetches the current
objects, invokes the reconciler, and schedules the follow-up work according
to the outcome: nothing (until the next change), a requeue after some time,
or a retry after the error policy's backoff.

The driver keeps no state between the reconciles: everything is in the queue.
Up to the configured number of reconciles run concurrently for distinct keys;
the same key is never reconciled concurrently with itself (the queue ensures).

The failures in the reconcilers, in the error policies, and in the fetching
never break the driver: they all become the scheduled retries.
"""
import asyncio
import functools
import logging
from typing import Any

from koncile._cogs.aiokits import aiotasks
from koncile._cogs.clients import fetching
from koncile._cogs.configs import configuration
from koncile._cogs.structs import bodies, references
from koncile._core.actions import invocation, loggers, policies, results
from koncile._core.intents import registries
from koncile._core.reactor import queueing

logger = logging.getLogger(__name__)


async def driver(
        *,
        queue: queueing.WorkQueue[references.ObjectKey],
        controller: registries.ControllerSpec,
        settings: configuration.ControllerSettings,
        context: Any = None,
) -> None:
    """
    Drain the queue forever, with the limited concurrency.

    When cancelled, stop taking new keys, but let the in-flight reconciles
    finish (within the configured exit timeout), so that the objects are not
    left half-modified.
    """
    limit = settings.reconciling.concurrency
    semaphore = asyncio.Semaphore(limit) if limit is not None else None
    tasks: set[aiotasks.Task] = set()
    try:
        while True:
            # Take the capacity first, so that the keys are not taken out of the queue
            # while they cannot be processed: other drivers or the queue may need them.
            if semaphore is not None:
                await semaphore.acquire()
            try:
                key = await queue.dequeue()
            except BaseException:
                if semaphore is not None:
                    semaphore.release()
                raise

            task = asyncio.create_task(
                name=f"reconcile of {key.resource}/{key}",
                coro=process_key(
                    key=key,
                    queue=queue,
                    controller=controller,
                    settings=settings,
                    context=context,
                ),
            )
            tasks.add(task)
            task.add_done_callback(functools.partial(_release, tasks, semaphore))
    finally:
        await _finish(tasks, settings=settings)


def _release(
        tasks: set[aiotasks.Task],
        semaphore: asyncio.Semaphore | None,
        task: aiotasks.Task,
) -> None:
    tasks.discard(task)
    if semaphore is not None:
        semaphore.release()
    if not task.cancelled() and task.exception() is not None:
        name = task.get_name()
        logger.error(f"{name[:1].upper()}{name[1:]} has failed unexpectedly.", exc_info=task.exception())


async def _finish(
        tasks: set[aiotasks.Task],
        *,
        settings: configuration.ControllerSettings,
) -> None:
    if not tasks:
        return
    pending_tasks = set(tasks)
    logger.debug(f"Waiting for {len(pending_tasks)} in-flight reconciles to finish.")
    try:
        _, pending = await aiotasks.wait(pending_tasks, timeout=settings.reconciling.exit_timeout)
    except asyncio.CancelledError:
        await aiotasks.stop(pending_tasks, title="reconcile", cancelled=True, logger=logger)
        raise
    if pending:
        logger.warning(f"{len(pending)} reconciles did not finish in time, cancelling them.")
        await aiotasks.stop(pending, title="reconcile", logger=logger)


async def process_key(
        *,
        key: references.ObjectKey,
        queue: queueing.WorkQueue[references.ObjectKey],
        controller: registries.ControllerSpec,
        settings: configuration.ControllerSettings,
        context: Any = None,
) -> results.Outcome:
    """
    Reconcile one dequeued key and schedule its follow-up; never raise.
    """
    try:
        outcome = await reconcile(key=key, controller=controller, settings=settings, context=context)
    finally:
        queue.done(key)
    schedule(queue=queue, key=key, outcome=outcome)
    return outcome


async def reconcile(
        *,
        key: references.ObjectKey,
        controller: registries.ControllerSpec,
        settings: configuration.ControllerSettings,
        context: Any = None,
) -> results.Outcome:
    """
    Fetch the object, invoke the reconciler, and decide what to do next.

    The errors are converted into the delays by the error policy, so the result
    is either :class:`results.Converged` or :class:`results.RequeueAfter`.
    """
    body: bodies.Body | None = None
    obj_logger = loggers.ObjectLogger(key=key)
    try:
        raw_body = await fetching.read_obj(
            settings=settings,
            resource=key.resource,
            namespace=key.namespace,
            name=key.name,
            logger=obj_logger,
        )
    except Exception as e:
        obj_logger.error(f"Fetching has failed: {e!r}")
        outcome: results.Outcome = results.Error(cause=e)
    else:
        if raw_body is None:
            obj_logger.debug("The object is absent, nothing to reconcile.")
            return results.Converged()
        body = bodies.Body(raw_body)
        obj_logger = loggers.ObjectLogger(key=key, body=body)
        outcome = await invoke_reconciler(
            key=key,
            body=body,
            controller=controller,
            settings=settings,
            context=context,
            logger=obj_logger,
        )

    if isinstance(outcome, results.Error):
        outcome = await invoke_error_policy(
            key=key,
            body=body,
            error=outcome.cause,
            controller=controller,
            settings=settings,
            context=context,
            logger=obj_logger,
        )
    return outcome


async def invoke_reconciler(
        *,
        key: references.ObjectKey,
        body: bodies.Body,
        controller: registries.ControllerSpec,
        settings: configuration.ControllerSettings,
        context: Any,
        logger: loggers.ObjectLogger,
) -> results.Outcome:
    try:
        logger.debug(f"Reconciler {controller.id!r} is invoked.")
        result = await invocation.invoke(
            controller.reconciler,
            settings=settings,
            kwargs=dict(
                body=body,
                spec=body.spec,
                meta=body.meta,
                status=body.status,
                name=key.name,
                namespace=key.namespace,
                key=key,
                context=context,
                logger=logger,
            ),
        )
        outcome = results.interpret(result)
    except Exception as e:
        logger.exception(f"Reconciler {controller.id!r} failed with an exception: {e}")
        return results.Error(cause=e)
    else:
        logger.debug(f"Reconciler {controller.id!r} succeeded: {outcome!r}")
        return outcome


async def invoke_error_policy(
        *,
        key: references.ObjectKey,
        body: bodies.Body | None,
        error: Exception,
        controller: registries.ControllerSpec,
        settings: configuration.ControllerSettings,
        context: Any,
        logger: loggers.ObjectLogger,
) -> results.Outcome:
    """
    Decide on the retry of a failed reconcile; fall back to the default policy.
    """
    default = policies.fixed_backoff(settings.reconciling.error_backoff)
    policy = controller.error_policy if controller.error_policy is not None else default
    try:
        result = await invocation.invoke(
            policy,
            settings=settings,
            kwargs=dict(
                body=body,
                error=error,
                key=key,
                context=context,
                logger=logger,
            ),
        )
        outcome = policies.interpret(result)
    except Exception as e:
        logger.exception(f"Error policy failed with an exception, using the default one: {e}")
        outcome = policies.interpret(default(error=error))

    if isinstance(outcome, results.RequeueAfter):
        logger.info(f"Will retry in {outcome.delay:g}s.")
    else:
        logger.info("Will not retry until the next change.")
    return outcome


def schedule(
        *,
        queue: queueing.WorkQueue[references.ObjectKey],
        key: references.ObjectKey,
        outcome: results.Outcome,
) -> None:
    match outcome:
        case results.RequeueAfter(delay=delay):
            queue.enqueue_after(key, delay)
        case results.Converged():
            pass
        case _:
            raise TypeError(f"Unschedulable outcome: {outcome!r}")
