"""
Feeding the watch-streams into the work queue of a controller.

One controller has one primary watch-stream and zero or more secondary ones.
All of them are merged into the same work queue of primary keys: the primary
events are converted to keys directly, the secondary events go via mappers.
The events themselves are not queued: only the keys to re-fetch & reconcile.

Every stream is fed by its own task, so the streams do not block each other.
The queue's operations never suspend, so there is no ordering across streams
except the order of the events' arrival.
"""
import contextlib
import logging
from collections.abc import AsyncIterator, Callable, Iterable

from koncile._cogs.clients import watching
from koncile._cogs.configs import configuration
from koncile._cogs.structs import bodies, references
from koncile._core.intents import registries
from koncile._core.reactor import mapping, queueing

logger = logging.getLogger(__name__)

KeyQueue = queueing.WorkQueue[references.ObjectKey]
KeysFn = Callable[[bodies.RawEvent], Iterable[references.ObjectKey]]


async def feed(
        *,
        queue: KeyQueue,
        stream: AsyncIterator[watching.Bookmark | bodies.RawEvent],
        to_keys: KeysFn,
        name: str,
) -> None:
    """
    Enqueue the keys of every event in the stream; skip the bookmarks.

    The stream is closed when the feeding is cancelled or the stream ends.
    """
    async with contextlib.aclosing(stream):  # type: ignore
        async for raw_event in stream:
            if isinstance(raw_event, watching.Bookmark):
                logger.debug(f"The initial listing of {name} is over.")
                continue
            for key in to_keys(raw_event):
                queue.enqueue(key)


async def feed_primary(
        *,
        queue: KeyQueue,
        controller: registries.ControllerSpec,
        settings: configuration.ControllerSettings,
        namespace: references.Namespace = None,
) -> None:
    """
    Reconcile the primary objects on their every change, including the deletion.
    """
    resource = controller.resource
    config = controller.config
    await feed(
        queue=queue,
        name=f'{resource}',
        to_keys=lambda raw_event: [references.ObjectKey.from_body(resource, raw_event['object'])],
        stream=watching.infinite_watch(
            settings=settings,
            resource=resource,
            namespace=_namespace(resource, config, namespace),
            config=config,
        ),
    )


async def feed_secondary(
        *,
        queue: KeyQueue,
        watch: registries.WatchSpec,
        settings: configuration.ControllerSettings,
        namespace: references.Namespace = None,
) -> None:
    """
    Reconcile the primary objects related to the secondary objects on their changes.
    """
    resource = watch.resource
    config = watch.config
    await feed(
        queue=queue,
        name=f'{resource}',
        to_keys=lambda raw_event: mapping.map_event(watch.mapper, raw_event),
        stream=watching.infinite_watch(
            settings=settings,
            resource=resource,
            namespace=_namespace(resource, config, namespace),
            config=config,
        ),
    )


def _namespace(
        resource: references.Resource,
        config: references.WatchConfig | None,
        namespace: references.Namespace,
) -> references.Namespace:
    # The per-watch namespace overrides the controller-wide one.
    if not resource.namespaced:
        return None
    elif config is not None and config.namespace is not None:
        return config.namespace
    else:
        return namespace
