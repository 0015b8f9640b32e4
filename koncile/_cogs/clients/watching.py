"""
Watching and streaming watch-events.

A watch-stream is a lazy, effectively infinite sequence of change events
for one resource collection. It survives the disconnections from the API:
every individual watch request ends sooner or later (by timeouts, by network
errors, by the server's restarts), and the stream is then re-established
from the last seen resource version.

If that version has expired (the server has compacted its history), the stream
falls back to the full re-listing of the collection, and re-emits all existing
objects as "MODIFIED" events, so that the consumers do not distinguish
the listed objects from the watched ones.

The reconnection logic is an explicit state machine (see :class:`WatchCursor`)
rather than a nest of exception-driven retries: so that the transitions between
the incremental watching and the full re-listing can be tested without I/O.
"""
import asyncio
import contextlib
import dataclasses
import enum
import logging
from collections.abc import AsyncIterator
from typing import cast

import aiohttp

from koncile._cogs.aiokits import aiotasks
from koncile._cogs.clients import api, errors, fetching
from koncile._cogs.configs import configuration
from koncile._cogs.structs import bodies, references

logger = logging.getLogger(__name__)

HTTP_GONE_CODE = 410
DEFAULT_RETRY_DELAY_SECONDS = 1


class Bookmark(enum.Enum):
    """ Special marks sent in the stream among raw events. """
    LISTED = enum.auto()  # the listing is over, now streaming.


class WatchState(enum.Enum):
    RESYNCING = 'resyncing'  # the list-then-watch is needed: no valid resource version.
    CONNECTED = 'connected'  # the incremental watching from the known resource version.
    DISCONNECTED = 'disconnected'  # backing off after a failure before reconnecting.


@dataclasses.dataclass
class WatchCursor:
    """
    The position & state of one watch-stream in the collection's history.

    All transitions are plain synchronous methods with no I/O: the actual
    listing, watching, and sleeping are done by :func:`infinite_watch`,
    which only consults the cursor on what to do next.
    """
    state: WatchState = WatchState.RESYNCING
    resource_version: str | None = None
    failures: int = 0
    listed_at: float | None = None

    def listed(self, resource_version: str | None, *, now: float) -> None:
        """ The full listing is done: continue incrementally from its version. """
        self.state = WatchState.CONNECTED
        self.resource_version = resource_version
        self.listed_at = now
        self.failures = 0

    def observe(self, raw_input: bodies.RawInput) -> bodies.RawEvent | None:
        """
        Interpret one raw input from the watch request, return a yieldable event if any.

        The errors in the stream switch the state; the consumer of the cursor
        must check it and stop the current watch request if it is not connected.
        """
        raw_type = raw_input['type']
        raw_object = raw_input['object']

        # "410 Gone" is for the "resource version too old" error, we must restart watching.
        # The resource versions are lost by k8s after a few minutes (5 as per the official doc).
        # The error occurs when there is nothing happening for a few minutes. This is normal.
        if raw_type == 'ERROR' and cast(bodies.RawError, raw_object).get('code') == HTTP_GONE_CODE:
            self.gone()
            return None

        if raw_type == 'ERROR':
            logger.warning(f"Error in the watch-stream: {raw_object!r}")
            self.failed()
            return None

        # The bookmarks carry nothing but the resource version to continue from.
        body = cast(bodies.RawBody, raw_object)
        version = body.get('metadata', {}).get('resourceVersion')
        if version is not None:
            self.resource_version = version
        self.failures = 0

        if raw_type == 'BOOKMARK':
            return None

        if raw_type not in ['ADDED', 'MODIFIED', 'DELETED']:
            logger.warning(f"Ignoring an unsupported event type: {raw_input!r}")
            return None

        return cast(bodies.RawEvent, raw_input)

    def closed(self) -> None:
        """ The server has closed a healthy stream (e.g. by timeout): reconnect from here. """
        self.failures = 0

    def gone(self) -> None:
        """ The remembered resource version is too old: re-list everything. """
        self.state = WatchState.RESYNCING
        self.resource_version = None

    def failed(self) -> None:
        self.state = WatchState.DISCONNECTED
        self.failures += 1

    def recovered(self) -> None:
        """ The backoff is over: reconnect if the position is known, else re-list. """
        self.state = WatchState.CONNECTED if self.resource_version is not None else WatchState.RESYNCING

    def expire(self) -> None:
        """ Force the full re-listing even if the stream is healthy. """
        self.state = WatchState.RESYNCING

    def backoff(self, settings: configuration.ControllerSettings) -> float:
        """
        How long to sleep before the next request: exponential if failing, capped.
        """
        initial = settings.watching.reconnect_backoff
        if self.failures <= 0:
            return initial
        delay = initial * 2 ** (self.failures - 1)
        return min(delay, settings.watching.reconnect_backoff_max)

    def resync_remaining(self, settings: configuration.ControllerSettings, *, now: float) -> float | None:
        """ How long until the next periodic re-listing; ``None`` if disabled. """
        interval = settings.watching.resync_interval
        if interval is None or self.listed_at is None:
            return None
        return max(0.0, self.listed_at + interval - now)


async def infinite_watch(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        config: references.WatchConfig | None = None,
        cursor: WatchCursor | None = None,
        _iterations: int | None = None,  # used in tests/mocks/fixtures
) -> AsyncIterator[Bookmark | bodies.RawEvent]:
    """
    Stream the watch-events infinitely.

    This routine never ends gracefully. If a watcher's stream fails,
    a new one is recreated, and the stream continues. Only the cancellation
    (or closing of the generator) stops it.
    """
    loop = asyncio.get_running_loop()
    cursor = cursor if cursor is not None else WatchCursor()
    where = f'in {namespace!r}' if namespace is not None else 'cluster-wide'
    logger.debug(f"Starting the watch-stream for {resource} {where}.")
    try:
        while _iterations is None or _iterations > 0:  # equivalent to `while True` in non-test mode
            _iterations = None if _iterations is None else _iterations - 1

            remaining = cursor.resync_remaining(settings, now=loop.time())
            if cursor.state == WatchState.CONNECTED and remaining is not None and remaining <= 0:
                logger.debug(f"Re-listing {resource} {where} periodically.")
                cursor.expire()

            try:
                if cursor.state == WatchState.DISCONNECTED:
                    delay = cursor.backoff(settings)
                    logger.debug(f"Reconnecting the watch-stream for {resource} {where} "
                                 f"in {delay:.1f}s (failures: {cursor.failures}).")
                    await asyncio.sleep(delay)
                    cursor.recovered()

                elif cursor.state == WatchState.RESYNCING:
                    objs, resource_version = await fetching.list_objs(
                        logger=logger,
                        settings=settings,
                        resource=resource,
                        namespace=namespace,
                        config=config,
                    )
                    cursor.listed(resource_version, now=loop.time())
                    for obj in objs:
                        yield {'type': 'MODIFIED', 'object': obj}

                    # Notify the consumer that the listing is over, even if there was nothing yielded.
                    yield Bookmark.LISTED

                else:
                    async with contextlib.aclosing(watch_objs(
                        settings=settings,
                        resource=resource,
                        namespace=namespace,
                        config=config,
                        since=cursor.resource_version,
                        lifetime=remaining,
                    )) as stream:
                        async for raw_input in stream:
                            raw_event = cursor.observe(raw_input)
                            if cursor.state != WatchState.CONNECTED:
                                break
                            if raw_event is not None:
                                yield raw_event

                    if cursor.state == WatchState.CONNECTED:
                        cursor.closed()
                        await asyncio.sleep(cursor.backoff(settings))
                    elif cursor.state == WatchState.RESYNCING:
                        logger.debug(f"Restarting the watch-stream for {resource} {where}.")

            except errors.APIGoneError:
                logger.debug(f"Restarting the watch-stream for {resource} {where}.")
                cursor.gone()

            except errors.APITooManyRequestsError as e:
                retry_wait = e.retry_after or DEFAULT_RETRY_DELAY_SECONDS
                logger.warning(
                    f"Receiving `too many requests` error from server, will retry after "
                    f"{retry_wait} seconds. Error details: {e}"
                )
                await asyncio.sleep(retry_wait)

            except (errors.APIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                cursor.failed()
                logger.warning(f"Watch-stream for {resource} {where} has failed: {e!r}")

    finally:
        logger.debug(f"Stopping the watch-stream for {resource} {where}.")


async def watch_objs(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        config: references.WatchConfig | None = None,
        since: str | None = None,
        lifetime: float | None = None,
) -> AsyncIterator[bodies.RawInput]:
    """
    Watch objects of a specific resource type with one streaming request.

    The cluster-scoped call is used in two cases:

    * The resource itself is cluster-scoped, and namespacing makes not sense.
    * The controller serves all namespaces for the namespaced resource.

    Otherwise, the namespace-scoped call is used:

    * The resource is namespace-scoped AND controller is namespaced-restricted.

    The stream ends when the server closes it, or after the lifetime
    (if specified) -- by closing the connection client-side.
    """
    params: dict[str, str] = {}
    params.update(config.as_params() if config is not None else {})
    params['watch'] = 'true'
    params['allowWatchBookmarks'] = 'true'
    if since is not None:
        params['resourceVersion'] = since
    if settings.watching.server_timeout is not None:
        params['timeoutSeconds'] = str(settings.watching.server_timeout)

    connect_timeout = (
        settings.watching.connect_timeout if settings.watching.connect_timeout is not None else
        settings.networking.connect_timeout if settings.networking.connect_timeout is not None else
        settings.networking.request_timeout
    )

    loop = asyncio.get_running_loop()
    stopper: aiotasks.Future = loop.create_future()
    handle = None
    if lifetime is not None:
        handle = loop.call_later(lifetime, lambda: stopper.done() or stopper.set_result(None))

    try:
        async with contextlib.aclosing(api.stream(
            url=resource.get_url(namespace=namespace, params=params),
            logger=logger,
            settings=settings,
            stopper=stopper,
            timeout=aiohttp.ClientTimeout(
                total=settings.watching.client_timeout,
                sock_connect=connect_timeout,
            ),
        )) as stream:
            async for raw_input in stream:
                yield raw_input
    finally:
        if handle is not None:
            handle.cancel()
        if not stopper.done():
            stopper.cancel()
