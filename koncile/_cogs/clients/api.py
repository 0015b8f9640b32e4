"""
The HTTP layer of the API clients: requests with retries, and JSON-lines streams.

The server errors (5xx), the timeouts and the connection failures are retried
here, with the delays from the networking settings. Anything else (e.g. 404)
goes to the caller immediately as one of the :mod:`errors` classes.
"""
import asyncio
import collections.abc
import json
from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any

import aiohttp

from koncile._cogs.aiokits import aiotasks
from koncile._cogs.clients import auth, errors
from koncile._cogs.configs import configuration
from koncile._cogs.helpers import typedefs

RETRYABLE_ERRORS = (aiohttp.ClientConnectionError, errors.APIServerError, asyncio.TimeoutError)


@auth.authenticated
async def request(
        method: str,
        url: str,  # absolute, or relative to the server's root.
        *,
        settings: configuration.ControllerSettings,
        payload: object | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
        error_backoffs: Iterable[float] | None = None,
        context: auth.APIContext | None = None,  # injected by the decorator
        logger: typedefs.Logger,
) -> aiohttp.ClientResponse:
    """ Send a request and check its status, but leave the body unread. """
    if context is None:
        raise RuntimeError("The API context is not injected.")

    if '://' not in url:
        url = f"{context.server.rstrip('/')}/{url.lstrip('/')}"
    if timeout is None:
        timeout = aiohttp.ClientTimeout(
            total=settings.networking.request_timeout,
            sock_connect=settings.networking.connect_timeout,
        )

    delays = settings.networking.error_backoffs if error_backoffs is None else error_backoffs
    delays = list(delays) if isinstance(delays, collections.abc.Iterable) else [delays]
    what = f"{method.upper()} {url}"
    attempts = len(delays) + 1
    for attempt in range(1, attempts + 1):
        if attempt > 1:
            logger.debug(f"Request attempt #{attempt}/{attempts}: {what}")
        try:
            response = await context.session.request(
                method=method,
                url=url,
                json=payload,
                headers=headers,
                timeout=timeout,
            )
            await errors.check_response(response)
        except RETRYABLE_ERRORS as e:
            if attempt == attempts:
                logger.error(f"Request attempt #{attempt}/{attempts} failed; escalating: {what} -> {e!r}")
                raise
            logger.error(f"Request attempt #{attempt}/{attempts} failed; will retry: {what} -> {e!r}")
            await asyncio.sleep(delays[attempt - 1])
        else:
            if attempt > 1:
                logger.debug(f"Request attempt #{attempt}/{attempts} succeeded: {what}")
            return response

    raise RuntimeError("Unreachable: the last attempt either returns or raises.")


async def _read_json(method: str, url: str, **kwargs: Any) -> Any:
    response = await request(method, url, **kwargs)
    async with response:
        return await response.json()


async def get(
        url: str,
        *,
        settings: configuration.ControllerSettings,
        headers: Mapping[str, str] | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
        logger: typedefs.Logger,
) -> Any:
    return await _read_json('get', url, headers=headers, timeout=timeout,
                            settings=settings, logger=logger)


async def post(
        url: str,
        *,
        settings: configuration.ControllerSettings,
        payload: object | None = None,
        headers: Mapping[str, str] | None = None,
        logger: typedefs.Logger,
) -> Any:
    return await _read_json('post', url, payload=payload, headers=headers,
                            settings=settings, logger=logger)


async def patch(
        url: str,
        *,
        settings: configuration.ControllerSettings,
        payload: object | None = None,
        headers: Mapping[str, str] | None = None,
        logger: typedefs.Logger,
) -> Any:
    return await _read_json('patch', url, payload=payload, headers=headers,
                            settings=settings, logger=logger)


async def stream(
        url: str,
        *,
        settings: configuration.ControllerSettings,
        timeout: aiohttp.ClientTimeout | None = None,
        stopper: aiotasks.Future | None = None,
        logger: typedefs.Logger,
) -> AsyncIterator[Any]:
    """
    Yield the decoded JSON lines of a long-lived response, e.g. of a watch.

    The stream is not retried: the watcher reconnects on its own terms.
    A line that is not a valid JSON breaks the stream as a failed connection.
    When the ``stopper`` is done, the response is closed and the stream
    ends quietly, as if the server has closed it.
    """
    response = await request('get', url, timeout=timeout, error_backoffs=(),
                             settings=settings, logger=logger)

    def close_response(_: Any) -> None:
        response.close()

    if stopper is not None:
        stopper.add_done_callback(close_response)
    try:
        async with response:
            async for line in iter_jsonlines(response.content):
                try:
                    data = json.loads(line.decode('utf-8'))
                except ValueError as e:
                    raise aiohttp.ClientPayloadError(f"Malformed line in the stream: {line[:100]!r}") from e
                yield data
    except aiohttp.ClientConnectionError:
        if stopper is None or not stopper.done():
            raise
    finally:
        if stopper is not None:
            stopper.remove_done_callback(close_response)


async def iter_jsonlines(
        content: aiohttp.StreamReader,
        chunk_size: int = 1024 * 1024,
) -> AsyncIterator[bytes]:
    """
    Split the response's content by newlines, skipping the empty lines.

    aiohttp's own ``async for line in content`` is limited to 128 KB per line,
    while a single object in a watch-stream can take megabytes.
    """
    tail = b''
    async for chunk in content.iter_chunked(chunk_size):
        *lines, tail = (tail + chunk).split(b'\n')
        for line in lines:
            if line:
                yield line
    if tail:
        yield tail
