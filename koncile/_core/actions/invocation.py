"""
Calling the user's functions: reconcilers, mappers, error policies.

Each of them can be sync or async, or a partial or a decorated wrapper of such.
The sync ones run in the executor, so they do not block the controller's loop.
"""
import asyncio
import contextvars
import functools
import inspect
from collections.abc import Callable, Coroutine, Mapping
from typing import Any, TypeVar, Union

from koncile._cogs.configs import configuration

# The declared result of a sync function, or of the coroutine of an async one.
_R = TypeVar('_R')
SyncOrAsync = Union[_R, Coroutine[None, None, _R]]

# Any function to call with kwargs; the kwargs themselves are not type-checked.
Invokable = Callable[..., SyncOrAsync[object | None]]


async def invoke(
        fn: Invokable,
        *,
        settings: configuration.ControllerSettings | None = None,
        kwargs: Mapping[str, Any] | None = None,
) -> Any:
    """
    Call a function with the kwargs and return its result.

    The functions are expected to accept ``**kwargs`` for whatever they do not use.
    The sync ones get a copy of the current context variables in their thread.
    A cancellation does not abandon a running thread: it is raised only
    after the thread has exited, so that the executor is not exhausted
    by the orphaned threads.
    """
    kwargs = dict(kwargs or {})
    if is_async_fn(fn):
        return await fn(**kwargs)  # type: ignore

    call = functools.partial(contextvars.copy_context().run, functools.partial(fn, **kwargs))
    executor = None if settings is None else settings.execution.executor
    future = asyncio.get_running_loop().run_in_executor(executor, call)
    cancelled: asyncio.CancelledError | None = None
    while not future.done():
        try:
            await asyncio.shield(future)
        except asyncio.CancelledError as e:
            cancelled = e
    if cancelled is not None:
        raise cancelled
    return future.result()


def is_async_fn(fn: Invokable | None) -> bool:
    while isinstance(fn, functools.partial) or hasattr(fn, '__wrapped__'):
        fn = fn.func if isinstance(fn, functools.partial) else fn.__wrapped__  # type: ignore
    return fn is not None and inspect.iscoroutinefunction(fn)
