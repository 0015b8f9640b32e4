"""
The ready & stop flags of the controllers embedded into other applications.

An application signals in its own way: with the asyncio events & futures
when the controller runs in the same loop, or with the threading events
& concurrent futures when the controller runs in a side thread.
"""
import asyncio
import concurrent.futures
import threading
from typing import Any

from koncile._cogs.aiokits import aiotasks

Flag = aiotasks.Future | asyncio.Event | concurrent.futures.Future[Any] | threading.Event


async def wait_flag(flag: Flag | None) -> Any:
    """ Wait until the flag is raised; with no flag, wait forever. """
    match flag:
        case None:
            return await asyncio.Event().wait()
        case asyncio.Event():
            return await flag.wait()
        case asyncio.Future():
            return await flag
        case threading.Event():
            return await asyncio.get_running_loop().run_in_executor(None, flag.wait)
        case concurrent.futures.Future():
            return await asyncio.wrap_future(flag)
    raise TypeError(f"Unsupported type of a flag: {flag!r}")


def raise_flag(flag: Flag | None) -> None:
    match flag:
        case None:
            return
        case asyncio.Event() | threading.Event():
            flag.set()
            return
        case asyncio.Future() | concurrent.futures.Future():
            if not flag.done():
                flag.set_result(None)
            return
    raise TypeError(f"Unsupported type of a flag: {flag!r}")


def check_flag(flag: Flag | None) -> bool:
    match flag:
        case None:
            return False
        case asyncio.Event() | threading.Event():
            return flag.is_set()
        case asyncio.Future() | concurrent.futures.Future():
            return flag.done()
    raise TypeError(f"Unsupported type of a flag: {flag!r}")
