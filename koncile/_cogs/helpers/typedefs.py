"""
Rudimentary type [re-]definitions for cross-versioned Python & mypy.

Some standard-library types are generic only in type-sheds, but not at runtime
(e.g. ``logging.LoggerAdapter``, ``asyncio.Task``, ``asyncio.Future``).
This module defines them in a way usable both at runtime and in type-checking.
"""
import logging
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    LoggerAdapter = logging.LoggerAdapter[Any]
else:
    LoggerAdapter = logging.LoggerAdapter

# As publicly exposed: we only promise that it is based on one of the built-in loggable classes.
Logger = Union[logging.Logger, LoggerAdapter]
