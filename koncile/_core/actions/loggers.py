"""
Per-object logging and the log formats of the whole controller.

Every reconcile gets its own logger (:class:`ObjectLogger`), which carries
the object's reference in the records' extras: it is rendered as a prefix
in the text formats, or as a separate field in the JSON format.
"""
import copy
import enum
import logging
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any, TextIO

from pythonjsonlogger.core import RESERVED_ATTRS
from pythonjsonlogger.json import JsonFormatter

from koncile._cogs.helpers import typedefs
from koncile._cogs.structs import bodies, references

logger = logging.getLogger('koncile.objects')

# Where the object's reference goes in the JSON records unless configured otherwise.
DEFAULT_JSON_REFKEY = 'object'

SEVERITIES = [
    (logging.DEBUG, 'debug'),
    (logging.INFO, 'info'),
    (logging.WARNING, 'warn'),
    (logging.ERROR, 'error'),
]


class LogFormat(enum.Enum):
    """ Log formats, as specified on CLI. """
    PLAIN = '%(message)s'
    FULL = '[%(asctime)s] %(name)-20.20s [%(levelname)-8.8s] %(message)s'
    JSON = '-json-'  # not used for formatting, only for detection


def _prefixed(record: logging.LogRecord) -> logging.LogRecord:
    ref = getattr(record, 'k8s_ref', None)
    if ref is None:
        return record
    name = ref.get('name', '')
    namespace = ref.get('namespace')
    record = copy.copy(record)
    record.msg = f"[{namespace}/{name}] {record.msg}" if namespace else f"[{name}] {record.msg}"
    return record


class ObjectTextFormatter(logging.Formatter):
    """ A text formatter, optionally with the objects' ``[namespace/name]`` prefixes. """

    def __init__(self, *args: Any, prefix: bool = False, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.prefix = prefix

    def format(self, record: logging.LogRecord) -> str:
        return super().format(_prefixed(record) if self.prefix else record)


class ObjectJsonFormatter(JsonFormatter):
    """
    A JSON formatter with the object's reference and the record's severity.

    The reference is put under its own key (``object`` by default) instead of
    being dumped as the raw ``k8s_ref`` extra. The severity names are those
    understood by the common log collectors (e.g. "warn", not "warning").
    """

    def __init__(self, *args: Any, prefix: bool = False, refkey: str | None = None, **kwargs: Any) -> None:
        kwargs['reserved_attrs'] = set(kwargs.get('reserved_attrs', RESERVED_ATTRS)) | {'k8s_ref'}
        kwargs.setdefault('timestamp', True)
        super().__init__(*args, **kwargs)
        self.prefix = prefix
        self.refkey = refkey or DEFAULT_JSON_REFKEY

    def format(self, record: logging.LogRecord) -> str:
        return super().format(_prefixed(record) if self.prefix else record)

    def add_fields(
            self,
            log_record: dict[str, Any],
            record: logging.LogRecord,
            message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        if hasattr(record, 'k8s_ref'):
            log_record[self.refkey] = getattr(record, 'k8s_ref')
        if 'severity' not in log_record:
            severities = (name for level, name in SEVERITIES if record.levelno <= level)
            log_record['severity'] = next(severities, 'fatal')


class ObjectLogger(typedefs.LoggerAdapter):
    """
    A logger/adapter to carry the object identifiers for formatting.

    Constructed for every reconcile of every individual object. If the object
    is already deleted, only the key is known, and the reference is partial.
    """

    def __init__(
            self,
            *,
            key: references.ObjectKey,
            body: bodies.Body | None = None,
    ) -> None:
        ref: dict[str, Any] = dict(
            apiVersion=key.resource.api_version,
            kind=key.resource.kind,
            name=key.name,
            namespace=key.namespace,
        )
        if body is not None:
            ref.update(bodies.build_object_reference(body))
        super().__init__(logger, dict(k8s_ref={k: v for k, v in ref.items() if v}))

    def process(
            self,
            msg: str,
            kwargs: MutableMapping[str, Any],
    ) -> tuple[str, MutableMapping[str, Any]]:
        # The call's own extras are kept, not replaced by the adapter's.
        kwargs["extra"] = dict(self.extra or {}) | kwargs.get('extra', {})
        return msg, kwargs


# Marks the handlers added by `configure`, so that a repeated configuration replaces them.
if TYPE_CHECKING:
    class _KoncileStreamHandler(logging.StreamHandler[TextIO]):
        pass
else:
    class _KoncileStreamHandler(logging.StreamHandler):
        pass


def configure(
        debug: bool | None = None,
        verbose: bool | None = None,
        quiet: bool | None = None,
        log_format: LogFormat = LogFormat.FULL,
        log_prefix: bool | None = False,
        log_refkey: str | None = None,
) -> None:
    handler = _KoncileStreamHandler()
    handler.setFormatter(make_formatter(log_format=log_format, log_prefix=log_prefix, log_refkey=log_refkey))
    root = logging.getLogger()
    root.handlers[:] = [h for h in root.handlers if not isinstance(h, _KoncileStreamHandler)] + [handler]
    root.setLevel(logging.DEBUG if debug or verbose else logging.WARNING if quiet else logging.INFO)

    # The asyncio internals are only shown in the debug mode.
    aio_logger = logging.getLogger('asyncio')
    aio_logger.propagate = bool(debug)
    if not debug:
        aio_logger.handlers[:] = [logging.NullHandler()]


def make_formatter(
        log_format: LogFormat | str = LogFormat.FULL,
        log_prefix: bool | None = False,
        log_refkey: str | None = None,
) -> logging.Formatter:
    """
    A formatter for the log format as given on CLI.

    With ``log_prefix=None``, the text formats are prefixed, and JSON is not.
    """
    if log_format is LogFormat.JSON:
        return ObjectJsonFormatter(prefix=bool(log_prefix), refkey=log_refkey)
    elif isinstance(log_format, LogFormat):
        return ObjectTextFormatter(log_format.value, prefix=log_prefix is None or log_prefix)
    elif isinstance(log_format, str):
        return ObjectTextFormatter(log_format, prefix=log_prefix is None or log_prefix)
    else:
        raise ValueError(f"Unsupported log format: {log_format!r}")
