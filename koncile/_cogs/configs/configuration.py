"""
All configuration flags, options, settings to fine-tune a controller.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

Some of the settings are flags, some are scalars, some are optional,
some are not (but all of them have reasonable defaults).

In this library, they are called *"settings"* (plural).
Combined, they form a *"configuration"* (singular).
"""
import concurrent.futures
import dataclasses
from collections.abc import Iterable


@dataclasses.dataclass
class ProcessSettings:
    """
    Settings for the OS processes: e.g. when started via CLI as `koncile run`.
    """

    ultimate_exiting_timeout: float | None = 10 * 60
    """
    How long to wait for the graceful exit before SIGKILL'ing the controller.

    This is the last resort to make the controller exit instead of getting
    stuck at exiting due to reconcilers not finishing, threads left, etc.

    The countdown goes from when a graceful signal arrives (SIGTERM/SIGINT),
    regardless of what is happening in the graceful exiting routine.

    Measured in seconds. Set to `None` to disable (on your own risk).
    """


@dataclasses.dataclass
class NetworkingSettings:

    request_timeout: float | None = 5 * 60  # == aiohttp.client.DEFAULT_TIMEOUT
    """
    A timeout for the regular (non-streaming) API requests: reads, patches, etc.
    """

    connect_timeout: float | None = None
    """
    A timeout for establishing the TCP/SSL connections to the API.
    """

    error_backoffs: Iterable[float] = (1, 1, 2, 3, 5)
    """
    Backoff intervals in case of connection errors or 5xx server errors
    in the regular (non-streaming) API requests.

    The request is retried after every delay in the list. Once they are
    exhausted, the last error is re-raised to the caller. To disable retries,
    set it to ``[]`` or ``()``; only ``iter()`` is called on it every time.
    """


@dataclasses.dataclass
class WatchingSettings:

    server_timeout: float | None = None
    """
    The maximum duration of one streaming request. Patched in some tests.
    If ``None``, then obey the server-side timeouts (they seem to be random).
    """

    client_timeout: float | None = None
    """
    An HTTP/HTTPS session timeout to use in watch requests.
    """

    connect_timeout: float | None = None
    """
    An HTTP/HTTPS connection timeout to use in watch requests.
    """

    reconnect_backoff: float = 0.1
    """
    How long should a pause be between watch requests (to prevent API flooding).

    It is also the first step of the exponential backoff after the failures.
    """

    reconnect_backoff_max: float = 30
    """
    The cap of the exponential backoff for the failed watch requests.

    Every next consecutive failure doubles the pause, but never beyond this.
    A successfully established stream resets the backoff to the beginning.
    """

    resync_interval: float | None = None
    """
    How often to re-list the whole collection even if the stream is healthy.

    Every re-listing re-emits all existing objects as modified, which
    compensates for the missed events (if any). ``None`` disables it.
    """


@dataclasses.dataclass
class ReconcilingSettings:
    """
    Settings for how the reconcilers are driven.
    """

    concurrency: int | None = None
    """
    How many reconciles can run simultaneously for distinct objects.
    If ``None``, there is no limit (as many as there are ready keys).

    The same object is never reconciled concurrently with itself.
    """

    error_backoff: float = 15
    """
    How long to wait before retrying a failed reconcile (in seconds).

    This is used only by the default error policy. A custom error policy
    can decide on its own, with this value being just a hint.
    """

    exit_timeout: float | None = None
    """
    How long to wait for the in-flight reconciles when the controller exits.

    ``None`` means to wait until they are all finished. Once the timeout is
    reached, the remaining reconciles are cancelled.
    """


@dataclasses.dataclass
class RegistrationSettings:
    """
    Settings for the schemas (CRDs) applied at startup.
    """

    field_manager: str = 'koncile'
    """
    The field manager for the server-side apply of the schemas.
    """

    settle_delay: float = 1.0
    """
    How long to wait after the schemas are applied and before watching them.

    The API server needs some time to start serving the new resources.
    This is a pause, not a guarantee: the watchers tolerate the early errors.
    """


@dataclasses.dataclass
class ExecutionSettings:
    """
    Settings for synchronous reconcilers execution (e.g. thread-/process-pools).
    """

    executor: concurrent.futures.Executor = dataclasses.field(
        default_factory=concurrent.futures.ThreadPoolExecutor)
    """
    The executor to be used for synchronous reconciler invocation.

    It can be changed at runtime (e.g. to reset the pool size). Already running
    reconcilers (specific invocations) will continue with their original executors.
    """

    _max_workers: int | None = None

    @property
    def max_workers(self) -> int | None:
        """
        How many threads/processes is dedicated to reconciler execution.

        It can be changed at runtime (the threads/processes are not terminated).
        """
        return self._max_workers

    @max_workers.setter
    def max_workers(self, value: int) -> None:
        if value < 1:
            raise ValueError("Can't set thread pool limit lower than 1.")
        self._max_workers = value

        if hasattr(self.executor, '_max_workers'):
            self.executor._max_workers = value  # type: ignore
        else:
            raise TypeError("Current executor does not support `max_workers`.")


@dataclasses.dataclass
class ControllerSettings:
    process: ProcessSettings = dataclasses.field(default_factory=ProcessSettings)
    networking: NetworkingSettings = dataclasses.field(default_factory=NetworkingSettings)
    watching: WatchingSettings = dataclasses.field(default_factory=WatchingSettings)
    reconciling: ReconcilingSettings = dataclasses.field(default_factory=ReconcilingSettings)
    registration: RegistrationSettings = dataclasses.field(default_factory=RegistrationSettings)
    execution: ExecutionSettings = dataclasses.field(default_factory=ExecutionSettings)
