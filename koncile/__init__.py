"""
The main koncile module for all the exported functions & classes.
"""
# isort: skip_file

# Unlike all other places, where we import other modules and refer
# the functions via the modules, this is the library's top-level interface,
# as it is seen by the users. So, we export the individual functions.

from koncile import (
    on,  # as a separate name on the public namespace
)
from koncile._cogs.configs.configuration import (
    ControllerSettings,
    ProcessSettings,
    NetworkingSettings,
    WatchingSettings,
    ReconcilingSettings,
    RegistrationSettings,
    ExecutionSettings,
)
from koncile._cogs.helpers.typedefs import (
    Logger,
)
from koncile._cogs.clients.errors import (
    APIError,
    APIClientError,
    APIServerError,
    APIUnauthorizedError,
    APIForbiddenError,
    APINotFoundError,
    APIConflictError,
    APIGoneError,
    APITooManyRequestsError,
)
from koncile._cogs.clients.resources import (
    ResourceClient,
)
from koncile._cogs.clients.watching import (
    Bookmark,
    WatchState,
    WatchCursor,
)
from koncile._cogs.structs.bodies import (
    RawInputType,
    RawEventType,
    RawBody,
    RawEvent,
    RawInput,
    RawMeta,
    Body,
    Meta,
    Spec,
    Status,
    ObjectReference,
    build_object_reference,
)
from koncile._cogs.structs.credentials import (
    LoginError,
    ConnectionInfo,
)
from koncile._cogs.structs.references import (
    Resource,
    ObjectKey,
    WatchConfig,
)
from koncile._core.actions.loggers import (
    configure,
    LogFormat,
    ObjectLogger,
)
from koncile._core.actions.results import (
    Action,
    Outcome,
    Converged,
    RequeueAfter,
    Error,
)
from koncile._core.actions.policies import (
    ErrorPolicy,
    FixedBackoff,
    fixed_backoff,
)
from koncile._core.engines.registration import (
    RegistrationError,
    make_crd,
    ensure_crds,
)
from koncile._core.intents.controllers import (
    Controller,
)
from koncile._core.intents.piggybacking import (
    login_with_kubeconfig,
    login_with_service_account,
)
from koncile._core.intents.registries import (
    ControllerRegistry,
    get_default_registry,
    set_default_registry,
    register_crd,
)
from koncile._core.reactor.mapping import (
    Mapper,
    by_reference,
    map_event,
)
from koncile._core.reactor.queueing import (
    WorkQueue,
)
from koncile._core.reactor.running import (
    spawn_tasks,
    run_tasks,
    session,
    operator,
    apply,
    run,
)

__all__ = [
    'on',
    'configure', 'LogFormat', 'ObjectLogger', 'Logger',
    'login_with_kubeconfig', 'login_with_service_account',
    'LoginError', 'ConnectionInfo',
    'ControllerSettings', 'ProcessSettings', 'NetworkingSettings', 'WatchingSettings',
    'ReconcilingSettings', 'RegistrationSettings', 'ExecutionSettings',
    'APIError', 'APIClientError', 'APIServerError',
    'APIUnauthorizedError', 'APIForbiddenError', 'APINotFoundError',
    'APIConflictError', 'APIGoneError', 'APITooManyRequestsError',
    'ResourceClient',
    'Bookmark', 'WatchState', 'WatchCursor',
    'RawInputType', 'RawEventType', 'RawBody', 'RawEvent', 'RawInput', 'RawMeta',
    'Body', 'Meta', 'Spec', 'Status',
    'ObjectReference', 'build_object_reference',
    'Resource', 'ObjectKey', 'WatchConfig',
    'Action', 'Outcome', 'Converged', 'RequeueAfter', 'Error',
    'ErrorPolicy', 'FixedBackoff', 'fixed_backoff',
    'RegistrationError', 'make_crd', 'ensure_crds',
    'Controller',
    'ControllerRegistry', 'get_default_registry', 'set_default_registry', 'register_crd',
    'Mapper', 'by_reference', 'map_event',
    'WorkQueue',
    'spawn_tasks', 'run_tasks', 'session', 'operator', 'apply', 'run',
]
