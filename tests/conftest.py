import asyncio
import copy
import dataclasses
import itertools
import json
import logging
import socket
import threading
import uuid
from collections.abc import Mapping
from typing import Any

import aiohttp.web
import pytest

import koncile
from koncile._cogs.clients import auth
from koncile._cogs.clients.auth import APIContext
from koncile._cogs.configs.configuration import ControllerSettings
from koncile._cogs.structs.credentials import ConnectionInfo
from koncile._cogs.structs.references import Resource
from koncile._core.actions.loggers import _KoncileStreamHandler
from koncile._core.intents.registries import ControllerRegistry

MAIN = Resource('clux.dev', 'v1', 'mainthings', kind='MainThing')
REFERER = Resource('clux.dev', 'v1', 'refererthings', kind='RefererThing')


def pytest_addoption(parser):
    parser.addoption("--only-e2e", action="store_true", help="Execute end-to-end tests only.")


def pytest_collection_modifyitems(config, items):

    # Put all e2e tests to the end, as they are assumed to be slow.
    def _is_e2e(item):
        path = item.location[0]
        return path.startswith('tests/e2e/') or path.startswith('examples/')
    etc = [item for item in items if not _is_e2e(item)]
    e2e = [item for item in items if _is_e2e(item)]

    # Mark all e2e tests, no matter how they were detected. Just for filtering.
    mark_e2e = pytest.mark.e2e
    for item in e2e:
        item.add_marker(mark_e2e)

    # Minify the test-plan if only e2e are requested (all other should be skipped).
    if config.getoption('--only-e2e'):
        items[:] = e2e
    else:
        items[:] = etc + e2e


@pytest.fixture()
def main_resource():
    """ The primary resource used in the tests. """
    return MAIN


@pytest.fixture()
def referer_resource():
    """ The secondary resource used in the tests, referring to the primary one. """
    return REFERER


@pytest.fixture()
def cluster_resource():
    return Resource('clux.dev', 'v1', 'clusterthings', kind='ClusterThing', namespaced=False)


@pytest.fixture()
def settings():
    settings = ControllerSettings()
    settings.networking.error_backoffs = []
    settings.watching.reconnect_backoff = 0.01
    settings.watching.reconnect_backoff_max = 0.1
    settings.registration.settle_delay = 0
    settings.process.ultimate_exiting_timeout = None
    return settings


@pytest.fixture()
def logger():
    return logging.getLogger('koncile.tests')


@pytest.fixture(autouse=True)
def registry():
    """
    Ensure that the tests have a fresh new global (not re-used) registry.
    """
    old_registry = koncile.get_default_registry()
    new_registry = ControllerRegistry()
    koncile.set_default_registry(new_registry)
    yield new_registry
    koncile.set_default_registry(old_registry)


@pytest.fixture(autouse=True)
def restored_logging():
    """
    Undo the logging configuration of the CLI runs, which is global.
    """
    root = logging.getLogger()
    asyncio_logger = logging.getLogger('asyncio')
    level = root.level
    asyncio_handlers, asyncio_propagate = asyncio_logger.handlers[:], asyncio_logger.propagate
    yield
    root.handlers[:] = [h for h in root.handlers if not isinstance(h, _KoncileStreamHandler)]
    root.setLevel(level)
    asyncio_logger.handlers[:] = asyncio_handlers
    asyncio_logger.propagate = asyncio_propagate


#
# A fake Kubernetes API server: just enough of it for the controllers to run.
# It runs in its own thread with its own event loop, as a real server would run
# in its own process: the controller's tasks never see the server's tasks.
#

@dataclasses.dataclass(frozen=True)
class Request:
    method: str
    path: str
    query: dict[str, str]
    headers: Mapping[str, str]
    data: Any


class FakeAPI:
    """
    An in-memory API server with the resource versions and the watch-streams.

    The collections are identified by the URL prefix and the plural name,
    so any resource can be stored without declaring it in advance.

    The helper methods are synchronous and thread-safe: they are executed
    in the server's loop and block the caller until done.
    """

    def __init__(self) -> None:
        super().__init__()
        self.requests: list[Request] = []
        self.objects: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self.history: list[tuple[int, str | None, str | None, dict[str, Any]]] = []
        self.injected: dict[str, list[tuple[int, float | None]]] = {}
        self.garbled = 0
        self.resource_version = 0
        self.compacted_version = 0
        self.closing = False
        self.url = ''
        self._uids = itertools.count(1)
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, daemon=True)
        self._changed: asyncio.Condition
        self._runner: aiohttp.web.AppRunner

    def start(self) -> None:
        self._thread.start()
        self._call(self._start())

    def stop(self) -> None:
        self._call(self._stop())
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=10)
        self._loop.close()

    def create(self, resource: Resource, body: dict[str, Any]) -> dict[str, Any]:
        collection = self._collection(resource)
        namespace = body.get('metadata', {}).get('namespace')
        return self._call(self._create(collection, namespace, body))

    def patch(self, resource: Resource, name: str, patch: dict[str, Any], namespace: str | None = None) -> dict[str, Any]:
        collection = self._collection(resource)
        return self._call(self._patch(collection, namespace, name, patch))

    def delete(self, resource: Resource, name: str, namespace: str | None = None) -> None:
        collection = self._collection(resource)
        self._call(self._delete(collection, namespace, name))

    def get(self, resource: Resource, name: str, namespace: str | None = None) -> dict[str, Any] | None:
        return copy.deepcopy(self.objects.get((self._collection(resource), namespace, name)))

    def expire(self) -> None:
        """ Compact the history: the current watchers get "410 Gone" and must re-list. """
        self._call(self._expire())

    def inject(self, kind: str, status: int, count: int = 1, *, retry_after: float | None = None) -> None:
        """ Fail the next requests of this kind (list, watch, get, create, patch, apply). """
        self.injected.setdefault(kind, []).extend([(status, retry_after)] * count)

    def garble(self, count: int = 1) -> None:
        """ Break the next watch-streams with a truncated line. """
        self.garbled += count

    def requests_of(self, kind: str) -> list[Request]:
        return [request for request in self.requests if self._kind(request) == kind]

    def _call(self, coro: Any) -> Any:
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout=10)

    async def _start(self) -> None:
        self._changed = asyncio.Condition()
        app = aiohttp.web.Application()
        app.router.add_route('*', '/{tail:.*}', self._handle)
        self._runner = aiohttp.web.AppRunner(app)
        await self._runner.setup()
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(('127.0.0.1', 0))
        site = aiohttp.web.SockSite(self._runner, sock)
        await site.start()
        host, port = sock.getsockname()[:2]
        self.url = f'http://{host}:{port}'

    async def _stop(self) -> None:
        self.closing = True
        async with self._changed:
            self._changed.notify_all()
        await self._runner.cleanup()

    @staticmethod
    def _collection(resource: Resource) -> str:
        return resource.get_url()

    @staticmethod
    def _parse(path: str) -> tuple[str, str | None, str | None]:
        parts = path.strip('/').split('/')
        prefix, rest = (parts[:2], parts[2:]) if parts[0] == 'api' else (parts[:3], parts[3:])
        namespace: str | None = None
        if len(rest) >= 3 and rest[0] == 'namespaces':
            namespace, rest = rest[1], rest[2:]
        collection = '/' + '/'.join(prefix + rest[:1])
        name = rest[1] if len(rest) > 1 else None
        return collection, namespace, name

    @staticmethod
    def _kind(request: Request) -> str:
        _, _, name = FakeAPI._parse(request.path)
        content_type = request.headers.get('Content-Type', '')
        match request.method:
            case 'GET' if name is None and request.query.get('watch') == 'true':
                return 'watch'
            case 'GET' if name is None:
                return 'list'
            case 'GET':
                return 'get'
            case 'POST':
                return 'create'
            case 'PATCH' if content_type.startswith('application/apply-patch'):
                return 'apply'
            case 'PATCH':
                return 'patch'
            case 'DELETE':
                return 'delete'
            case _:
                return 'unknown'

    async def _handle(self, request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
        data = await request.json() if request.can_read_body else None
        recorded = Request(
            method=request.method,
            path=request.path,
            query=dict(request.query),
            headers=request.headers.copy(),
            data=data,
        )
        self.requests.append(recorded)
        collection, namespace, name = self._parse(request.path)
        kind = self._kind(recorded)

        if self.injected.get(kind):
            status, retry_after = self.injected[kind].pop(0)
            return self._status(status, f"Injected failure of {kind}.", retry_after=retry_after)

        match kind:
            case 'watch':
                return await self._watch(request, collection, namespace)
            case 'list':
                items = [copy.deepcopy(obj) for (c, ns, _), obj in self.objects.items()
                         if c == collection and (namespace is None or ns == namespace)
                         and self._selected(obj, request.query)]
                return aiohttp.web.json_response({
                    'items': items,
                    'metadata': {'resourceVersion': str(self.resource_version)},
                })
            case 'get':
                obj = self.objects.get((collection, namespace, name))
                if obj is None:
                    return self._status(404, f"{name!r} not found.")
                return aiohttp.web.json_response(obj)
            case 'create':
                if (collection, namespace, data.get('metadata', {}).get('name')) in self.objects:
                    return self._status(409, "Already exists.")
                return aiohttp.web.json_response(await self._create(collection, namespace, data))
            case 'patch':
                if (collection, namespace, name) not in self.objects:
                    return self._status(404, f"{name!r} not found.")
                return aiohttp.web.json_response(await self._patch(collection, namespace, name, data))
            case 'apply':
                if (collection, namespace, name) not in self.objects:
                    return aiohttp.web.json_response(await self._create(collection, namespace, data))
                return aiohttp.web.json_response(await self._patch(collection, namespace, name, data))
            case 'delete':
                if (collection, namespace, name) not in self.objects:
                    return self._status(404, f"{name!r} not found.")
                await self._delete(collection, namespace, name)
                return self._status(200, "Deleted.")
            case _:
                return self._status(405, "Unsupported.")

    @staticmethod
    def _status(code: int, message: str, *, retry_after: float | None = None) -> aiohttp.web.Response:
        payload = {'apiVersion': 'v1', 'kind': 'Status', 'code': code, 'message': message,
                   'status': 'Success' if code < 400 else 'Failure'}
        if retry_after is not None:
            payload['details'] = {'retryAfterSeconds': retry_after}
        return aiohttp.web.json_response(payload, status=code)

    @staticmethod
    def _selected(obj: dict[str, Any], query: Any) -> bool:
        labels = obj.get('metadata', {}).get('labels', {})
        for term in filter(None, query.get('labelSelector', '').split(',')):
            key, _, value = term.partition('=')
            if labels.get(key) != value:
                return False
        for term in filter(None, query.get('fieldSelector', '').split(',')):
            key, _, value = term.partition('=')
            if key == 'metadata.name' and obj.get('metadata', {}).get('name') != value:
                return False
        return True

    async def _record(self, collection: str | None, namespace: str | None, event: dict[str, Any]) -> None:
        self.history.append((self.resource_version, collection, namespace, copy.deepcopy(event)))
        async with self._changed:
            self._changed.notify_all()

    async def _create(self, collection: str, namespace: str | None, body: dict[str, Any]) -> dict[str, Any]:
        obj = copy.deepcopy(body)
        meta = obj.setdefault('metadata', {})
        name = meta['name']
        if namespace is not None:
            meta['namespace'] = namespace
        self.resource_version += 1
        meta['uid'] = str(uuid.UUID(int=next(self._uids)))
        meta['resourceVersion'] = str(self.resource_version)
        meta['generation'] = 1
        self.objects[(collection, namespace, name)] = obj
        await self._record(collection, namespace, {'type': 'ADDED', 'object': obj})
        return copy.deepcopy(obj)

    async def _patch(self, collection: str, namespace: str | None, name: str, patch: dict[str, Any]) -> dict[str, Any]:
        obj = self.objects[(collection, namespace, name)]
        _merge(obj, {key: val for key, val in patch.items() if key not in ['apiVersion', 'kind']})
        self.resource_version += 1
        obj['metadata']['resourceVersion'] = str(self.resource_version)
        if 'spec' in patch:
            obj['metadata']['generation'] = obj['metadata'].get('generation', 0) + 1
        await self._record(collection, namespace, {'type': 'MODIFIED', 'object': obj})
        return copy.deepcopy(obj)

    async def _delete(self, collection: str, namespace: str | None, name: str) -> None:
        obj = self.objects.pop((collection, namespace, name))
        self.resource_version += 1
        obj['metadata']['resourceVersion'] = str(self.resource_version)
        await self._record(collection, namespace, {'type': 'DELETED', 'object': obj})

    async def _expire(self) -> None:
        self.compacted_version = self.resource_version + 1
        self.resource_version += 1
        gone = {'type': 'ERROR', 'object': {'kind': 'Status', 'code': 410, 'reason': 'Expired'}}
        await self._record(None, None, gone)

    async def _watch(self, request: aiohttp.web.Request, collection: str, namespace: str | None) -> aiohttp.web.StreamResponse:
        since = request.query.get('resourceVersion')
        timeout = float(request.query['timeoutSeconds']) if 'timeoutSeconds' in request.query else None
        position = int(since) if since else self.resource_version
        if since and position < self.compacted_version:
            return self._status(410, "The resource version is too old.")

        response = aiohttp.web.StreamResponse()
        response.content_type = 'application/json'
        await response.prepare(request)

        if self.garbled:
            self.garbled -= 1
            await response.write(b'{"type": "MODIF\n')
            return response

        # Without a version, the existing objects come first, as the real API does.
        if not since:
            for (c, ns, _), obj in self.objects.items():
                if c == collection and (namespace is None or ns == namespace):
                    await response.write(json.dumps({'type': 'ADDED', 'object': obj}).encode() + b'\n')

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        try:
            while not self.closing:
                seen = self.resource_version
                for version, c, ns, event in list(self.history):
                    if version > position and c in [None, collection] and (namespace is None or ns in [None, namespace]):
                        await response.write(json.dumps(event).encode() + b'\n')
                        position = version
                        if event['type'] == 'ERROR':
                            return response
                position = max(position, seen)

                remaining = deadline - loop.time() if deadline is not None else None
                if remaining is not None and remaining <= 0:
                    break
                async with self._changed:
                    try:
                        await asyncio.wait_for(
                            self._changed.wait_for(lambda: self.resource_version > seen or self.closing),
                            timeout=remaining)
                    except asyncio.TimeoutError:
                        break
        except ConnectionResetError:
            pass
        return response


def _merge(dst: dict[str, Any], patch: dict[str, Any]) -> None:
    for key, val in patch.items():
        if val is None:
            dst.pop(key, None)
        elif isinstance(val, dict) and isinstance(dst.get(key), dict):
            _merge(dst[key], val)
        else:
            dst[key] = copy.deepcopy(val)


@pytest.fixture()
def fake_api():
    api = FakeAPI()
    api.start()
    try:
        yield api
    finally:
        api.stop()


@pytest.fixture()
def connection(fake_api):
    return ConnectionInfo(server=fake_api.url, default_namespace='default')


@pytest.fixture()
async def api_context(connection):
    """
    An API context for the client functions called directly in the tests.

    Normally, it is set by the controller's session for all its tasks.
    Here, it is set in the fixture's context, which the tests inherit.
    """
    context = APIContext(connection)
    token = auth.context_var.set(context)
    try:
        yield context
    finally:
        auth.context_var.reset(token)
        await context.close()
