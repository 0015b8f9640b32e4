import asyncio

from koncile._cogs.clients.watching import Bookmark
from koncile._cogs.structs.references import NamespaceName, ObjectKey, WatchConfig
from koncile._core.intents.registries import ControllerSpec, WatchSpec
from koncile._core.reactor.mapping import by_reference
from koncile._core.reactor.multiplexing import _namespace, feed, feed_primary, feed_secondary
from koncile._core.reactor.queueing import WorkQueue


async def test_feeding_enqueues_the_keys_and_skips_bookmarks(main_resource):
    closed = []

    async def stream():
        try:
            yield {'type': 'MODIFIED', 'object': {'metadata': {'name': 'a', 'namespace': 'ns'}}}
            yield Bookmark.LISTED
            yield {'type': 'ADDED', 'object': {'metadata': {'name': 'b', 'namespace': 'ns'}}}
            yield {'type': 'MODIFIED', 'object': {'metadata': {'name': 'a', 'namespace': 'ns'}}}
        finally:
            closed.append(True)

    seen = []

    def to_keys(raw_event):
        seen.append(raw_event)
        return [ObjectKey.from_body(main_resource, raw_event['object'])]

    queue = WorkQueue()
    await feed(queue=queue, stream=stream(), to_keys=to_keys, name='things')

    assert len(seen) == 3
    assert len(queue) == 2  # deduplicated
    assert ObjectKey(main_resource, 'a', NamespaceName('ns')) in queue
    assert ObjectKey(main_resource, 'b', NamespaceName('ns')) in queue
    assert closed == [True]


async def test_feeding_of_many_keys_per_event(main_resource):
    async def stream():
        yield {'type': 'MODIFIED', 'object': {}}

    keys = [ObjectKey(main_resource, 'x'), ObjectKey(main_resource, 'y')]
    queue = WorkQueue()
    await feed(queue=queue, stream=stream(), to_keys=lambda _: keys, name='things')
    assert len(queue) == 2


async def wait_until(predicate):
    while not predicate():
        await asyncio.sleep(0.01)


async def run_feeding_until(coro, predicate, timeout=3.0):
    task = asyncio.create_task(coro)
    try:
        await asyncio.wait_for(wait_until(predicate), timeout=timeout)
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def test_primary_feeding(api_context, fake_api, settings, main_resource):
    fake_api.create(main_resource, {'metadata': {'name': 'main', 'namespace': 'ns'}})
    fake_api.create(main_resource, {'metadata': {'name': 'alien', 'namespace': 'other'}})
    controller = ControllerSpec(id='fn', resource=main_resource, reconciler=lambda **_: None)
    queue = WorkQueue()

    coro = feed_primary(queue=queue, controller=controller, settings=settings, namespace='ns')
    await run_feeding_until(coro, lambda: fake_api.requests_of('watch'))

    assert len(queue) == 1
    assert ObjectKey(main_resource, 'main', NamespaceName('ns')) in queue


async def test_secondary_feeding(api_context, fake_api, settings, main_resource, referer_resource):
    fake_api.create(referer_resource, {'metadata': {'name': 'ref1', 'namespace': 'ns'},
                                       'spec': {'mainThingName': 'main'}})
    fake_api.create(referer_resource, {'metadata': {'name': 'ref2', 'namespace': 'ns'},
                                       'spec': {'mainThingName': 'main'}})
    fake_api.create(referer_resource, {'metadata': {'name': 'ref3', 'namespace': 'ns'},
                                       'spec': {}})
    watch = WatchSpec(id='mapper', resource=referer_resource, mapper=by_reference(main_resource))
    queue = WorkQueue()

    coro = feed_secondary(queue=queue, watch=watch, settings=settings, namespace=None)
    await run_feeding_until(coro, lambda: fake_api.requests_of('watch'))

    assert len(queue) == 1
    assert ObjectKey(main_resource, 'main', NamespaceName('ns')) in queue
    assert fake_api.requests_of('list')[0].path == '/apis/clux.dev/v1/refererthings'


def test_namespace_of_cluster_resources_is_ignored(cluster_resource):
    assert _namespace(cluster_resource, WatchConfig(namespace='ns1'), 'ns2') is None


def test_namespace_of_the_watch_overrides_the_controller_one(main_resource):
    assert _namespace(main_resource, WatchConfig(namespace='ns1'), 'ns2') == 'ns1'


def test_namespace_of_the_controller_is_the_default(main_resource):
    assert _namespace(main_resource, WatchConfig(), 'ns2') == 'ns2'
    assert _namespace(main_resource, None, 'ns2') == 'ns2'
    assert _namespace(main_resource, None, None) is None
