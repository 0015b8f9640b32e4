import pytest

from koncile._cogs.clients.applying import apply_obj
from koncile._cogs.clients.creating import create_obj
from koncile._cogs.clients.errors import APIConflictError
from koncile._cogs.clients.patching import patch_obj


async def test_creating_fills_the_type_and_the_identity(
        api_context, fake_api, settings, logger, main_resource):
    body = {'spec': {'x': 1}}
    created = await create_obj(
        settings=settings, resource=main_resource, namespace='ns', name='obj1', body=body, logger=logger)

    assert created['metadata']['name'] == 'obj1'
    assert created['metadata']['namespace'] == 'ns'
    assert body == {'spec': {'x': 1}}  # not modified

    data = fake_api.requests_of('create')[0].data
    assert data == {
        'apiVersion': 'clux.dev/v1',
        'kind': 'MainThing',
        'metadata': {'name': 'obj1', 'namespace': 'ns'},
        'spec': {'x': 1},
    }
    assert fake_api.requests_of('create')[0].path == '/apis/clux.dev/v1/namespaces/ns/mainthings'


async def test_creating_with_the_namespace_in_the_body(
        api_context, fake_api, settings, logger, main_resource):
    body = {'metadata': {'name': 'obj1', 'namespace': 'ns'}}
    await create_obj(settings=settings, resource=main_resource, body=body, logger=logger)
    assert fake_api.get(main_resource, 'obj1', namespace='ns') is not None


async def test_creating_of_an_existing_object_fails(
        api_context, fake_api, settings, logger, main_resource):
    fake_api.create(main_resource, {'metadata': {'name': 'obj1', 'namespace': 'ns'}})
    with pytest.raises(APIConflictError):
        await create_obj(settings=settings, resource=main_resource, namespace='ns', name='obj1', logger=logger)


async def test_patching_merges_the_fields(
        api_context, fake_api, settings, logger, referer_resource):
    fake_api.create(referer_resource, {'metadata': {'name': 'ref', 'namespace': 'ns'},
                                       'spec': {'mainThingName': 'main', 'value': 0}})

    patched = await patch_obj(
        settings=settings, resource=referer_resource, namespace='ns', name='ref',
        patch={'spec': {'value': 1}}, logger=logger)

    assert patched is not None
    assert patched['spec'] == {'mainThingName': 'main', 'value': 1}
    assert fake_api.get(referer_resource, 'ref', namespace='ns')['spec']['value'] == 1

    request = fake_api.requests_of('patch')[0]
    assert request.headers['Content-Type'] == 'application/merge-patch+json'
    assert request.data == {'spec': {'value': 1}}


async def test_patching_of_an_absent_object(
        api_context, fake_api, settings, logger, referer_resource):
    patched = await patch_obj(
        settings=settings, resource=referer_resource, namespace='ns', name='absent',
        patch={'spec': {'value': 1}}, logger=logger)
    assert patched is None


async def test_applying_creates_absent_objects(
        api_context, fake_api, settings, logger, main_resource):
    body = {'apiVersion': 'clux.dev/v1', 'kind': 'MainThing',
            'metadata': {'name': 'obj1', 'namespace': 'ns'}, 'spec': {}}

    applied = await apply_obj(settings=settings, resource=main_resource, body=body, logger=logger)

    assert applied['metadata']['name'] == 'obj1'
    request = fake_api.requests_of('apply')[0]
    assert request.path == '/apis/clux.dev/v1/namespaces/ns/mainthings/obj1'
    assert request.query == {'fieldManager': 'koncile', 'force': 'true'}
    assert request.headers['Content-Type'] == 'application/apply-patch+yaml'


async def test_applying_updates_existing_objects(
        api_context, fake_api, settings, logger, main_resource):
    fake_api.create(main_resource, {'metadata': {'name': 'obj1', 'namespace': 'ns'}, 'spec': {'a': 1}})
    body = {'metadata': {'name': 'obj1', 'namespace': 'ns'}, 'spec': {'b': 2}}

    await apply_obj(settings=settings, resource=main_resource, body=body,
                    field_manager='tests', force=False, logger=logger)

    assert fake_api.get(main_resource, 'obj1', namespace='ns')['spec'] == {'a': 1, 'b': 2}
    assert fake_api.requests_of('apply')[0].query == {'fieldManager': 'tests'}


async def test_applying_requires_a_name(
        api_context, fake_api, settings, logger, main_resource):
    with pytest.raises(ValueError, match=r"no name"):
        await apply_obj(settings=settings, resource=main_resource, body={'spec': {}}, logger=logger)
    assert not fake_api.requests
