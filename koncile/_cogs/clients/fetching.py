from collections.abc import Collection

from koncile._cogs.clients import api, errors
from koncile._cogs.configs import configuration
from koncile._cogs.helpers import typedefs
from koncile._cogs.structs import bodies, references


async def list_objs(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        config: references.WatchConfig | None = None,
        logger: typedefs.Logger,
) -> tuple[Collection[bodies.RawBody], str | None]:
    """
    List the objects of a resource, and the list's resource version.

    With no namespace, the list is cluster-wide: for the cluster-scoped
    resources, or for the controllers serving all namespaces.
    The list's resource version is where the watch-stream continues from.

    The items of a list have no ``kind`` & ``apiVersion`` of their own,
    so they are taken from the list (``MainThingList`` becomes ``MainThing``).
    """
    rsp = await api.get(
        url=resource.get_url(namespace=namespace, params=config.as_params() if config else {}),
        logger=logger,
        settings=settings,
    )

    list_kind: str | None = rsp.get('kind')
    item_kind = list_kind.removesuffix('List') if list_kind else None
    items: list[bodies.RawBody] = rsp.get('items') or []
    for item in items:
        if item_kind:
            item.setdefault('kind', item_kind)
        if 'apiVersion' in rsp:
            item.setdefault('apiVersion', rsp['apiVersion'])
    return items, (rsp.get('metadata') or {}).get('resourceVersion')


async def read_obj(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        logger: typedefs.Logger,
) -> bodies.RawBody | None:
    """ The current state of one object; ``None`` if it does not exist (404). """
    try:
        return await api.get(
            url=resource.get_url(namespace=namespace, name=name),
            logger=logger,
            settings=settings,
        )
    except errors.APINotFoundError:
        return None
