from collections.abc import Mapping
from typing import Any, cast

from koncile._cogs.clients import api
from koncile._cogs.configs import configuration
from koncile._cogs.helpers import typedefs
from koncile._cogs.structs import bodies, references


async def create_obj(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        name: str | None = None,
        body: Mapping[str, Any] | None = None,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Create an object. The body is not modified, a shallow copy is sent.
    """
    payload: dict[str, Any] = dict(body) if body is not None else {}
    payload.setdefault('apiVersion', resource.api_version)
    if resource.kind is not None:
        payload.setdefault('kind', resource.kind)
    payload['metadata'] = dict(payload.get('metadata', {}))
    if namespace is not None:
        payload['metadata'].setdefault('namespace', namespace)
    if name is not None:
        payload['metadata'].setdefault('name', name)

    namespace = cast(references.Namespace, payload['metadata'].get('namespace'))
    created_body: bodies.RawBody = await api.post(
        url=resource.get_url(namespace=namespace if resource.namespaced else None),
        payload=payload,
        logger=logger,
        settings=settings,
    )
    return created_body
