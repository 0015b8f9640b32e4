from collections.abc import Mapping
from typing import Any

from koncile._cogs.clients import api, errors
from koncile._cogs.configs import configuration
from koncile._cogs.helpers import typedefs
from koncile._cogs.structs import bodies, references


async def patch_obj(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        patch: Mapping[str, Any],
        logger: typedefs.Logger,
) -> bodies.RawBody | None:
    """
    Merge-patch an object and return its new state as the server reports it.

    ``None`` means that the object does not exist anymore (404),
    e.g. it was deleted while being reconciled. There is no optimistic
    locking unless the patch itself has ``metadata.resourceVersion``.
    """
    try:
        return await api.patch(
            url=resource.get_url(namespace=namespace, name=name),
            headers={'Content-Type': 'application/merge-patch+json'},
            payload=dict(patch),
            settings=settings,
            logger=logger,
        )
    except errors.APINotFoundError:
        return None
