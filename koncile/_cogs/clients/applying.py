from collections.abc import Mapping
from typing import Any

from koncile._cogs.clients import api
from koncile._cogs.configs import configuration
from koncile._cogs.helpers import typedefs
from koncile._cogs.structs import bodies, references


async def apply_obj(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        body: Mapping[str, Any],
        field_manager: str | None = None,
        force: bool = True,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Apply an object's manifest with the server-side apply.

    The operation is idempotent: the object is created if absent, or updated
    to match the manifest if present, as owned by the field manager.
    With ``force``, the conflicting fields of other managers are taken over.
    """
    meta = body.get('metadata', {})
    name = meta.get('name')
    if not name:
        raise ValueError(f"The applied manifest has no name: {body!r}")

    namespace = meta.get('namespace') if resource.namespaced else None
    params = {'fieldManager': field_manager or settings.registration.field_manager}
    if force:
        params['force'] = 'true'

    # JSON is valid YAML, so the apply-patch needs no YAML serialization.
    applied_body: bodies.RawBody = await api.patch(
        url=resource.get_url(namespace=namespace, name=name, params=params),
        headers={'Content-Type': 'application/apply-patch+yaml'},
        payload=dict(body),
        settings=settings,
        logger=logger,
    )
    return applied_body
