"""
Registration of the custom resources' schemas (CRDs) before watching them.

The schemas are applied idempotently with the server-side apply, so that
the re-runs of the controller do not fail on the already existing CRDs.
After applying, there is a bounded wait for the API server to start serving
the new resources. It is a pause, not a synchronization: if the resources
are still not served, the watch-streams retry until they are.

Unlike the steady-state errors, the registration errors are fatal:
the controller cannot run without its resources.
"""
import asyncio
import logging
from collections.abc import Collection, Mapping
from typing import Any

import aiohttp

from koncile._cogs.clients import applying, errors
from koncile._cogs.configs import configuration
from koncile._cogs.structs import references

logger = logging.getLogger(__name__)

CRD_RESOURCE = references.Resource(
    'apiextensions.k8s.io', 'v1', 'customresourcedefinitions',
    kind='CustomResourceDefinition', singular='customresourcedefinition', namespaced=False,
)


class RegistrationError(Exception):
    """ Raised when the schemas cannot be applied; the controller cannot start. """


def make_crd(
        resource: references.Resource,
        *,
        schema: Mapping[str, Any] | None = None,
        short_names: Collection[str] = (),
) -> dict[str, Any]:
    """
    Build a CustomResourceDefinition manifest for a resource.

    Without an explicit schema, the schema is open: any fields are preserved.
    """
    if not resource.group or not resource.kind:
        raise ValueError(f"A CRD needs the group and the kind of the resource: {resource!r}")

    singular = resource.singular or resource.kind.lower()
    if schema is None:
        schema = {'type': 'object', 'x-kubernetes-preserve-unknown-fields': True}

    names: dict[str, Any] = {
        'kind': resource.kind,
        'plural': resource.plural,
        'singular': singular,
    }
    if short_names:
        names['shortNames'] = list(short_names)

    return {
        'apiVersion': f'{CRD_RESOURCE.group}/{CRD_RESOURCE.version}',
        'kind': CRD_RESOURCE.kind,
        'metadata': {'name': f'{resource.plural}.{resource.group}'},
        'spec': {
            'group': resource.group,
            'scope': 'Namespaced' if resource.namespaced else 'Cluster',
            'names': names,
            'versions': [{
                'name': resource.version,
                'served': True,
                'storage': True,
                'schema': {'openAPIV3Schema': dict(schema)},
            }],
        },
    }


async def ensure_crds(
        crds: Collection[Mapping[str, Any]],
        *,
        settings: configuration.ControllerSettings,
) -> None:
    """
    Apply the schemas and wait for them to settle. Raise if anything fails.
    """
    if not crds:
        return

    for crd in crds:
        name = crd.get('metadata', {}).get('name')
        try:
            await applying.apply_obj(
                settings=settings,
                resource=CRD_RESOURCE,
                body=crd,
                field_manager=settings.registration.field_manager,
                force=True,
                logger=logger,
            )
        except (errors.APIError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RegistrationError(f"Failed to apply the CRD {name!r}: {e}") from e
        logger.info(f"Applied the CRD {name!r}.")

    # The API server needs some time to start serving the resources. Not a guarantee though.
    await asyncio.sleep(settings.registration.settle_delay)
