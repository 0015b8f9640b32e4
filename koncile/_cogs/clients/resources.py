"""
A per-kind client: all the API operations for one resource kind in one place.

This is what the reconcilers use to read and modify the objects: it binds
the resource, the settings, and the logger, so that the individual calls only
carry the object-specific arguments. The module-level functions of the
neighbouring modules remain the actual implementation.
"""
import logging
from collections.abc import AsyncIterator, Collection, Mapping
from typing import Any

from koncile._cogs.clients import applying, creating, fetching, patching, watching
from koncile._cogs.configs import configuration
from koncile._cogs.helpers import typedefs
from koncile._cogs.structs import bodies, references


class ResourceClient:

    def __init__(
            self,
            resource: references.Resource,
            *,
            settings: configuration.ControllerSettings | None = None,
            logger: typedefs.Logger | None = None,
    ) -> None:
        super().__init__()
        self.resource = resource
        self.settings = settings if settings is not None else configuration.ControllerSettings()
        self.logger: typedefs.Logger = logger if logger is not None else logging.getLogger(__name__)

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} for {self.resource}>'

    async def get(
            self,
            name: str,
            namespace: str | None = None,
    ) -> bodies.Body | None:
        """ Fetch an object by its name; ``None`` if it does not exist. """
        raw_body = await fetching.read_obj(
            settings=self.settings,
            resource=self.resource,
            namespace=self._namespace(namespace),
            name=name,
            logger=self.logger,
        )
        return bodies.Body(raw_body) if raw_body is not None else None

    async def list(
            self,
            namespace: str | None = None,
            config: references.WatchConfig | None = None,
    ) -> tuple[Collection[bodies.RawBody], str | None]:
        return await fetching.list_objs(
            settings=self.settings,
            resource=self.resource,
            namespace=self._namespace(namespace),
            config=config,
            logger=self.logger,
        )

    async def create(
            self,
            body: Mapping[str, Any],
            namespace: str | None = None,
    ) -> bodies.Body:
        raw_body = await creating.create_obj(
            settings=self.settings,
            resource=self.resource,
            namespace=self._namespace(namespace),
            body=body,
            logger=self.logger,
        )
        return bodies.Body(raw_body)

    async def patch(
            self,
            name: str,
            patch: Mapping[str, Any],
            namespace: str | None = None,
    ) -> bodies.Body | None:
        """ Merge-patch an object; ``None`` if it does not exist. """
        raw_body = await patching.patch_obj(
            settings=self.settings,
            resource=self.resource,
            namespace=self._namespace(namespace),
            name=name,
            patch=patch,
            logger=self.logger,
        )
        return bodies.Body(raw_body) if raw_body is not None else None

    async def apply(
            self,
            body: Mapping[str, Any],
            *,
            field_manager: str | None = None,
            force: bool = True,
    ) -> bodies.Body:
        raw_body = await applying.apply_obj(
            settings=self.settings,
            resource=self.resource,
            body=body,
            field_manager=field_manager,
            force=force,
            logger=self.logger,
        )
        return bodies.Body(raw_body)

    def watch(
            self,
            namespace: str | None = None,
            config: references.WatchConfig | None = None,
    ) -> AsyncIterator[watching.Bookmark | bodies.RawEvent]:
        """ The infinite watch-stream of the collection (see :func:`watching.infinite_watch`). """
        if config is not None and namespace is None:
            namespace = config.namespace
        return watching.infinite_watch(
            settings=self.settings,
            resource=self.resource,
            namespace=self._namespace(namespace),
            config=config,
        )

    def _namespace(self, namespace: str | None) -> references.Namespace:
        if not self.resource.namespaced or namespace is None:
            return None
        return references.NamespaceName(namespace)
