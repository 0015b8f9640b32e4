"""
A registry of the controllers: what to reconcile, what to watch, what to apply.

The decorators (:mod:`koncile.on`) and the programmatic builders
(:class:`koncile.Controller`) put the declarations here; the runtime
(:mod:`koncile._core.reactor.running`) reads them at startup.

A controller is one reconciler of one primary resource with its secondary
watches. The secondary watches can be declared before or after the reconciler,
and are matched to the controllers by the primary resource.
"""
import dataclasses
import functools
from collections.abc import Collection, Mapping
from typing import Any

from koncile._cogs.structs import references
from koncile._core.actions import invocation, policies
from koncile._core.reactor import mapping


@dataclasses.dataclass(frozen=True)
class WatchSpec:
    """ A secondary resource to watch, and how to map its events to primary keys. """
    id: str
    resource: references.Resource
    mapper: mapping.Mapper
    config: references.WatchConfig | None = None


@dataclasses.dataclass(frozen=True)
class ControllerSpec:
    id: str
    resource: references.Resource
    reconciler: invocation.Invokable
    config: references.WatchConfig | None = None
    error_policy: policies.ErrorPolicy | None = None
    context: Any = None
    watches: tuple[WatchSpec, ...] = ()


class ControllerRegistry:
    """
    All the controllers, secondary watches, and schemas of one operator process.
    """

    def __init__(self) -> None:
        super().__init__()
        self._controllers: dict[references.Resource, ControllerSpec] = {}
        self._watches: list[tuple[references.Resource, WatchSpec]] = []
        self._crds: list[Mapping[str, Any]] = []

    def register_controller(self, spec: ControllerSpec) -> None:
        if spec.resource in self._controllers:
            existing = self._controllers[spec.resource]
            raise ValueError(f"The resource {spec.resource} is already reconciled by {existing.id!r}.")
        self._controllers[spec.resource] = spec

    def register_watch(self, primary: references.Resource, watch: WatchSpec) -> None:
        self._watches.append((primary, watch))

    def register_crd(self, manifest: Mapping[str, Any]) -> None:
        if manifest.get('kind') != 'CustomResourceDefinition':
            raise ValueError(f"Only CustomResourceDefinitions can be registered, got {manifest.get('kind')!r}.")
        self._crds.append(manifest)

    @property
    def crds(self) -> Collection[Mapping[str, Any]]:
        return list(self._crds)

    @property
    def controllers(self) -> Collection[ControllerSpec]:
        """
        The controllers with all their secondary watches, however declared.
        """
        orphans = [watch.id for primary, watch in self._watches if primary not in self._controllers]
        if orphans:
            raise LookupError(f"Secondary watches have no reconcilers for their primaries: {orphans!r}")
        return [
            dataclasses.replace(spec, watches=spec.watches + tuple(
                watch for primary, watch in self._watches if primary == spec.resource
            ))
            for spec in self._controllers.values()
        ]


def get_callable_id(c: Any) -> str:
    """ Get a reasonably good id of any commonly used callable. """
    if c is None:
        return ''
    elif isinstance(c, functools.partial):
        return get_callable_id(c.func)
    elif hasattr(c, '__wrapped__'):  # @functools.wraps()
        return get_callable_id(getattr(c, '__wrapped__'))
    elif hasattr(c, '__qualname__'):
        return c.__qualname__
    elif hasattr(c, '__name__'):
        return c.__name__
    else:
        return repr(c)


_default_registry: ControllerRegistry | None = None


def get_default_registry() -> ControllerRegistry:
    """
    Get the default registry to be used by the decorators and the reactor
    unless the explicit registry is provided to them.
    """
    global _default_registry
    if _default_registry is None:
        _default_registry = ControllerRegistry()
    return _default_registry


def set_default_registry(registry: ControllerRegistry) -> None:
    """
    Set the default registry to be used by the decorators and the reactor
    unless the explicit registry is provided to them.
    """
    global _default_registry
    _default_registry = registry


def register_crd(
        manifest: Mapping[str, Any],
        *,
        registry: ControllerRegistry | None = None,
) -> None:
    """
    Apply a CRD manifest at the controller's startup, before watching anything.
    """
    real_registry = registry if registry is not None else get_default_registry()
    real_registry.register_crd(manifest)
