"""
The decorators for the reconcilers and the mappers. Usually used as::

    import koncile

    MAIN = koncile.Resource('clux.dev', 'v1', 'mainthings', kind='MainThing')

    @koncile.on.reconcile('clux.dev', 'v1', 'mainthings')
    def reconcile_fn(name, spec, logger, **kwargs):
        logger.info(f"Reconciling {name}.")
        return koncile.Action.await_change()

    @koncile.on.mapping('clux.dev', 'v1', 'refererthings', primary=MAIN)
    def map_fn(body):
        return koncile.ObjectKey(MAIN, name=body.spec['mainThingName'], namespace=body.meta.namespace)

This module is a part of the library's public interface.
"""
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from koncile._cogs.structs import references
from koncile._core.actions import invocation, policies
from koncile._core.intents import registries
from koncile._core.reactor import mapping as mappers

_F = TypeVar('_F', bound=Callable[..., Any])


def reconcile(
        group: str,
        version: str,
        plural: str,
        *,
        kind: str | None = None,
        namespaced: bool = True,
        # Filtering of the watched objects:
        namespace: str | None = None,
        labels: str | Mapping[str, str] | None = None,
        fields: str | None = None,
        # Reconciling:
        id: str | None = None,
        error_policy: policies.ErrorPolicy | None = None,
        context: Any = None,
        # Registration:
        registry: registries.ControllerRegistry | None = None,
) -> Callable[[_F], _F]:
    """
    Register a reconciler for a primary resource (one per resource).
    """
    def decorator(fn: _F) -> _F:
        real_registry = registry if registry is not None else registries.get_default_registry()
        real_id = id if id is not None else registries.get_callable_id(fn)
        real_fn: invocation.Invokable = fn
        real_registry.register_controller(registries.ControllerSpec(
            id=real_id,
            resource=references.Resource(group, version, plural, kind=kind, namespaced=namespaced),
            reconciler=real_fn,
            config=_make_config(namespace=namespace, labels=labels, fields=fields),
            error_policy=error_policy,
            context=context,
        ))
        return fn
    return decorator


def mapping(
        group: str,
        version: str,
        plural: str,
        *,
        primary: references.Resource,
        kind: str | None = None,
        namespaced: bool = True,
        # Filtering of the watched objects:
        namespace: str | None = None,
        labels: str | Mapping[str, str] | None = None,
        fields: str | None = None,
        # Mapping:
        id: str | None = None,
        # Registration:
        registry: registries.ControllerRegistry | None = None,
) -> Callable[[_F], _F]:
    """
    Register a secondary resource with a mapper of its objects to the primary keys.
    """
    def decorator(fn: _F) -> _F:
        real_registry = registry if registry is not None else registries.get_default_registry()
        real_id = id if id is not None else registries.get_callable_id(fn)
        real_fn: mappers.Mapper = fn
        real_registry.register_watch(primary, registries.WatchSpec(
            id=real_id,
            resource=references.Resource(group, version, plural, kind=kind, namespaced=namespaced),
            mapper=real_fn,
            config=_make_config(namespace=namespace, labels=labels, fields=fields),
        ))
        return fn
    return decorator


def _make_config(
        *,
        namespace: str | None,
        labels: str | Mapping[str, str] | None,
        fields: str | None,
) -> references.WatchConfig | None:
    if namespace is None and labels is None and fields is None:
        return None
    return references.WatchConfig(
        namespace=references.NamespaceName(namespace) if namespace else None,
        label_selector=labels,
        field_selector=fields,
    )
