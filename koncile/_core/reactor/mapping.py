"""
Mapping the events of the secondary objects to the keys of the primary objects.

A mapper is a pure synchronous function: it gets the secondary object
(as it is in the event) and returns the keys of the primary objects affected
by that change -- zero, one, or many of them. It does no I/O and has no side
effects: the same object always maps to the same keys.

The mappers know nothing about the queues and the reconcilers; the engine
knows nothing about the relationships of the objects beyond calling the mappers.
"""
import collections.abc
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Union

from koncile._cogs.structs import bodies, dicts, references

logger = logging.getLogger(__name__)

MapperResult = Union[None, references.ObjectKey, Iterable[references.ObjectKey]]
Mapper = Callable[[bodies.Body], MapperResult]


def by_reference(
        primary: references.Resource,
        *,
        name_field: dicts.FieldSpec = 'spec.mainThingName',
        namespace_field: dicts.FieldSpec = 'spec.mainThingNamespace',
) -> Mapper:
    """
    Map the secondary objects to the primary ones by their reference fields.

    The name is taken from the name field; if absent, nothing is mapped.
    The namespace is taken from the namespace field if present (non-empty),
    otherwise it is the secondary object's own namespace; if there is none
    (e.g. for cluster-scoped secondaries), nothing is mapped. For cluster-scoped
    primary resources, the namespace is ignored.
    """

    def map_by_reference(body: bodies.Body, **_: Any) -> MapperResult:
        name = dicts.resolve(body, name_field, None)
        if not name or not isinstance(name, str):
            return None

        namespace = dicts.resolve(body, namespace_field, None)
        if not namespace or not isinstance(namespace, str):
            namespace = body.get('metadata', {}).get('namespace')

        # A namespaced primary cannot be addressed without a namespace.
        if primary.namespaced and not namespace:
            return None

        return references.ObjectKey(
            resource=primary,
            name=name,
            namespace=references.NamespaceName(namespace) if primary.namespaced else None,
        )

    return map_by_reference


def map_event(
        mapper: Mapper,
        raw_event: bodies.RawEvent,
) -> frozenset[references.ObjectKey]:
    """
    Get the keys of the primary objects to reconcile for a secondary event.

    Whatever the mapper returns is normalized to a set of keys. The failures
    in the mapper are logged and dropped: an unmappable secondary object has
    no valid target, and the event stream must go on for other objects.
    """
    body = bodies.Body(raw_event['object'])
    try:
        result = mapper(body)
        if isinstance(result, collections.abc.Iterator):
            result = list(result)  # generators fail here, not later.
    except Exception as e:
        name = body.get('metadata', {}).get('name')
        logger.exception(f"Mapping of {name!r} has failed, the event is dropped: {e!r}")
        return frozenset()

    if result is None:
        return frozenset()
    elif isinstance(result, references.ObjectKey):
        return frozenset([result])
    elif isinstance(result, collections.abc.Iterable) and not isinstance(result, (str, Mapping)):
        keys = list(result)
        for key in keys:
            if not isinstance(key, references.ObjectKey):
                logger.error(f"Mappers must return object keys, got {key!r}; the event is dropped.")
                return frozenset()
        return frozenset(keys)
    else:
        logger.error(f"Mappers must return object keys, got {result!r}; the event is dropped.")
        return frozenset()
