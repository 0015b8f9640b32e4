import dataclasses
import urllib.parse
from collections.abc import Iterator, Mapping
from typing import Any, NewType, Optional

# A name of one existing namespace; distinct from other strings for type-checking.
NamespaceName = NewType('NamespaceName', str)

# A namespace of the API calls; `None` is for the cluster-wide calls.
Namespace = Optional[NamespaceName]


@dataclasses.dataclass(frozen=True, eq=False, repr=False)
class Resource:
    """
    A kind of objects served by the API, custom or built-in.

    The API URLs need only the ``group`` (empty for the core v1 resources),
    the ``version``, and the ``plural`` name, e.g. ``"mainthings"``.
    The resources are equal if these three are equal. The ``kind``,
    the ``singular`` name, and the scope are only informational:
    for the logs, for the CRDs, and for the validation of the URLs.
    """
    group: str
    version: str
    plural: str
    kind: str | None = None
    singular: str | None = None
    namespaced: bool = True

    @property
    def _identity(self) -> tuple[str, str, str]:
        return (self.group, self.version, self.plural)

    def __hash__(self) -> int:
        return hash(self._identity)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Resource):
            return NotImplemented
        return self._identity == other._identity

    def __repr__(self) -> str:
        return '.'.join(filter(None, [self.plural, self.version, self.group]))

    # For decorators: `@koncile.on.reconcile(*MAIN)`.
    def __iter__(self) -> Iterator[str]:
        return iter(self._identity)

    @property
    def api_version(self) -> str:
        return f'{self.group}/{self.version}' if self.group else self.version

    def get_url(
            self,
            *,
            server: str | None = None,
            namespace: Namespace = None,
            name: str | None = None,
            subresource: str | None = None,
            params: Mapping[str, str] | None = None,
    ) -> str:
        """
        The URL of the collection, or of one object if the ``name`` is given.

        Without a namespace, the collection is cluster-wide. The namespaced
        objects always need a namespace, while the cluster-scoped ones cannot
        have one. The URL is relative to the server unless the server is given.
        """
        in_namespace = self.namespaced and namespace is not None
        if subresource is not None and name is None:
            raise ValueError("Subresources can be used only with specific resources by their name.")
        if not self.namespaced and namespace is not None:
            raise ValueError("Specific namespaces are not supported for cluster-scoped resources.")
        if self.namespaced and namespace is None and name is not None:
            raise ValueError("Specific namespaces are required for specific namespaced resources.")

        root = '/api' if self.group == '' and self.version == 'v1' else '/apis'
        parts: list[str | None] = [root, self.group, self.version]
        parts += ['namespaces', namespace] if in_namespace else []
        parts += [self.plural, name, subresource]
        url = '/'.join(part for part in parts if part)
        if params:
            url += '?' + urllib.parse.urlencode(params, encoding='utf-8')
        return url if server is None else f"{server.rstrip('/')}/{url.lstrip('/')}"


@dataclasses.dataclass(frozen=True)
class ObjectKey:
    """
    An identity of a primary object: its resource kind, namespace, and name.

    The keys are immutable and hashable. They are used as the dedup identity
    in the work queue, so two keys of the same object are always equal
    regardless of how and from which event they were constructed.
    """
    resource: Resource
    name: str
    namespace: Namespace = None

    def __str__(self) -> str:
        return f'{self.namespace}/{self.name}' if self.namespace else self.name

    def within(self, namespace: str | None) -> "ObjectKey":
        """ The same object name, but in another namespace (as in references). """
        return dataclasses.replace(self, namespace=NamespaceName(namespace) if namespace else None)

    @classmethod
    def from_body(cls, resource: Resource, body: Mapping[str, Any]) -> "ObjectKey":
        meta = body.get('metadata', {})
        namespace = meta.get('namespace') if resource.namespaced else None
        return cls(resource=resource, name=meta['name'], namespace=namespace)


@dataclasses.dataclass(frozen=True)
class WatchConfig:
    """
    A declared filter of a watched collection: which namespace and which objects.

    The selectors are passed to the API as is, in their K8s syntax;
    e.g. ``"app=example,tier!=db"`` or ``"metadata.name=my-referer"``.
    A label selector can also be a mapping of exact label values.
    """
    namespace: Namespace = None
    label_selector: str | Mapping[str, str] | None = None
    field_selector: str | None = None

    def as_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if isinstance(self.label_selector, Mapping):
            params['labelSelector'] = ','.join(f'{k}={v}' for k, v in self.label_selector.items())
        elif self.label_selector:
            params['labelSelector'] = self.label_selector
        if self.field_selector:
            params['fieldSelector'] = self.field_selector
        return params
