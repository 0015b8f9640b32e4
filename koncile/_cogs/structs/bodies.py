"""
The objects as they come from the API, raw and wrapped.

The raw structures are the JSON-decoded payloads as the watch-streams
and the fetching calls return them. Only the fields used by the controller
are typed; everything else is ``Any`` and passes through unchecked.

The wrapped ``Body`` is what the reconcilers and the mappers get:
a read-only mapping with shortcuts to the well-known fields.
"""
from collections.abc import Mapping
from typing import Any, Literal, cast

from typing_extensions import TypedDict

from koncile._cogs.structs import dicts, references

Labels = Mapping[str, str]
Annotations = Mapping[str, str]

RawInputType = Literal['ADDED', 'MODIFIED', 'DELETED', 'ERROR', 'BOOKMARK']
RawEventType = Literal['ADDED', 'MODIFIED', 'DELETED']


class RawMeta(TypedDict, total=False):
    uid: str
    name: str
    namespace: str
    labels: Labels
    annotations: Annotations
    generation: int
    resourceVersion: str
    deletionTimestamp: str
    creationTimestamp: str


class RawBody(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: RawMeta
    spec: Mapping[str, Any]
    status: Mapping[str, Any]


# The in-stream Status object of an ERROR line, e.g. code 410 for an expired version.
class RawError(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: Mapping[Any, Any]
    code: int
    reason: str
    status: str
    message: str
    details: Mapping[str, Any]


class RawInput(TypedDict, total=True):
    type: RawInputType
    object: RawBody | RawError


# Only the object changes, with no errors and no bookmarks.
class RawEvent(TypedDict, total=True):
    type: RawEventType
    object: RawBody


class Meta(dicts.MappingView[str, Any]):

    def __init__(self, __src: "Body") -> None:
        super().__init__(__src, 'metadata')

    def _field(self, name: str) -> Any:
        return self.get(name)

    @property
    def labels(self) -> Labels:
        return dicts.MappingView(self, 'labels')

    @property
    def annotations(self) -> Annotations:
        return dicts.MappingView(self, 'annotations')

    @property
    def uid(self) -> str | None:
        return cast(str | None, self._field('uid'))

    @property
    def name(self) -> str | None:
        return cast(str | None, self._field('name'))

    @property
    def namespace(self) -> references.Namespace:
        return cast(references.Namespace, self._field('namespace'))

    @property
    def generation(self) -> int | None:
        return cast(int | None, self._field('generation'))

    @property
    def resource_version(self) -> str | None:
        return cast(str | None, self._field('resourceVersion'))

    @property
    def deletion_timestamp(self) -> str | None:
        return cast(str | None, self._field('deletionTimestamp'))


class Spec(dicts.MappingView[str, Any]):
    def __init__(self, __src: "Body") -> None:
        super().__init__(__src, 'spec')


class Status(dicts.MappingView[str, Any]):
    def __init__(self, __src: "Body") -> None:
        super().__init__(__src, 'status')


class Body(dicts.MappingView[str, Any]):
    """
    A snapshot of an object as last fetched from the API.

    It may be stale by the time it is used: it is never updated in place.
    """

    def __init__(self, __src: Mapping[str, Any]) -> None:
        super().__init__(__src)
        self.meta = self.metadata = Meta(self)
        self.spec = Spec(self)
        self.status = Status(self)


class ObjectReference(TypedDict, total=False):
    apiVersion: str
    kind: str
    namespace: str | None
    name: str
    uid: str


def build_object_reference(body: Mapping[str, Any]) -> ObjectReference:
    """ A short reference to an object for the log records; empty fields are omitted. """
    meta = body.get('metadata') or {}
    fields = {
        'apiVersion': body.get('apiVersion'),
        'kind': body.get('kind'),
        'name': meta.get('name'),
        'uid': meta.get('uid'),
        'namespace': meta.get('namespace'),
    }
    return cast(ObjectReference, {key: val for key, val in fields.items() if val})
