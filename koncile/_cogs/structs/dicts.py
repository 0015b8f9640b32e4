"""
Access to the nested fields of the API objects by dotted paths.

The reference fields of the secondary objects are edited by humans,
so they can be of any shape: a missing ``spec``, a string instead of a dict,
a list instead of a name. Such fields are resolved to a default (if given),
so that one broken object does not stop the whole stream of its resource.
"""
import collections.abc
import enum
from collections.abc import Iterator, Mapping
from typing import Any, Generic, TypeVar, Union

FieldPath = tuple[str, ...]
FieldSpec = Union[None, str, FieldPath, list[str]]

_T = TypeVar('_T')
_K = TypeVar('_K')
_V = TypeVar('_V')


class _Missing(enum.Enum):
    token = enum.auto()


MISSING = _Missing.token


def parse_field(field: FieldSpec) -> FieldPath:
    """
    Normalise a field spec to a path: ``'spec.name'`` becomes ``('spec', 'name')``.

    ``None`` is the path to the object itself (an empty path).
    """
    if field is None:
        return ()
    if isinstance(field, str):
        return tuple(field.split('.'))
    if isinstance(field, (list, tuple)):
        return tuple(field)
    raise ValueError(f"A field is expected as a dotted str or a list/tuple; got {field!r}")


def resolve(
        d: Mapping[Any, Any] | None,
        field: FieldSpec,
        default: _T | _Missing = MISSING,
) -> Any | _T:
    """
    Dig into the nested mappings by the field's path.

    With a default, any absent key or any non-mapping on the way
    gives the default. Without it, an absent key raises ``KeyError``,
    and a non-mapping on the way raises ``TypeError``.
    """
    value: Any = d
    for key in parse_field(field):
        if not isinstance(value, collections.abc.Mapping):
            if default is not MISSING:
                return default
            raise TypeError(f"Cannot get {key!r} from a non-mapping: {value!r}")
        if key not in value:
            if default is not MISSING:
                return default
            raise KeyError(key)
        value = value[key]
    return value


class MappingView(Mapping[_K, _V], Generic[_K, _V]):
    """
    A read-only live view of a nested field, which is empty if absent.

    The view does not copy the data: when the source gets the field later,
    the view shows it.
    """

    def __init__(self, __src: Mapping[Any, Any], __path: FieldSpec = None) -> None:
        super().__init__()
        self._src = __src
        self._path = parse_field(__path)

    def _target(self) -> Mapping[_K, _V]:
        found = resolve(self._src, self._path, None)
        return found if isinstance(found, collections.abc.Mapping) else {}

    def __repr__(self) -> str:
        return repr(dict(self))

    def __len__(self) -> int:
        return len(self._target())

    def __iter__(self) -> Iterator[_K]:
        return iter(self._target())

    def __getitem__(self, item: _K) -> _V:
        return self._target()[item]
