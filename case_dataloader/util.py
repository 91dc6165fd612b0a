import re
import uuid
from collections import defaultdict
from typing import Callable, DefaultDict, Hashable, Iterable, Iterator, List, Mapping, Optional, Sequence, TypeVar

T = TypeVar("T")
V = TypeVar("V")

UNDEFINED_RELATION_SQLSTATE = '42P01'
_UNDEFINED_RELATION_PATTERN = re.compile(r'relation .* does not exist|no such table', re.IGNORECASE)


def build_object(items: Sequence[T], keys: List[V], get_pk: Callable[[T], V]) -> Iterator[Optional[T]]:
    """
    helper function to build return object data required by SingleLoader
    """
    dct: Mapping[V, T] = {}
    for item in items:
        _key = get_pk(item)
        dct[_key] = item
    results = (dct.get(k, None) for k in keys)
    return results


def build_list(items: Sequence[T], keys: List[V], get_pk: Callable[[T], V]) -> Iterator[List[T]]:
    """
    helper function to build return list data required by ListLoader

    items keep their incoming order inside each group, so the query's ORDER BY
    decides the order of every list.
    """
    dct: DefaultDict[V, List[T]] = defaultdict(list)
    for item in items:
        _key = get_pk(item)
        dct[_key].append(item)
    results = (dct.get(k, []) for k in keys)
    return results


def to_uuid(key: Optional[Hashable]) -> Optional[uuid.UUID]:
    """
    parse a normalized key into a uuid, `None` for absent or malformed keys.
    """
    if not key:
        return None
    if isinstance(key, uuid.UUID):
        return key
    try:
        return uuid.UUID(str(key))
    except ValueError:
        return None


def to_uuid_keys(keys: Iterable[Hashable]) -> List[uuid.UUID]:
    """
    convert normalized keys into distinct uuid values for an `IN (...)` query.
    absent or malformed keys are dropped, they can never match a row.
    """
    result = []
    for key in keys:
        value = to_uuid(key)
        if value is not None and value not in result:
            result.append(value)
    return result


def is_undefined_relation_error(exc: BaseException) -> bool:
    """
    True when the error means the queried table does not exist yet,
    eg: postgres `42P01 undefined_table`, sqlite `no such table`.

    sqlalchemy wraps driver errors, the driver error lives at `exc.orig`.
    """
    orig = getattr(exc, 'orig', None)
    for err in (exc, orig):
        if err is None:
            continue
        code = getattr(err, 'pgcode', None) or getattr(err, 'sqlstate', None)
        if code == UNDEFINED_RELATION_SQLSTATE:
            return True
    return bool(_UNDEFINED_RELATION_PATTERN.search(str(exc)))
