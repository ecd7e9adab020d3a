from __future__ import annotations
from typing import NamedTuple
from urllib.parse import unquote
from ..directory import Scope

DEFAULT_FILTER = "(objectClass=*)"

# numeric codes accepted in the `scope` query parameter
_scope_codes = {
    "0": Scope.BASE,
    "1": Scope.ONE_LEVEL,
    "2": Scope.SUBTREE,
}


class QueryDescriptor(NamedTuple):
    location: str  # ou=mathematicians,dc=example,dc=com
    filter: str
    scope: Scope


def resolve_location(path: str) -> str:
    """
    `/dc=com/dc=example/ou=people` -> `ou=people,dc=example,dc=com`

    `path` is still percent-encoded: it is split first and each segment is
    unquoted, so `%2F` stays inside its RDN. Segments are not validated,
    the directory rejects malformed ones.
    """
    segments = path.split("/")[1:]
    return ",".join(unquote(segment) for segment in reversed(segments))


def resolve_scope(code: str | None) -> Scope:
    return _scope_codes.get(code, Scope.BASE) if code else Scope.BASE


def build_search_parameters(
    filter: str | None, scope: str | None
) -> tuple[str, Scope]:
    if filter is None:
        filter = DEFAULT_FILTER
    return filter, resolve_scope(scope)


def build_query(
    path: str, filter: str | None = None, scope: str | None = None
) -> QueryDescriptor:
    search_filter, search_scope = build_search_parameters(filter, scope)
    return QueryDescriptor(
        location=resolve_location(path),
        filter=search_filter,
        scope=search_scope,
    )
