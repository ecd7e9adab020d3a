from __future__ import annotations
from typing import Annotated
import asyncio
import logging
import math
from urllib.parse import quote
from fastapi import Depends, FastAPI, Query, status
from fastapi.responses import Response
from starlette.requests import Request
from http2ldap import __version__

from ..directory import DirectoryConnection, SearchHandle
from ..directory.errors import FilterSyntaxError, LDAPError
from .outcome import (
    FlattenedEntry,
    Outcome,
    ProtocolError,
    ResultAggregator,
    SearchNotIssued,
    response_description,
    to_response,
)
from .query import build_query

log = logging.getLogger(__name__)

# every GET path is a distinguished name, so no docs routes
app = FastAPI(
    version=__version__,
    title="http2ldap",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


def get_directory(request: Request) -> DirectoryConnection:
    return request.app.state.directory


def get_search_timeout(request: Request) -> float | None:
    return getattr(request.app.state, "search_timeout", None)


async def _aggregate(
    handle: SearchHandle, location: str, timeout: float | None
) -> Outcome:
    aggregator = ResultAggregator(location)
    async with handle:
        try:
            return await asyncio.wait_for(
                aggregator.collect(handle), timeout or None
            )
        except asyncio.TimeoutError:
            log.error("search of %r timed out after %ss", location, timeout)
            return ProtocolError("search timed out")


@app.get(
    "/{path:path}",
    status_code=status.HTTP_200_OK,
    response_model=list[FlattenedEntry],
    responses={
        status.HTTP_400_BAD_REQUEST: response_description(
            "Not found, referral or non-zero ldap status",
            "not found: ou=mathematicians,dc=example,dc=com",
        ),
        status.HTTP_500_INTERNAL_SERVER_ERROR: response_description(
            "Directory protocol error", "connection to directory lost"
        ),
    },
)
async def search(
    path: str,
    request: Request,
    directory: Annotated[DirectoryConnection, Depends(get_directory)],
    timeout: Annotated[float | None, Depends(get_search_timeout)],
    search_filter: Annotated[str | None, Query(alias="filter")] = None,
    scope: str | None = None,
) -> Response:
    """
    ## Search the directory below the path

    * `/dc=com/dc=example/ou=people` searches `ou=people,dc=example,dc=com`
    * `filter` is an RFC 4515 filter, `(objectClass=*)` when missing
    * `scope` is `0` (base), `1` (one level) or `2` (subtree)
    """
    # the decoded `path` would split RDN values holding an encoded "/"
    raw_path = request.scope.get("raw_path") or quote("/" + path).encode()
    query = build_query(
        raw_path.split(b"?", 1)[0].decode("latin-1"), search_filter, scope
    )
    log.debug(
        "search %s filter %s scope %s",
        query.location,
        query.filter,
        query.scope.name,
    )
    try:
        handle = directory.search(
            query.location,
            query.filter,
            query.scope,
            time_limit=math.ceil(timeout) if timeout else 0,
        )
    except FilterSyntaxError as e:
        log.error("%s", e)
        outcome: Outcome = ProtocolError(str(e))
    except LDAPError as e:
        log.error("search not issued: %s", e)
        outcome = SearchNotIssued(str(e))
    else:
        outcome = await _aggregate(handle, query.location, timeout)
    return to_response(outcome)
