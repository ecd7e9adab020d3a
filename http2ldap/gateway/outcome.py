from __future__ import annotations
from typing import AsyncIterable, NamedTuple
import logging
from fastapi import status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from ..directory import (
    SearchDone,
    SearchEntry,
    SearchError,
    SearchEvent,
    SearchReference,
)
from ..directory.errors import NoSuchObjectError

log = logging.getLogger(__name__)


class FlattenedEntry(BaseModel, strict=True, frozen=True):
    dn: str
    attributes: dict[str, list[str]]


class ErrorResponse(BaseModel):
    message: str


class Success(NamedTuple):
    entries: list[FlattenedEntry]


class DirectoryError(NamedTuple):
    status: int


class NotFound(NamedTuple):
    location: str


class ProtocolError(NamedTuple):
    message: str


class ReferralRejected(NamedTuple):
    uris: list[str]


class SearchNotIssued(NamedTuple):
    reason: str


Outcome = (
    Success
    | DirectoryError
    | NotFound
    | ProtocolError
    | ReferralRejected
    | SearchNotIssued
)


def flatten_entry(entry: SearchEntry) -> FlattenedEntry:
    # a repeated attribute name keeps the values of its last occurrence
    return FlattenedEntry(
        dn=entry.dn,
        attributes={name: list(values) for name, values in entry.attributes},
    )


class ResultAggregator:
    """
    Collects the events of one search until the first terminal event

    The aggregator is `Collecting` until `outcome` is set and `Committed`
    afterwards; a committed aggregator ignores every further event.
    """

    def __init__(self, location: str) -> None:
        self.location = location
        self.entries: list[FlattenedEntry] = []
        self.outcome: Outcome | None = None

    @property
    def committed(self) -> bool:
        return self.outcome is not None

    def feed(self, event: SearchEvent) -> Outcome | None:
        """Returns the outcome when `event` commits the response"""
        if self.outcome is not None:
            log.debug("ignoring %s after commit", type(event).__name__)
            return None
        match event:
            case SearchEntry():
                log.debug("unparsed entry: %r", event)
                entry = flatten_entry(event)
                log.debug("pushing entry: %s", entry.model_dump_json())
                self.entries.append(entry)
                return None
            case SearchDone(status=0):
                log.debug("entries: %d", len(self.entries))
                outcome: Outcome = Success(self.entries)
            case SearchDone(status=code):
                log.error("status: %d %s", code, event.message)
                outcome = DirectoryError(code)
            case SearchError(error=NoSuchObjectError()):
                log.error("not found: %s", self.location)
                outcome = NotFound(self.location)
            case SearchError(error=error):
                log.error("error: %s", error)
                outcome = ProtocolError(str(error))
            case SearchReference(uris=uris):
                log.error("referrals not supported: %s", ",".join(uris))
                outcome = ReferralRejected(list(uris))
            case _:
                raise TypeError(f"unexpected search event {event!r}")
        self.outcome = outcome
        return outcome

    async def collect(self, events: AsyncIterable[SearchEvent]) -> Outcome:
        async for event in events:
            if (outcome := self.feed(event)) is not None:
                return outcome
        self.outcome = ProtocolError("search ended without a result")
        return self.outcome


def _message(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        ErrorResponse(message=message).model_dump(), status_code=status_code
    )


def to_response(outcome: Outcome) -> Response:
    match outcome:
        case Success(entries=entries):
            return JSONResponse([entry.model_dump() for entry in entries])
        case DirectoryError(status=code):
            return _message(
                status.HTTP_400_BAD_REQUEST, f"ldap status result was: {code}"
            )
        case NotFound(location=location):
            return _message(
                status.HTTP_400_BAD_REQUEST, f"not found: {location}"
            )
        case ProtocolError(message=message):
            return _message(status.HTTP_500_INTERNAL_SERVER_ERROR, message)
        case ReferralRejected():
            return _message(
                status.HTTP_400_BAD_REQUEST, "referrals not supported"
            )
        case SearchNotIssued():
            return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise TypeError(f"unexpected outcome {outcome!r}")


def response_description(description: str, example: str):
    return {
        "model": ErrorResponse,
        "description": description,
        "content": {"application/json": {"example": {"message": example}}},
    }
