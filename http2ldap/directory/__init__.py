from __future__ import annotations
from enum import IntEnum
from typing import Callable, Iterable, NamedTuple
from urllib.parse import urlsplit
import asyncio
import logging
import ssl
from pyasn1.error import PyAsn1Error
from pyasn1.type import univ

from .errors import (
    BindError,
    ConnectionLostError,
    LDAPConnectionError,
    LDAPError,
    NoSuchObjectError,
    UnexpectedResponseType,
    UnsupportedOperation,
)
from .protocol import (
    NO_SUCH_OBJECT,
    REFERRAL,
    LDAPMessage,
    encode_abandon_request,
    encode_bind_request,
    encode_search_request,
    encode_unbind_request,
    maxInt,
    read_message,
)

log = logging.getLogger(__name__)


class Scope(IntEnum):
    BASE = 0  # the entry itself
    ONE_LEVEL = 1  # immediate children
    SUBTREE = 2  # the entry and all descendants


class SearchEntry(NamedTuple):
    dn: str
    attributes: list[tuple[str, list[str]]]


class SearchReference(NamedTuple):
    uris: list[str]


class SearchDone(NamedTuple):
    status: int
    message: str = ""


class SearchError(NamedTuple):
    error: LDAPError


SearchEvent = SearchEntry | SearchReference | SearchDone | SearchError

_FINAL_OPS = frozenset(("bindResponse", "searchResDone"))


def _text(value: univ.OctetString) -> str:
    return value.asOctets().decode("utf-8", errors="replace")


def _to_event(op: univ.Choice) -> SearchEvent:
    name = op.getName()
    component = op.getComponent()
    if name == "searchResEntry":
        return SearchEntry(
            dn=_text(component["objectName"]),
            attributes=[
                (_text(attr["type"]), [_text(value) for value in attr["vals"]])
                for attr in component["attributes"]
            ],
        )
    if name == "searchResRef":
        return SearchReference(uris=[_text(uri) for uri in component])
    if name == "searchResDone":
        status = int(component["resultCode"])
        message = _text(component["diagnosticMessage"])
        if status == NO_SUCH_OBJECT:
            return SearchError(NoSuchObjectError(status, message))
        if status == REFERRAL:
            referral = component.getComponentByName(
                "referral", default=None, instantiate=False
            )
            return SearchReference(
                uris=[_text(uri) for uri in referral or ()]
            )
        return SearchDone(status=status, message=message)
    raise UnexpectedResponseType(f"{name} in search results")


class SearchHandle:
    """
    Events of one outstanding search, in the order the directory sent them

    Iteration stops after `SearchDone`, `SearchError` or the referral
    result that ends a search as a `SearchReference`. `close` abandons
    the search on the server when it has not finished yet.
    """

    def __init__(
        self,
        connection: DirectoryConnection,
        msgid: int,
        queue: asyncio.Queue[univ.Choice | LDAPError],
    ) -> None:
        self._connection = connection
        self.msgid = msgid
        self._queue = queue
        self._finished = False

    def __aiter__(self) -> SearchHandle:
        return self

    async def __anext__(self) -> SearchEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, LDAPError):
            self._finished = True
            return SearchError(item)
        # a referral result ends the search as a SearchReference
        self._finished = item.getName() == "searchResDone"
        try:
            return _to_event(item)
        except UnexpectedResponseType as e:
            self._finished = True
            return SearchError(e)

    async def __aenter__(self) -> SearchHandle:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._connection.release(self.msgid)


class DirectoryConnection:
    """
    A single LDAPv3 connection shared by every request of the process

    Any number of searches may be outstanding at the same time: one reader
    task dispatches every response to the queue of its message id.
    `on_connection_lost` is called once when the transport fails while the
    connection is in use.
    """

    def __init__(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        self._reader = reader
        self._writer = writer
        self._last_msgid = 0
        self._pending: dict[int, asyncio.Queue[univ.Choice | LDAPError]] = {}
        self._read_task: asyncio.Task[None] | None = None
        self._closed = False
        self.on_connection_lost: Callable[[LDAPError], None] | None = None

    @classmethod
    async def open(
        cls, url: str, timeout: float | None = 10.0
    ) -> DirectoryConnection:
        parts = urlsplit(url)
        if parts.scheme == "ldap":
            ssl_context, default_port = None, 389
        elif parts.scheme == "ldaps":
            ssl_context, default_port = ssl.create_default_context(), 636
        else:
            raise LDAPConnectionError(
                f"unsupported scheme {parts.scheme!r} in {url!r}"
            )
        try:
            host = parts.hostname or "localhost"
            port = parts.port or default_port
        except ValueError as e:
            raise LDAPConnectionError(f"invalid ldap url {url!r}") from e
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=ssl_context), timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise LDAPConnectionError(
                f"could not connect to {host}:{port}: {e!r}"
            ) from e
        log.info("connected to %s:%d", host, port)
        connection = cls(reader, writer)
        connection.start()
        return connection

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._read_task = asyncio.create_task(self._read_loop())

    async def bind(self, dn: str, password: str) -> None:
        """Simple bind. Raises `BindError` when the directory says no"""
        msgid = self._next_msgid()
        queue = self._register(msgid)
        try:
            self._send(encode_bind_request(msgid, dn, password))
            item = await queue.get()
        finally:
            self._pending.pop(msgid, None)
        if isinstance(item, LDAPError):
            raise item
        if item.getName() != "bindResponse":
            raise UnexpectedResponseType(f"{item.getName()} to a bind")
        result = item.getComponent()
        result_code = int(result["resultCode"])
        if result_code != 0:
            raise BindError(result_code, _text(result["diagnosticMessage"]))
        log.info("bound as %r", dn)

    def search(
        self,
        base: str,
        filter_str: str,
        scope: Scope = Scope.BASE,
        attributes: Iterable[str] = (),
        time_limit: int = 0,
    ) -> SearchHandle:
        """
        Issue one SearchRequest

        Raises `LDAPError` (`FilterSyntaxError` for a bad filter) when the
        request could not be sent; no event is produced in that case.
        """
        if self._closed:
            raise LDAPConnectionError("connection to directory is closed")
        msgid = self._next_msgid()
        data = encode_search_request(
            msgid,
            base,
            int(scope),
            filter_str,
            tuple(attributes),
            time_limit=time_limit,
        )
        queue = self._register(msgid)
        try:
            self._send(data)
        except LDAPError:
            self._pending.pop(msgid, None)
            raise
        return SearchHandle(self, msgid, queue)

    def release(self, msgid: int) -> None:
        """Stop listening for `msgid`, abandoning it when still running"""
        if self._pending.pop(msgid, None) is None:
            return
        if self._closed or self._writer.is_closing():
            return
        log.debug("abandon search #%d", msgid)
        self._send(encode_abandon_request(self._next_msgid(), msgid))

    async def close(self) -> None:
        """Unbind and close the transport without reporting a lost connection"""
        if not self._closed:
            self._closed = True
            if not self._writer.is_closing():
                self._writer.write(encode_unbind_request(self._next_msgid()))
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        self._fail(LDAPConnectionError("connection to directory is closed"))
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:
            log.debug("error while closing connection: %r", e)
        log.info("connection to directory closed")

    def _next_msgid(self) -> int:
        self._last_msgid = self._last_msgid % int(maxInt) + 1
        return self._last_msgid

    def _register(self, msgid: int) -> asyncio.Queue[univ.Choice | LDAPError]:
        queue: asyncio.Queue[univ.Choice | LDAPError] = asyncio.Queue()
        self._pending[msgid] = queue
        return queue

    def _send(self, data: bytes) -> None:
        if self._writer.is_closing():
            raise LDAPConnectionError("connection to directory is closing")
        try:
            self._writer.write(data)
        except OSError as e:
            raise LDAPConnectionError(f"write failed: {e!r}") from e

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    lm = await read_message(self._reader)
                except UnsupportedOperation as e:
                    self._reject(e)
                else:
                    self._dispatch(lm)
        except (asyncio.IncompleteReadError, OSError, PyAsn1Error) as e:
            if self._closed:
                return
            error = ConnectionLostError(f"connection to directory lost: {e!r}")
            log.error("%s", error)
            self._closed = True
            self._fail(error)
            if self.on_connection_lost is not None:
                self.on_connection_lost(error)

    def _dispatch(self, lm: LDAPMessage) -> None:
        msgid = int(lm["messageID"])
        op = lm["protocolOp"]
        if msgid == 0:
            # notice of disconnection, the server closes the stream next
            if op.getName() == "extendedResp":
                log.warning(
                    "unsolicited notification: %s",
                    _text(op.getComponent()["diagnosticMessage"]),
                )
            return
        queue = self._pending.get(msgid)
        if queue is None:
            log.debug("dropping %s for #%d", op.getName(), msgid)
            return
        queue.put_nowait(op)
        if op.getName() in _FINAL_OPS:
            del self._pending[msgid]

    def _reject(self, error: UnsupportedOperation) -> None:
        # the search stays registered so that closing its handle abandons it
        queue = self._pending.get(error.msgid)
        if queue is None:
            log.warning("dropping %s", error)
            return
        log.error("%s", error)
        queue.put_nowait(error)

    def _fail(self, error: LDAPError) -> None:
        for queue in self._pending.values():
            queue.put_nowait(error)
        self._pending.clear()


__all__ = [
    "DirectoryConnection",
    "Scope",
    "SearchDone",
    "SearchEntry",
    "SearchError",
    "SearchEvent",
    "SearchHandle",
    "SearchReference",
]
