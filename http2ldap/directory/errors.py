from __future__ import annotations


class LDAPError(Exception):
    """Base class for all directory client errors"""


class LDAPConnectionError(LDAPError):
    """The connection to the directory could not be used"""


class ConnectionLostError(LDAPConnectionError):
    """The directory closed the connection or broke the message framing"""


class UnexpectedResponseType(LDAPError):
    """The response did not contain the expected protocol operation"""


class UnsupportedOperation(UnexpectedResponseType):
    """A well framed message whose operation could not be decoded"""

    def __init__(self, msgid: int, message: str) -> None:
        self.msgid = msgid
        super().__init__(message)


class FilterSyntaxError(LDAPError):
    """The filter string is not a valid RFC 4515 filter"""


class ResultError(LDAPError):
    def __init__(self, result_code: int, message: str = "") -> None:
        self.result_code = result_code
        self.message = message
        super().__init__(
            f"ldap result code {result_code}: {message}"
            if message
            else f"ldap result code {result_code}"
        )


class NoSuchObjectError(ResultError):
    """The search base does not exist"""


class BindError(ResultError):
    """The directory rejected the credentials"""
