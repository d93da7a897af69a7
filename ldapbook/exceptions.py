"""
Address book error taxonomy.

Every error raised by :py:mod:`ldapbook` derives from
:py:class:`AddressbookError`, which carries a machine readable
:py:class:`ErrorKind` and a ``detail`` message key suitable for looking up a
localized message in the hosting application.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorKind(Enum):
    """The broad category of an address book error."""

    CONNECTION = "connection"
    BIND = "bind"
    SEARCH = "search"
    VALIDATE = "validate"
    SAVING = "saving"


@dataclass(frozen=True)
class ErrorState:
    """
    The last error recorded by
    :py:class:`~ldapbook.addressbook.LdapAddressbook`.
    """

    #: What kind of error happened
    kind: ErrorKind
    #: The message key describing the error
    detail: str


class AddressbookError(Exception):
    """
    Base class for all address book errors.

    Args:
        detail: the message key describing this error.  Defaults to
            :py:attr:`default_detail`.
        message: a human readable message.  Defaults to ``detail``.

    """

    #: The error category
    kind: ErrorKind = ErrorKind.SAVING
    #: The message key used when none is given
    default_detail: str = "errorsaving"

    def __init__(self, detail: str | None = None, message: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(message or self.detail)

    @property
    def state(self) -> ErrorState:
        """
        This error as an :py:class:`ErrorState`.
        """
        return ErrorState(self.kind, self.detail)


class DirectoryConnectionError(AddressbookError):
    """
    No configured host could be connected to and bound.  Fatal for the
    session.
    """

    kind = ErrorKind.CONNECTION
    default_detail = "connectionfailed"


class BindError(AddressbookError):
    """
    Binding to a specific host failed.  The connector recovers from this by
    moving on to the next host.
    """

    kind = ErrorKind.BIND
    default_detail = "bindfailed"


class SearchError(AddressbookError):
    """
    The search request is malformed or unsupported.  No directory call was
    made.
    """

    kind = ErrorKind.SEARCH
    default_detail = "nofulltextsearch"


class ValidationError(AddressbookError):
    """
    The save data is incomplete or malformed.  Raised before any mutation is
    attempted.

    Args:
        detail: the message key describing this error.
        message: a human readable message.

    Keyword Args:
        missing: the directory attributes that were required but missing.

    """

    kind = ErrorKind.VALIDATE
    default_detail = "formincomplete"

    def __init__(
        self,
        detail: str | None = None,
        message: str | None = None,
        missing: list[str] | None = None,
    ) -> None:
        super().__init__(detail, message)
        self.missing: list[str] = list(missing or [])


class SaveError(AddressbookError):
    """
    A directory mutation failed.  Steps of the same plan that ran before the
    failing step stay applied.
    """

    kind = ErrorKind.SAVING
    default_detail = "errorsaving"
