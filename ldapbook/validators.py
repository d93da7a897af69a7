"""
Validators for contact data submitted to an address book.
"""

import re
from typing import Any

from django.core import validators
from django.core.exceptions import ValidationError as DjangoValidationError

from .exceptions import ValidationError


class ContactEmailValidator:
    """
    Validate the email addresses of a contact.  Matches a full email address

        foo@example.com

    or, when the source has a ``mail_domain``, a bare local part

        foo

    that the codec will complete with that domain.

    Keyword Args:
        mail_domain: the domain bare local parts are completed with

    """

    #: The message key used when validation fails.
    detail: str = "emailformaterror"
    #: The regex to match a bare local part.
    NAME_REGEX = re.compile(r"^[a-z0-9][-._a-z0-9]*$", re.IGNORECASE)
    #: The list of empty values.
    empty_values: list[Any] = list(validators.EMPTY_VALUES)  # noqa: RUF012

    def __init__(self, mail_domain: str | None = None) -> None:
        self.mail_domain = mail_domain

    def _validate_email(self, value: Any) -> None:
        if value in self.empty_values:
            return
        if self.mail_domain and self.NAME_REGEX.search(value):
            return
        try:
            validators.validate_email(value)
        except DjangoValidationError as e:
            msg = f"Invalid email address: {value}"
            raise ValidationError(self.detail, msg) from e

    def __call__(self, value: Any) -> None:
        """
        Validate a single address or a list of addresses.

        Args:
            value: The value to validate.

        Raises:
            ValidationError: an address is malformed

        """
        if isinstance(value, list):
            for item in value:
                self._validate_email(item)
            return
        self._validate_email(value)
