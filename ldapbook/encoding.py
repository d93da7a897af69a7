"""
Reversible, URL and HTML safe encoding of directory paths into record
identifiers.
"""

import base64
import binascii


def dn_encode(dn: str) -> str:
    """
    Encode ``dn`` as an identifier: base64 with ``+/`` replaced by ``-_`` and
    the trailing ``=`` padding stripped.

    Args:
        dn: the distinguished name to encode

    Returns:
        The encoded identifier.

    """
    return base64.urlsafe_b64encode(dn.encode("utf-8")).decode("ascii").rstrip("=")


def dn_decode(identifier: str) -> str:
    """
    Decode an identifier produced by :py:func:`dn_encode`.

    Args:
        identifier: the encoded identifier

    Raises:
        ValueError: ``identifier`` is not a valid encoded path.

    Returns:
        The original distinguished name.

    """
    padded = identifier + "=" * (-len(identifier) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError) as e:
        msg = f"Invalid record identifier: {identifier!r}"
        raise ValueError(msg) from e


def split_ids(ids: str | list[str] | tuple[str, ...]) -> list[str]:
    """
    Normalize a comma separated identifier string or a sequence of
    identifiers into a list, dropping empty items.
    """
    if isinstance(ids, str):
        ids = ids.split(",")
    return [i for i in ids if i]
