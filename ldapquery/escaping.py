"""
LDAP filter value escaping.

This module turns arbitrary caller supplied values into text that can be
embedded safely in an RFC 4515 search filter.  The heavy lifting is done by
:func:`ldap.filter.escape_filter_chars` from python-ldap; we make sure it
sees one character per byte of UTF-8 wherever it hex-escapes non-ASCII
input, and that undecodable bytes come out as ``\\XX`` pairs.
"""

import re
from typing import Any

from ldap.filter import escape_filter_chars

#: Escape only the characters that are special in the filter grammar:
#: ``\``, ``*``, ``(``, ``)`` and NUL.
ESCAPE_SPECIAL: int = 0
#: Also escape control characters, spaces and every byte outside ``0``-``z``.
ESCAPE_NON_ASCII: int = 1
#: Escape every byte as a ``\XX`` hex pair.
ESCAPE_ALL: int = 2

ESCAPE_MODES = (ESCAPE_SPECIAL, ESCAPE_NON_ASCII, ESCAPE_ALL)

#: Characters that would end or split an attribute description if left bare
#: on the left hand side of a clause.
FIELD_SPECIALS: str = ',=+<>;"#\r'

#: Undecodable bytes smuggled through ``str`` by the ``surrogateescape``
#: error handler.
_SMUGGLED_BYTE = re.compile("[\udc80-\udcff]")


def to_text(value: Any) -> str:
    """
    Coerce ``value`` to ``str`` so that it can be escaped.

    Args:
        value: A ``str``, ``bytes`` (decoded as UTF-8) or anything with a
            useful ``str()``.  Bytes that are not valid UTF-8 are kept as
            ``surrogateescape`` code points so that :func:`escape` can still
            emit them byte for byte.

    Returns:
        The text form of ``value``.

    """
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="surrogateescape")
    return str(value)


def _hex(byte: int) -> str:
    return "\\%02x" % byte


def _escape_smuggled_bytes(text: str) -> str:
    return _SMUGGLED_BYTE.sub(lambda m: _hex(ord(m.group()) - 0xDC00), text)


def escape(value: Any, mode: int = ESCAPE_SPECIAL) -> str:
    """
    Escape ``value`` for use as an assertion value in an LDAP filter.  With
    the default mode ``John (Jr.)*`` becomes ``John \\28Jr.\\29\\2a``.

    In :data:`ESCAPE_SPECIAL` mode valid UTF-8 text is left as it is, which
    RFC 4515 allows.  The other modes escape the UTF-8 encoding byte by byte,
    so ``é`` becomes ``\\c3\\a9``.

    Args:
        value: The raw value to escape.

    Keyword Args:
        mode: One of :data:`ESCAPE_SPECIAL`, :data:`ESCAPE_NON_ASCII` or
            :data:`ESCAPE_ALL`.

    Raises:
        ValueError: ``mode`` is not a known escape mode.

    Returns:
        The escaped value.

    """
    if mode not in ESCAPE_MODES:
        msg = f"Unknown escape mode: {mode!r}"
        raise ValueError(msg)
    text = to_text(value)
    if mode == ESCAPE_SPECIAL:
        return _escape_smuggled_bytes(escape_filter_chars(text, escape_mode=mode))
    # Latin-1 maps each byte to the code point of the same number, which is
    # what escape_filter_chars hex-encodes.
    data = text.encode("utf-8", errors="surrogateescape")
    return escape_filter_chars(data.decode("latin-1"), escape_mode=mode)


def escape_field(field: Any) -> str:
    """
    Escape an attribute name for embedding on the left hand side of a filter
    clause.  On top of the filter specials, ``= , + < > ; " #``, carriage
    returns and leading or trailing spaces are hex-escaped so that the name
    cannot run into the operator or the value.
    """
    escaped = "".join(
        _hex(ord(char)) if char in FIELD_SPECIALS else char
        for char in escape(field)
    )
    if escaped.startswith(" "):
        escaped = "\\20" + escaped[1:]
    if escaped.endswith(" "):
        escaped = escaped[:-1] + "\\20"
    return escaped
