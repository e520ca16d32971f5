"""Strict bytes -> text decoding driven by the source descriptor encoding."""

from __future__ import annotations

import codecs
import unicodedata

from stock_harvest.errors import DecodingError

_UTF8_BOM = codecs.BOM_UTF8


def decode_bytes(raw: bytes, encoding: str) -> str:
    """Decode ``raw`` with the declared ``encoding`` and NFC-normalize it.

    Parameters
    ----------
    raw:
        Response body as fetched.
    encoding:
        Encoding declared by the source descriptor (``utf-8``, ``big5``,
        ``cp950``...). The encoding is never guessed from the payload.

    Returns
    -------
    str
        Canonical Unicode text.

    Raises
    ------
    DecodingError
        If the encoding is unknown or the bytes are invalid for it. No
        replacement characters are ever produced.
    """
    try:
        codec = codecs.lookup(encoding)
    except LookupError as exc:
        raise DecodingError(f"unknown encoding {encoding!r}", encoding=encoding) from exc

    data = bytes(raw or b"")
    if codec.name == "utf-8" and data.startswith(_UTF8_BOM):
        data = data[len(_UTF8_BOM) :]

    try:
        text = data.decode(codec.name, errors="strict")
    except UnicodeDecodeError as exc:
        raise DecodingError(
            f"invalid {codec.name} byte sequence at offset {exc.start}: {exc.reason}",
            encoding=codec.name,
            position=exc.start,
        ) from exc

    return unicodedata.normalize("NFC", text)
