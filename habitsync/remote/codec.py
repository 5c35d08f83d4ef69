"""
remote/codec.py - Snapshot wire encoding
UTF-8 JSON documents, base64 where a transport needs text, and repair of
text that was mis-decoded as Latin-1 by older clients
"""

import base64
import binascii
import json
import re
from typing import Tuple

from ..errors import EncodingError
from ..sync.dataset import DatasetSnapshot

# Lead bytes of multi-byte UTF-8 sequences as they appear after a Latin-1 /
# CP1252 mis-decode, followed by a continuation-range character
_MOJIBAKE = re.compile('[Â-ô][\u0080-¿ŒœŠšŸ'
                       'Žžƒˆ˜–—‘-„'
                       '†-•…‰‹›€™]')


def encode_text(text: str) -> str:
    """UTF-8 encode then base64, inverse of decode_text"""
    return base64.b64encode(text.encode('utf-8')).decode('ascii')


def decode_text(encoded: str) -> str:
    """Inverse of encode_text; tolerates the line breaks some stores insert"""
    return decode_utf8(from_base64(encoded))


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def from_base64(encoded: str) -> bytes:
    cleaned = ''.join(encoded.split())
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"Invalid base64 content: {e}") from e


def decode_utf8(data: bytes) -> str:
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError as e:
        raise EncodingError(f"Content is not valid UTF-8: {e}") from e


def encode_snapshot(snapshot: DatasetSnapshot) -> bytes:
    """Serialize a snapshot as the UTF-8 JSON document stored remotely"""
    document = json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2)
    return document.encode('utf-8')


def decode_snapshot(content: bytes) -> DatasetSnapshot:
    """Parse a remote document; any malformation surfaces as EncodingError"""
    text = decode_utf8(content)
    if text.startswith('\ufeff'):
        text = text[1:]

    try:
        data = json.loads(text)
    except ValueError as e:
        raise EncodingError(f"Content is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise EncodingError("Snapshot document must be a JSON object")

    try:
        return DatasetSnapshot.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise EncodingError(f"Snapshot document is malformed: {e}") from e


def looks_mojibake(text: str) -> bool:
    """Detect UTF-8 text that was decoded as Latin-1 / CP1252"""
    return bool(text) and _MOJIBAKE.search(text) is not None


def _reencode(text: str) -> Tuple[bool, str]:
    for codec in ('cp1252', 'latin-1'):
        try:
            return True, text.encode(codec).decode('utf-8')
        except (UnicodeEncodeError, UnicodeDecodeError):
            continue
    return False, text


def repair_mojibake(text: str) -> str:
    """
    Undo a Latin-1 / CP1252 mis-decode of UTF-8 text
    Text that does not round-trip cleanly is returned unchanged
    """
    if not looks_mojibake(text):
        return text

    repaired = text
    # Doubly-encoded text needs more than one pass
    for _ in range(3):
        ok, candidate = _reencode(repaired)
        if not ok or candidate == repaired:
            break
        repaired = candidate
        if not looks_mojibake(repaired):
            break

    return repaired
