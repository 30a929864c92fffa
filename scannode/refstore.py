"""Small file-backed stores for the last batch reference and plain strings."""

from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

LAST_BATCH_FILE_NAME = ".last-batch"

_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


class InvalidRefError(ValueError):
    """Raised when a content identifier cannot be parsed."""


def _base58_decode(text: str) -> bytes:
    num = 0
    for ch in text:
        idx = _BASE58_ALPHABET.find(ch)
        if idx < 0:
            raise InvalidRefError(f"invalid base58 character {ch!r}")
        num = num * 58 + idx
    zeros = len(text) - len(text.lstrip("1"))
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * zeros + body


def _base36_decode(text: str) -> bytes:
    text = text.lower()
    if any(ch not in _BASE36_ALPHABET for ch in text):
        raise InvalidRefError("invalid base36 string")
    zeros = len(text) - len(text.lstrip("0"))
    rest = text[zeros:]
    num = int(rest, 36) if rest else 0
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * zeros + body


def _b32(text: str, *, upper: bool, hexalpha: bool = False) -> bytes:
    if (text.upper() if upper else text.lower()) != text:
        raise InvalidRefError("unexpected base32 letter case")
    text = text.upper().rstrip("=")
    padded = text + "=" * (-len(text) % 8)
    return base64.b32hexdecode(padded) if hexalpha else base64.b32decode(padded)


def _b64(text: str, *, urlsafe: bool) -> bytes:
    text = text.rstrip("=")
    padded = text + "=" * (-len(text) % 4)
    if urlsafe:
        padded = padded.replace("-", "+").replace("_", "/")
    return base64.b64decode(padded, validate=True)


_MULTIBASE = {
    "b": lambda s: _b32(s, upper=False),
    "B": lambda s: _b32(s, upper=True),
    "c": lambda s: _b32(s, upper=False),
    "C": lambda s: _b32(s, upper=True),
    "v": lambda s: _b32(s, upper=False, hexalpha=True),
    "V": lambda s: _b32(s, upper=True, hexalpha=True),
    "z": _base58_decode,
    "f": lambda s: bytes.fromhex(s),
    "F": lambda s: bytes.fromhex(s),
    "k": _base36_decode,
    "K": _base36_decode,
    "m": lambda s: _b64(s, urlsafe=False),
    "M": lambda s: _b64(s, urlsafe=False),
    "u": lambda s: _b64(s, urlsafe=True),
    "U": lambda s: _b64(s, urlsafe=True),
}


def _uvarint(data: bytes, pos: int) -> tuple[int, int]:
    value = 0
    shift = 0
    for count in range(9):
        if pos >= len(data):
            raise InvalidRefError("varint truncated")
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if byte < 0x80:
            if byte == 0 and count > 0:
                raise InvalidRefError("varint not minimally encoded")
            return value, pos
        shift += 7
    raise InvalidRefError("varint too long")


def _check_multihash(data: bytes, pos: int) -> None:
    _code, pos = _uvarint(data, pos)
    length, pos = _uvarint(data, pos)
    if len(data) - pos != length:
        raise InvalidRefError("multihash length mismatch")


def _is_v0_binary(data: bytes) -> bool:
    return len(data) == 34 and data[0] == 0x12 and data[1] == 0x20


def _cast(data: bytes) -> bytes:
    if _is_v0_binary(data):
        return data
    version, pos = _uvarint(data, 0)
    if version != 1:
        raise InvalidRefError(f"expected 1 as the cid version number, got: {version}")
    _codec, pos = _uvarint(data, pos)
    _check_multihash(data, pos)
    return data


def parse_cid(ref: str) -> bytes:
    """Validate a CID string and return its binary form."""
    if len(ref) < 2:
        raise InvalidRefError("cid too short")
    if len(ref) == 46 and ref.startswith("Qm"):
        data = _base58_decode(ref)
        if not _is_v0_binary(data):
            raise InvalidRefError("invalid CIDv0 multihash")
        return data
    decoder = _MULTIBASE.get(ref[0])
    if decoder is None:
        raise InvalidRefError(f"unknown multibase prefix {ref[0]!r}")
    try:
        data = decoder(ref[1:])
    except (binascii.Error, ValueError) as exc:
        if isinstance(exc, InvalidRefError):
            raise
        raise InvalidRefError(f"invalid multibase data: {exc}") from exc
    return _cast(data)


class BatchRefStore:
    """Keeps the last batch reference in a file inside a directory."""

    def __init__(self, directory: str | Path) -> None:
        self.path = Path(directory) / LAST_BATCH_FILE_NAME

    def get_last(self) -> str:
        """Return the stored reference, or an empty string if none is readable."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("failed to read the last batch file: %s", exc)
            return ""
        try:
            parse_cid(raw)
        except InvalidRefError as exc:
            raise InvalidRefError(f"invalid batch ref found: {exc}") from exc
        return raw.strip()

    def put(self, ref: str) -> None:
        """Validate and store a reference."""
        try:
            parse_cid(ref)
        except InvalidRefError as exc:
            raise InvalidRefError(f"invalid batch ref provided: {exc}") from exc
        self.path.write_text(ref, encoding="utf-8")


class FileStringStore:
    """Keeps a single string in a file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get(self) -> str:
        """Return the stored string stripped, or an empty string on read failure."""
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.warning("failed to read %s: %s", self.path, exc)
            return ""

    def put(self, body: str) -> None:
        """Store a string."""
        self.path.write_text(body, encoding="utf-8")