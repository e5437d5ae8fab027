"""
Content addressing — deterministic, owner-scoped identifiers.

    contentId = keccak256(abi.encode(bytes32 trackId, address owner))
    trackId   = keccak256(abi.encode(uint8 kind, bytes32 payload))

Both match the on-chain registry's computeContentId() so identifiers computed
here are usable as the registration join key. Pure functions, no I/O.
"""

from __future__ import annotations

import re
from pathlib import PurePath

from eth_abi import encode as abi_encode
from eth_utils import keccak

from mediaseal.errors import InvalidInput

_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_MBID_RE = re.compile(r"^[0-9a-fA-F]{1,64}$")
_WHITESPACE_RE = re.compile(r"\s+")

# trackId kinds
TRACK_KIND_MBID = 1
TRACK_KIND_IP_ID = 2
TRACK_KIND_METADATA = 3


def is_bytes32_hex(value: object) -> bool:
    return isinstance(value, str) and bool(_BYTES32_RE.match(value))


def is_address_hex(value: object) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def validate_content_identifier(value: object) -> str:
    """Return the lower-cased identifier, or raise InvalidInput."""
    if not is_bytes32_hex(value):
        raise InvalidInput(
            f"Invalid content identifier: expected 0x-prefixed bytes32 hex, got {value!r}"
        )
    return value.lower()  # type: ignore[union-attr]


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:])


def _keccak_hex(data: bytes) -> str:
    return "0x" + keccak(primitive=data).hex()


def compute_content_identifier(track_identifier: str, owner: str) -> str:
    """Compute the owner-scoped content identifier for a track.

    Args:
        track_identifier: 0x-prefixed 32-byte hex value.
        owner: 0x-prefixed 20-byte address (any case).

    Returns:
        Lower-case 0x-prefixed keccak256 hex digest.

    Raises:
        InvalidInput: If either argument is not well-formed.
    """
    if not is_bytes32_hex(track_identifier):
        raise InvalidInput(
            f"Invalid track identifier: expected 0x-prefixed bytes32 hex, got {track_identifier!r}"
        )
    if not is_address_hex(owner):
        raise InvalidInput(
            f"Invalid owner: expected 0x-prefixed address, got {owner!r}"
        )
    encoded = abi_encode(
        ["bytes32", "address"],
        [_hex_to_bytes(track_identifier), _hex_to_bytes(owner)],
    )
    return _keccak_hex(encoded).lower()


def normalize_text(value: str | None) -> str:
    """Lower-case, trim and collapse internal whitespace."""
    return _WHITESPACE_RE.sub(" ", (value or "").lower().strip())


def compute_track_identifier(
    title: str = "",
    artist: str = "",
    album: str = "",
    mbid: str | None = None,
    ip_id: str | None = None,
) -> str:
    """Derive a bytes32 track identifier from the best available metadata.

    Priority: MusicBrainz recording id > IP asset address > normalized
    (title, artist, album) text.
    """
    if mbid:
        raw = mbid.replace("-", "")
        if not _MBID_RE.match(raw):
            raise InvalidInput(f"Invalid MusicBrainz id: {mbid!r}")
        payload = bytes.fromhex(raw.ljust(64, "0"))
        kind = TRACK_KIND_MBID
    elif ip_id:
        if not is_address_hex(ip_id):
            raise InvalidInput(f"Invalid IP asset address: {ip_id!r}")
        payload = _hex_to_bytes(ip_id).rjust(32, b"\x00")
        kind = TRACK_KIND_IP_ID
    else:
        text = abi_encode(
            ["string", "string", "string"],
            [normalize_text(title), normalize_text(artist), normalize_text(album)],
        )
        payload = keccak(primitive=text)
        kind = TRACK_KIND_METADATA

    return _keccak_hex(abi_encode(["uint8", "bytes32"], [kind, payload])).lower()


def infer_track_metadata(path: str) -> dict[str, str]:
    """Guess title/artist/album from an "Artist - Title.ext" filename."""
    stem = PurePath(path.replace("\\", "/")).stem.strip() if path else ""
    parts = stem.split(" - ")
    if len(parts) >= 2:
        artist = parts[0].strip()
        title = " - ".join(parts[1:]).strip()
        if artist and title:
            return {"title": title, "artist": artist, "album": ""}
    return {"title": stem or "Unknown Track", "artist": "Unknown Artist", "album": ""}
