"""Parse .torrent metadata into an immutable manifest.

The bencoded document is decoded with bencodepy; this module then validates the
decoded tree and normalizes single-file and multi-file torrents into one ordered
sequence of file entries.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeAlias

import bencodepy
import structlog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

SHA1_LENGTH = 20
PADDING_PREFIX = "_____padding_file_"

StrPath: TypeAlias = str | os.PathLike[str]


class TorrentError(Exception):
    """Base exception for torrent-related errors."""

    pass


class MalformedMetadata(TorrentError):
    """The torrent document is not valid bencode or has values of the wrong type."""


class MissingField(TorrentError):
    """A required key is absent from the torrent document."""

    def __init__(self, field: str) -> None:
        super().__init__(f"Invalid torrent info: missing '{field}'")
        self.field = field


class InconsistentLengths(TorrentError):
    """The pieces blob does not reconcile with the declared file lengths."""


@dataclass(frozen=True)
class FileEntry:
    """One file of the torrent, addressed relative to the output root."""

    path: tuple[str, ...]
    length: int
    padding: bool = False

    @property
    def relative_path(self) -> Path:
        return Path(*self.path)


@dataclass(frozen=True)
class TorrentManifest:
    """Piece hashes and file layout of a torrent."""

    name: str
    piece_length: int
    piece_hashes: tuple[bytes, ...]
    files: tuple[FileEntry, ...]

    @property
    def total_length(self) -> int:
        return sum(entry.length for entry in self.files)

    @property
    def num_pieces(self) -> int:
        return len(self.piece_hashes)

    def piece_size(self, piece: int) -> int:
        """Return the byte length of the given piece; only the last one may be short."""
        if not 0 <= piece < self.num_pieces:
            raise IndexError(f"piece {piece} out of range")
        start = piece * self.piece_length
        return min(self.piece_length, self.total_length - start)


def _decode_text(value: bytes) -> str:
    return value.decode("utf-8", errors="surrogateescape")


def _require(mapping: Mapping[bytes, Any], key: bytes) -> Any:
    try:
        return mapping[key]
    except KeyError:
        raise MissingField(key.decode()) from None


def _require_int(mapping: Mapping[bytes, Any], key: bytes, *, minimum: int = 0) -> int:
    value = _require(mapping, key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise MalformedMetadata(f"'{key.decode()}' must be an integer")
    if value < minimum:
        raise MalformedMetadata(f"'{key.decode()}' must be at least {minimum}, got {value}")
    return value


def _text_field(mapping: Mapping[bytes, Any], key: bytes) -> str:
    """Return a string field, preferring its '<key>.utf-8' variant when present."""
    utf8 = mapping.get(key + b".utf-8")
    if isinstance(utf8, bytes):
        return _decode_text(utf8)
    value = _require(mapping, key)
    if not isinstance(value, bytes):
        raise MalformedMetadata(f"'{key.decode()}' must be a byte string")
    return _decode_text(value)


def _check_component(component: str) -> str:
    if component in ("", ".", "..") or "/" in component or "\\" in component:
        raise MalformedMetadata(f"Invalid path component: {component!r}")
    return component


def _path_components(file_info: Mapping[bytes, Any]) -> tuple[str, ...]:
    parts = file_info.get(b"path.utf-8")
    if not isinstance(parts, list):
        parts = _require(file_info, b"path")
    if not isinstance(parts, list) or not parts:
        raise MalformedMetadata("'path' must be a non-empty list")
    components = []
    for part in parts:
        if not isinstance(part, bytes):
            raise MalformedMetadata("'path' entries must be byte strings")
        components.append(_check_component(_decode_text(part)))
    return tuple(components)


def _is_padding_file(file_info: Mapping[bytes, Any], path: tuple[str, ...]) -> bool:
    """Return True if a multi-file entry is a BEP47 padding file."""
    attrs = file_info.get(b"attr")
    if isinstance(attrs, bytes) and b"p" in attrs:
        return True
    return path[-1].startswith(PADDING_PREFIX)


def _parse_files(info: Mapping[bytes, Any], name: str) -> tuple[FileEntry, ...]:
    if b"files" in info:
        file_list = info[b"files"]
        if not isinstance(file_list, list) or not file_list:
            raise MalformedMetadata("'files' must be a non-empty list")
        entries = []
        for file_info in file_list:
            if not isinstance(file_info, dict):
                raise MalformedMetadata("'files' entries must be dictionaries")
            length = _require_int(file_info, b"length")
            path = _path_components(file_info)
            entries.append(FileEntry(path=(name, *path), length=length, padding=_is_padding_file(file_info, path)))
        return tuple(entries)

    if b"length" in info:
        return (FileEntry(path=(name,), length=_require_int(info, b"length")),)

    raise MissingField("length")


def _split_pieces(pieces: bytes) -> tuple[bytes, ...]:
    if len(pieces) % SHA1_LENGTH != 0:
        raise InconsistentLengths(f"'pieces' length {len(pieces)} is not a multiple of {SHA1_LENGTH}")
    return tuple(pieces[i : i + SHA1_LENGTH] for i in range(0, len(pieces), SHA1_LENGTH))


def parse_manifest(buffer: bytes) -> TorrentManifest:
    """Build a manifest from the raw bytes of a .torrent file.

    Args:
        buffer: Complete contents of the torrent document

    Returns:
        TorrentManifest: The validated piece table and file layout

    Raises:
        MalformedMetadata: If the document does not decode or has wrongly typed values
        MissingField: If a required key is absent
        InconsistentLengths: If the pieces blob does not match the file lengths

    """
    try:
        metainfo = bencodepy.decode(buffer)
    except Exception as e:
        raise MalformedMetadata(f"Failed to decode torrent: {e}") from e

    if not isinstance(metainfo, dict):
        raise MalformedMetadata("Torrent root must be a dictionary")
    info = _require(metainfo, b"info")
    if not isinstance(info, dict):
        raise MalformedMetadata("'info' must be a dictionary")

    piece_length = _require_int(info, b"piece length", minimum=1)
    pieces = _require(info, b"pieces")
    if not isinstance(pieces, bytes):
        raise MalformedMetadata("'pieces' must be a byte string")
    name = _check_component(_text_field(info, b"name"))
    files = _parse_files(info, name)
    piece_hashes = _split_pieces(pieces)

    total_length = sum(entry.length for entry in files)
    expected_pieces = -(-total_length // piece_length)
    if len(piece_hashes) != expected_pieces:
        raise InconsistentLengths(f"Expected {expected_pieces} piece hashes for {total_length} bytes, found {len(piece_hashes)}")

    manifest = TorrentManifest(name=name, piece_length=piece_length, piece_hashes=piece_hashes, files=files)
    logger.debug("parsed manifest", name=name, files=len(files), pieces=len(piece_hashes), piece_length=piece_length)
    return manifest


def read_manifest(torrent_path: StrPath) -> TorrentManifest:
    """Read and parse a .torrent file from disk."""
    torrent_file = Path(torrent_path)
    if not torrent_file.is_file():
        raise TorrentError(f"Torrent file not found: {torrent_path}")
    try:
        with torrent_file.open("rb") as f:
            buffer = f.read()
    except OSError as e:
        raise TorrentError(f"Error reading torrent {torrent_path}: {e}") from e
    return parse_manifest(buffer)
