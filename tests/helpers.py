"""Builders for torrents used across the test suite."""

import hashlib
import random
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


@dataclass
class TorrentFixture:
    """A torrent written to disk together with its payload."""

    torrent_path: Path
    payload_dir: Path
    files: list[Path]
    contents: list[bytes]
    piece_length: int


def piece_hashes(data: bytes, piece_length: int) -> bytes:
    pieces = bytearray()
    for offset in range(0, len(data), piece_length):
        pieces.extend(hashlib.sha1(data[offset : offset + piece_length]).digest())
    return bytes(pieces)


def make_info(name: str, layout: Sequence[tuple[str, bytes]], piece_length: int, *, single: bool = False) -> dict[bytes, object]:
    """Build an info dictionary; layout entries are (slash separated relative path, content) pairs."""
    combined = b"".join(content for _, content in layout)
    info: dict[bytes, object] = {
        b"name": name.encode(),
        b"piece length": piece_length,
        b"pieces": piece_hashes(combined, piece_length),
    }
    if single:
        assert len(layout) == 1
        info[b"length"] = len(layout[0][1])
    else:
        info[b"files"] = [{b"path": [part.encode() for part in rel.split("/")], b"length": len(content)} for rel, content in layout]
    return info


def random_bytes(size: int, seed: int) -> bytes:
    return random.Random(seed).randbytes(size)
