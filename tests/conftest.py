"""Pytest configuration and fixtures."""

# Standard library imports
from collections.abc import Callable, Sequence
from pathlib import Path

# Third-party imports
import bencodepy
import pytest

# Local application imports
from tests.helpers import TorrentFixture, make_info, random_bytes


@pytest.fixture
def make_torrent(tmp_path: Path) -> Callable[..., TorrentFixture]:
    """Return a factory writing a torrent and its payload below tmp_path."""

    def factory(
        layout: Sequence[tuple[str, bytes]],
        piece_length: int = 16384,
        *,
        name: str = "test_files",
        single: bool = False,
    ) -> TorrentFixture:
        payload_dir = tmp_path / "payload"
        payload_dir.mkdir(exist_ok=True)
        files = []
        for rel, content in layout:
            path = payload_dir.joinpath(*rel.split("/"))
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
            files.append(path)

        torrent_path = tmp_path / f"{name}.torrent"
        torrent_path.write_bytes(bencodepy.encode({b"info": make_info(name, layout, piece_length, single=single)}))
        return TorrentFixture(
            torrent_path=torrent_path,
            payload_dir=payload_dir,
            files=files,
            contents=[content for _, content in layout],
            piece_length=piece_length,
        )

    return factory


@pytest.fixture
def two_file_torrent(make_torrent: Callable[..., TorrentFixture]) -> TorrentFixture:
    """Two files of 1 MiB and 500,000 bytes with 256 KiB pieces."""
    return make_torrent(
        [("first.bin", random_bytes(1_048_576, seed=1)), ("second.bin", random_bytes(500_000, seed=2))],
        piece_length=262_144,
    )


@pytest.fixture
def overlap_torrent(make_torrent: Callable[..., TorrentFixture]) -> TorrentFixture:
    """Three files whose pieces straddle file boundaries (8 byte pieces)."""
    return make_torrent(
        [("a.bin", b"A" * 6), ("b.bin", b"B" * 6), ("c.bin", b"C" * 13)],
        piece_length=8,
        name="overlap",
    )
