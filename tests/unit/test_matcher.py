"""Unit tests for the matcher."""

import shutil
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import pytest

from find_torrent_data.matcher import EntryState, MatchCancelled, group_by_size, resolve
from find_torrent_data.metainfo import TorrentManifest, read_manifest
from find_torrent_data.piece_index import PieceIndex, build_piece_index
from find_torrent_data.verifier import CandidateFile
from tests.helpers import TorrentFixture, random_bytes


def _load(fixture: TorrentFixture) -> tuple[TorrentManifest, PieceIndex]:
    manifest = read_manifest(fixture.torrent_path)
    return manifest, build_piece_index(manifest)


def _candidates(*paths: Path) -> list[CandidateFile]:
    return [CandidateFile(path=path, size=path.stat().st_size) for path in paths]


def _corrupt(path: Path, offset: int | None = None) -> None:
    data = bytearray(path.read_bytes())
    data[len(data) // 2 if offset is None else offset] ^= 0xFF
    path.write_bytes(bytes(data))


class _CountingProgress:
    def __init__(self) -> None:
        self.total = 0

    def update(self, n: int) -> None:
        self.total += n


class _CancelAfter:
    """Reports cancellation once it has been polled a given number of times."""

    def __init__(self, polls: int) -> None:
        self.polls = polls

    def is_set(self) -> bool:
        self.polls -= 1
        return self.polls < 0


def test_group_by_size_sorts_and_deduplicates(tmp_path: Path) -> None:
    candidates = [
        CandidateFile(tmp_path / "b", 10),
        CandidateFile(tmp_path / "a", 10),
        CandidateFile(tmp_path / "c", 3),
        CandidateFile(tmp_path / "a", 10),
    ]
    groups = group_by_size(candidates)
    assert groups == {10: [CandidateFile(tmp_path / "a", 10), CandidateFile(tmp_path / "b", 10)], 3: [CandidateFile(tmp_path / "c", 3)]}


def test_both_entries_resolved(two_file_torrent: TorrentFixture) -> None:
    manifest, index = _load(two_file_torrent)
    first, second = two_file_torrent.files
    result = resolve(manifest, index, _candidates(second, first))

    assert [r.state for r in result] == [EntryState.RESOLVED, EntryState.RESOLVED]
    assert result[0].source == first
    assert result[1].source == second
    assert result[0].verification_ratio == 1.0
    assert result[0].outcome is not None and result[0].outcome.pieces_checked == 4
    assert result.unresolved() == []


def test_corrupted_candidate_of_right_size_is_unresolved(two_file_torrent: TorrentFixture) -> None:
    manifest, index = _load(two_file_torrent)
    first, second = two_file_torrent.files
    _corrupt(first)
    result = resolve(manifest, index, _candidates(first, second))

    assert result[0].state is EntryState.UNRESOLVED
    assert result[0].source is None
    assert result[0].verification_ratio is None
    assert result[0].outcome is not None
    assert result[0].outcome.pieces_matched < result[0].outcome.pieces_checked
    assert result[1].state is EntryState.RESOLVED


@pytest.mark.parametrize("fraction", [0.0, 0.5, 1.0])
def test_entry_without_size_match_is_unresolved(two_file_torrent: TorrentFixture, fraction: float) -> None:
    manifest, index = _load(two_file_torrent)
    result = resolve(manifest, index, _candidates(two_file_torrent.files[1]), fraction)
    assert result[0].state is EntryState.UNRESOLVED


def test_zero_fraction_resolves_nothing(two_file_torrent: TorrentFixture) -> None:
    manifest, index = _load(two_file_torrent)
    result = resolve(manifest, index, _candidates(*two_file_torrent.files), 0.0)
    assert [r.state for r in result] == [EntryState.UNRESOLVED, EntryState.UNRESOLVED]


def test_tie_break_ignores_input_order(two_file_torrent: TorrentFixture, tmp_path: Path) -> None:
    manifest, index = _load(two_file_torrent)
    first = two_file_torrent.files[0]
    copy_a = tmp_path / "copies" / "a" / "first.bin"
    copy_z = tmp_path / "copies" / "z" / "first.bin"
    for copy in (copy_a, copy_z):
        copy.parent.mkdir(parents=True)
        shutil.copy(first, copy)

    forward = resolve(manifest, index, _candidates(copy_a, copy_z))
    backward = resolve(manifest, index, _candidates(copy_z, copy_a))
    assert forward[0].source == backward[0].source == copy_a


def test_bad_candidate_does_not_hide_a_good_one(two_file_torrent: TorrentFixture, tmp_path: Path) -> None:
    manifest, index = _load(two_file_torrent)
    first = two_file_torrent.files[0]
    bad = tmp_path / "a_bad.bin"
    shutil.copy(first, bad)
    _corrupt(bad)

    result = resolve(manifest, index, _candidates(bad, first))
    assert result[0].source == first


def test_unreadable_candidate_is_a_non_match(two_file_torrent: TorrentFixture, tmp_path: Path) -> None:
    manifest, index = _load(two_file_torrent)
    first = two_file_torrent.files[0]
    vanished = CandidateFile(tmp_path / "0_vanished.bin", first.stat().st_size)

    result = resolve(manifest, index, [vanished, *_candidates(first)])
    assert result[0].source == first


def test_duplicate_assignments_are_reported(make_torrent: Callable[..., TorrentFixture]) -> None:
    content = b"same content" * 100
    fixture = make_torrent([("one.bin", content), ("two.bin", content)], piece_length=len(content))
    manifest, index = _load(fixture)

    result = resolve(manifest, index, _candidates(fixture.files[0]))
    assert result[0].source == result[1].source == fixture.files[0]
    assert result.duplicates() == {fixture.files[0]: [0, 1]}


def test_entries_inside_shared_pieces_are_deferred(overlap_torrent: TorrentFixture) -> None:
    manifest, index = _load(overlap_torrent)
    a, b, c = overlap_torrent.files
    result = resolve(manifest, index, _candidates(c, b, a))

    assert [r.source for r in result] == [a, b, c]
    assert all(r.state is EntryState.RESOLVED for r in result)


def test_deferred_entry_stays_unresolved_without_neighbour(overlap_torrent: TorrentFixture) -> None:
    manifest, index = _load(overlap_torrent)
    a, _, c = overlap_torrent.files
    result = resolve(manifest, index, _candidates(a, c))

    # a.bin is 6 bytes like b.bin but cannot be verified for either entry
    assert result[0].state is EntryState.UNRESOLVED
    assert result[1].state is EntryState.UNRESOLVED
    assert result[2].source == c


def test_padding_entries(make_torrent: Callable[..., TorrentFixture]) -> None:
    fixture = make_torrent([("a.bin", b"A" * 6), (".pad/2", b"\x00" * 2), ("b.bin", b"B" * 8)], piece_length=8)
    manifest = read_manifest(fixture.torrent_path)
    files = list(manifest.files)
    files[1] = replace(files[1], padding=True)
    manifest = replace(manifest, files=tuple(files))
    index = build_piece_index(manifest)

    result = resolve(manifest, index, _candidates(fixture.files[0], fixture.files[2]))
    assert [r.state for r in result] == [EntryState.RESOLVED, EntryState.PADDING, EntryState.RESOLVED]
    assert result.unresolved() == []


def test_parallel_workers_give_identical_results(two_file_torrent: TorrentFixture, tmp_path: Path) -> None:
    manifest, index = _load(two_file_torrent)
    first, second = two_file_torrent.files
    candidates = []
    for i in range(3):
        bad = tmp_path / f"{i}_bad.bin"
        shutil.copy(first, bad)
        _corrupt(bad)
        candidates.append(bad)
    good_copy = tmp_path / "9_copy.bin"
    shutil.copy(first, good_copy)

    all_candidates = _candidates(good_copy, *candidates, first, second)
    sequential = resolve(manifest, index, all_candidates)
    parallel = resolve(manifest, index, all_candidates, workers=4)
    assert sequential == parallel
    assert parallel[0].source == good_copy


def test_progress_covers_every_entry(two_file_torrent: TorrentFixture) -> None:
    manifest, index = _load(two_file_torrent)
    progress = _CountingProgress()
    resolve(manifest, index, _candidates(*two_file_torrent.files), progress=progress)
    assert progress.total == manifest.total_length


def test_cancel_before_first_entry(two_file_torrent: TorrentFixture) -> None:
    manifest, index = _load(two_file_torrent)
    with pytest.raises(MatchCancelled) as excinfo:
        resolve(manifest, index, _candidates(*two_file_torrent.files), cancel=_CancelAfter(0))
    assert len(excinfo.value.partial) == 0


def test_cancel_between_entries_keeps_completed_ones(two_file_torrent: TorrentFixture) -> None:
    manifest, index = _load(two_file_torrent)
    with pytest.raises(MatchCancelled) as excinfo:
        resolve(manifest, index, _candidates(*two_file_torrent.files), cancel=_CancelAfter(1))
    partial = excinfo.value.partial
    assert len(partial) == 1
    assert partial[0].source == two_file_torrent.files[0]


@pytest.fixture
def boundary_torrent(make_torrent: Callable[..., TorrentFixture]) -> TorrentFixture:
    """Two 20 byte files sharing piece 2 (8 byte pieces)."""
    return make_torrent(
        [("a.bin", random_bytes(20, seed=5)), ("b.bin", random_bytes(20, seed=6))],
        piece_length=8,
        name="boundary",
    )


def test_shared_piece_is_checked_once_both_sides_are_known(boundary_torrent: TorrentFixture) -> None:
    manifest, index = _load(boundary_torrent)
    a, b = boundary_torrent.files
    result = resolve(manifest, index, _candidates(a, b))

    assert [r.source for r in result] == [a, b]
    for resolution in result:
        assert resolution.outcome is not None
        assert resolution.outcome.pieces_checked == 3
        assert resolution.outcome.pieces_skipped == 0


def test_corruption_inside_shared_piece_rejects_the_corrupt_file(boundary_torrent: TorrentFixture) -> None:
    manifest, index = _load(boundary_torrent)
    a, b = boundary_torrent.files
    _corrupt(a, offset=18)

    result = resolve(manifest, index, _candidates(a, b))

    assert result[0].state is EntryState.UNRESOLVED
    assert result[1].state is EntryState.RESOLVED
    assert result[1].source == b
    assert result.resolved() == [result[1]]


def test_source_failing_shared_piece_gives_way_to_intact_copy(boundary_torrent: TorrentFixture) -> None:
    manifest, index = _load(boundary_torrent)
    a, b = boundary_torrent.files
    copy = boundary_torrent.payload_dir / "z_copy.bin"
    copy.write_bytes(boundary_torrent.contents[0])
    _corrupt(a, offset=18)

    result = resolve(manifest, index, _candidates(a, b, copy))

    assert result[0].source == copy
    assert result[1].source == b
    assert all(r.outcome is not None and r.outcome.pieces_skipped == 0 for r in result)


def test_low_fraction_samples_pieces_the_entry_owns(make_torrent: Callable[..., TorrentFixture]) -> None:
    fixture = make_torrent(
        [("a.bin", random_bytes(20, seed=7)), ("b.bin", random_bytes(40, seed=8))],
        piece_length=8,
    )
    manifest, index = _load(fixture)

    result = resolve(manifest, index, _candidates(fixture.files[1]), 0.1)

    assert result[0].state is EntryState.UNRESOLVED
    assert result[1].source == fixture.files[1]
    assert result[1].outcome is not None
    assert result[1].outcome.pieces_checked == 1
