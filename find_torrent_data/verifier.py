"""Verify candidate files against the piece hashes of a manifest entry."""

import hashlib
import math
import os
import threading
import types
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import BinaryIO, NamedTuple, Protocol, runtime_checkable

import structlog

from find_torrent_data.piece_index import PieceIndex

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)
_max_open_files = 32


@dataclass(frozen=True, order=True)
class CandidateFile:
    """A file found on local storage that may hold the content of a manifest entry."""

    path: Path
    size: int


@dataclass(frozen=True)
class VerificationOutcome:
    pieces_checked: int
    pieces_matched: int
    pieces_skipped: int = 0  # sampled but unverifiable
    unverified: tuple[int, ...] = field(default=(), compare=False)

    @property
    def accepted(self) -> bool:
        return self.pieces_checked > 0 and self.pieces_matched == self.pieces_checked

    @property
    def ratio(self) -> float:
        if self.pieces_checked == 0:
            return 0.0
        return self.pieces_matched / self.pieces_checked

    def merged(self, recheck: "VerificationOutcome") -> "VerificationOutcome":
        """Fold a re-check of the unverified pieces into this outcome."""
        return VerificationOutcome(
            pieces_checked=self.pieces_checked + recheck.pieces_checked,
            pieces_matched=self.pieces_matched + recheck.pieces_matched,
            pieces_skipped=recheck.pieces_skipped,
            unverified=recheck.unverified,
        )


class SamplingStrategy(str, Enum):
    STRIDE = "stride"
    PREFIX = "prefix"


def clamp_fraction(fraction: float) -> float:
    if math.isnan(fraction):
        raise ValueError("fraction must be a number")
    return min(max(fraction, 0.0), 1.0)


def sample_size(total: int, fraction: float) -> int:
    """Return ceil(total * fraction) for a clamped fraction."""
    fraction = clamp_fraction(fraction)
    # round() absorbs float noise such as 10 * 0.3 == 3.0000000000000004
    return min(total, math.ceil(round(total * fraction, 9)))


def select_pieces(pieces: Sequence[int], count: int, strategy: SamplingStrategy = SamplingStrategy.STRIDE) -> list[int]:
    """Select count pieces in a reproducible order.

    PREFIX takes the leading pieces; STRIDE spreads the selection evenly over
    the whole file so that both ends are represented.
    """
    total = len(pieces)
    if count <= 0:
        return []
    if count >= total:
        return list(pieces)
    if strategy is SamplingStrategy.PREFIX:
        return list(pieces[:count])
    return [pieces[(i * total) // count] for i in range(count)]


@runtime_checkable
class PieceReader(Protocol):
    def read(self, file: Path, offset: int, length: int) -> bytes: ...


class FileReader:
    """Open-file-handle cache shared by the verifications of one matching run.

    Handles are created under a per-path lock and read under a per-handle lock,
    so concurrent workers never open the same file twice and never interleave
    seek and read on one handle. Hashing happens outside both locks.
    """

    def __init__(self, max_open_files: int = _max_open_files) -> None:
        self.max_open_files = max_open_files
        self._refs: dict[str, BinaryIO] = {}
        self._read_locks: dict[str, threading.Lock] = {}
        self._open_locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def __enter__(self) -> "FileReader":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: types.TracebackType | None,
        /,
    ) -> None:
        self.close()

    def close(self) -> None:
        with self._guard:
            for ref in self._refs.values():
                ref.close()
            self._refs.clear()
            self._read_locks.clear()
            self._open_locks.clear()

    @property
    def open_files(self) -> int:
        return len(self._refs)

    def _cleanup(self) -> None:
        # caller holds self._guard
        if len(self._refs) < self.max_open_files:
            return

        for key in list(self._refs):
            if len(self._refs) < self.max_open_files:
                break
            lock = self._read_locks[key]
            if not lock.acquire(blocking=False):
                logger.debug("skipping busy file handle", file=key)
                continue
            try:
                logger.debug("closing file handle", file=key)
                self._refs.pop(key).close()
                del self._read_locks[key]
                self._open_locks.pop(key, None)
            finally:
                lock.release()

    def _handle(self, key: str) -> tuple[BinaryIO, threading.Lock]:
        with self._guard:
            if key in self._refs:
                return self._refs[key], self._read_locks[key]
            open_lock = self._open_locks.setdefault(key, threading.Lock())

        with open_lock:
            with self._guard:
                if key in self._refs:
                    return self._refs[key], self._read_locks[key]
            fh = open(key, "rb")
            with self._guard:
                self._cleanup()
                self._refs[key] = fh
                self._read_locks[key] = threading.Lock()
                return fh, self._read_locks[key]

    def read(self, file: Path, offset: int, length: int) -> bytes:
        key = os.fspath(file)
        while True:
            fh, lock = self._handle(key)
            with lock:
                if fh.closed:
                    # evicted between lookup and lock
                    continue
                fh.seek(offset)
                return fh.read(length)


class _Source(NamedTuple):
    path: Path | None  # None for zero-filled padding
    offset: int
    length: int
    own: bool = False


def _piece_sources(
    piece_index: PieceIndex,
    piece: int,
    candidate: CandidateFile,
    file_entry_index: int,
    settled: Mapping[int, Path],
) -> list[_Source] | None:
    """Return where to read each segment of a piece from.

    Returns None when a segment belongs to a sibling entry that has no settled source.
    """
    sources: list[_Source] = []
    for segment in piece_index.segments(piece):
        if segment.file_index == file_entry_index:
            sources.append(_Source(candidate.path, segment.offset, segment.length, own=True))
        elif segment.file_index in piece_index.padding:
            sources.append(_Source(None, segment.offset, segment.length))
        elif segment.file_index in settled:
            sources.append(_Source(settled[segment.file_index], segment.offset, segment.length))
        else:
            return None
    return sources


def _read_piece(sources: list[_Source], reader: PieceReader) -> bytes | None:
    buf = bytearray()
    for path, offset, length, own in sources:
        if path is None:
            buf.extend(b"\x00" * length)
        elif own:
            buf.extend(reader.read(path, offset, length))
        else:
            try:
                buf.extend(reader.read(path, offset, length))
            except OSError as e:
                logger.warning("cannot read sibling file", file=str(path), error=str(e))
                return None
    return bytes(buf)


def check_pieces(
    candidate: CandidateFile,
    file_entry_index: int,
    piece_index: PieceIndex,
    pieces: Iterable[int],
    *,
    reader: PieceReader | None = None,
    settled: Mapping[int, Path] | None = None,
    stop_on_mismatch: bool = False,
) -> VerificationOutcome:
    """Hash the given pieces, reading the entry's own bytes from the candidate.

    Pieces that cannot be rebuilt from the candidate, padding and the settled
    sources are counted as skipped and listed in ``unverified``.

    Raises:
        OSError: If the candidate itself cannot be read

    """
    if reader is None:
        with FileReader() as own_reader:
            return check_pieces(
                candidate,
                file_entry_index,
                piece_index,
                pieces,
                reader=own_reader,
                settled=settled,
                stop_on_mismatch=stop_on_mismatch,
            )

    if settled is None:
        settled = {}
    log = logger.bind(method="check_pieces", entry=file_entry_index, candidate=str(candidate.path))

    checked = matched = 0
    unverified: list[int] = []
    for piece in pieces:
        sources = _piece_sources(piece_index, piece, candidate, file_entry_index, settled)
        data = _read_piece(sources, reader) if sources is not None else None
        if data is None:
            unverified.append(piece)
            continue

        checked += 1
        actual_hash = hashlib.sha1(data).digest()
        expected_hash = piece_index.piece_hashes[piece]
        if actual_hash == expected_hash:
            matched += 1
            continue

        log.debug("piece mismatch", piece=piece, expected_hash=expected_hash.hex(), actual_hash=actual_hash.hex())
        if stop_on_mismatch:
            break

    return VerificationOutcome(
        pieces_checked=checked,
        pieces_matched=matched,
        pieces_skipped=len(unverified),
        unverified=tuple(unverified),
    )


def score(
    candidate: CandidateFile,
    file_entry_index: int,
    piece_index: PieceIndex,
    fraction: float,
    *,
    reader: PieceReader | None = None,
    settled: Mapping[int, Path] | None = None,
    strategy: SamplingStrategy = SamplingStrategy.STRIDE,
    stop_on_mismatch: bool = False,
) -> VerificationOutcome:
    """Hash a sample of the pieces overlapping an entry, reading them from a candidate.

    The sample holds ceil(n * fraction) of the entry's n pieces. It is drawn
    from the pieces that can be rebuilt with the settled sources first; any
    shortfall is filled with pieces that cannot, which are reported as skipped
    and unverified instead of being hashed.

    Args:
        candidate: File to verify
        file_entry_index: Manifest entry the candidate is tested against
        piece_index: Piece layout and expected hashes
        fraction: Share of the entry's pieces to check, clamped to [0, 1]
        reader: Handle cache; a private one is opened when omitted
        settled: Sources already resolved for sibling entries, used for pieces
            spanning file boundaries
        strategy: Which pieces make up the sample
        stop_on_mismatch: Stop at the first digest mismatch

    Returns:
        VerificationOutcome: Pieces checked, matched and skipped as unverifiable

    Raises:
        OSError: If the candidate itself cannot be read

    """
    if settled is None:
        settled = {}

    pieces = piece_index.pieces_for_file(file_entry_index)
    count = sample_size(len(pieces), fraction)
    verifiable: list[int] = []
    blocked: list[int] = []
    for piece in pieces:
        if _piece_sources(piece_index, piece, candidate, file_entry_index, settled) is None:
            blocked.append(piece)
        else:
            verifiable.append(piece)

    sample = select_pieces(verifiable, count, strategy)
    shortfall = select_pieces(blocked, count - len(sample), strategy)
    outcome = check_pieces(
        candidate,
        file_entry_index,
        piece_index,
        sample,
        reader=reader,
        settled=settled,
        stop_on_mismatch=stop_on_mismatch,
    )
    if shortfall:
        outcome = replace(
            outcome,
            pieces_skipped=outcome.pieces_skipped + len(shortfall),
            unverified=tuple(sorted(outcome.unverified + tuple(shortfall))),
        )

    logger.debug(
        "scored",
        entry=file_entry_index,
        candidate=str(candidate.path),
        checked=outcome.pieces_checked,
        matched=outcome.pieces_matched,
        skipped=outcome.pieces_skipped,
    )
    return outcome
