"""Resolve every manifest entry to at most one verified candidate file."""

from collections import defaultdict
from collections.abc import Iterable, Iterator, Mapping, Sequence
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

import structlog

from find_torrent_data.metainfo import FileEntry, TorrentManifest
from find_torrent_data.piece_index import PieceIndex
from find_torrent_data.verifier import (
    CandidateFile,
    FileReader,
    PieceReader,
    SamplingStrategy,
    VerificationOutcome,
    check_pieces,
    score,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class EntryState(Enum):
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    PADDING = "padding"


@dataclass(frozen=True)
class Resolution:
    entry_index: int
    state: EntryState
    source: Path | None = None
    outcome: VerificationOutcome | None = None

    @property
    def verification_ratio(self) -> float | None:
        if self.outcome is None or self.state is not EntryState.RESOLVED:
            return None
        return self.outcome.ratio


@dataclass(frozen=True)
class MatchResult:
    """Outcome of a matching run, one resolution per manifest entry in manifest order."""

    manifest: TorrentManifest
    resolutions: tuple[Resolution, ...]

    def __getitem__(self, entry_index: int) -> Resolution:
        return self.resolutions[entry_index]

    def __iter__(self) -> Iterator[Resolution]:
        return iter(self.resolutions)

    def __len__(self) -> int:
        return len(self.resolutions)

    def entry(self, resolution: Resolution) -> FileEntry:
        return self.manifest.files[resolution.entry_index]

    def resolved(self) -> list[Resolution]:
        return [r for r in self.resolutions if r.state is EntryState.RESOLVED]

    def unresolved(self) -> list[Resolution]:
        return [r for r in self.resolutions if r.state is EntryState.UNRESOLVED]

    def duplicates(self) -> dict[Path, list[int]]:
        """Return source paths assigned to more than one entry."""
        by_source: dict[Path, list[int]] = defaultdict(list)
        for resolution in self.resolved():
            assert resolution.source is not None
            by_source[resolution.source].append(resolution.entry_index)
        return {source: entries for source, entries in by_source.items() if len(entries) > 1}


class MatchCancelled(Exception):
    """Raised when a matching run is cancelled between two entries."""

    def __init__(self, partial: MatchResult) -> None:
        super().__init__(f"Matching cancelled after {len(partial)} of {len(partial.manifest.files)} entries")
        self.partial = partial


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


class _Progress(Protocol):
    def update(self, n: int) -> None: ...


def group_by_size(candidates: Iterable[CandidateFile]) -> dict[int, list[CandidateFile]]:
    """Group candidates by size, each group de-duplicated and sorted by path."""
    unique = {candidate.path: candidate for candidate in candidates}
    groups: dict[int, list[CandidateFile]] = defaultdict(list)
    for candidate in sorted(unique.values(), key=lambda c: str(c.path)):
        groups[candidate.size].append(candidate)
    return dict(groups)


@dataclass
class _EntryAttempt:
    resolution: Resolution
    deferred: bool = False  # every sampled piece needed an unsettled sibling


class _Matcher:
    """Assignment state of one matching run.

    A source accepted while some of its sampled pieces could not be rebuilt is
    tentative: other entries do not read it until reconcile() has checked the
    pieces it shares with its accepted neighbours.
    """

    def __init__(
        self,
        manifest: TorrentManifest,
        piece_index: PieceIndex,
        groups: dict[int, list[CandidateFile]],
        fraction: float,
        strategy: SamplingStrategy,
        reader: PieceReader,
        executor: Executor | None,
    ) -> None:
        self.manifest = manifest
        self.piece_index = piece_index
        self.groups = groups
        self.fraction = fraction
        self.strategy = strategy
        self.reader = reader
        self.executor = executor
        self.resolutions: list[Resolution] = []
        self.settled: dict[int, Path] = {}
        self.tentative: set[int] = set()
        self.rejected: defaultdict[int, set[Path]] = defaultdict(set)
        self.pending: set[int] = set()

    def _snapshot(self, trusted_only: bool) -> Mapping[int, Path]:
        if trusted_only:
            return MappingProxyType({i: path for i, path in self.settled.items() if i not in self.tentative})
        return MappingProxyType(dict(self.settled))

    def _verify(
        self,
        entry_index: int,
        candidate: CandidateFile,
        settled: Mapping[int, Path],
        pieces: Sequence[int] | None = None,
    ) -> VerificationOutcome | None:
        try:
            if pieces is not None:
                return check_pieces(
                    candidate,
                    entry_index,
                    self.piece_index,
                    pieces,
                    reader=self.reader,
                    settled=settled,
                    stop_on_mismatch=True,
                )
            return score(
                candidate,
                entry_index,
                self.piece_index,
                self.fraction,
                reader=self.reader,
                settled=settled,
                strategy=self.strategy,
                stop_on_mismatch=True,
            )
        except OSError as e:
            logger.warning("cannot read candidate", entry=entry_index, candidate=str(candidate.path), error=str(e))
            return None

    def _outcomes(
        self, entry_index: int, group: list[CandidateFile], settled: Mapping[int, Path]
    ) -> Iterator[tuple[CandidateFile, VerificationOutcome | None]]:
        if self.executor is None or len(group) < 2:
            for candidate in group:
                yield candidate, self._verify(entry_index, candidate, settled)
            return

        outcomes = self.executor.map(lambda c: self._verify(entry_index, c, settled), group)
        yield from zip(group, outcomes)

    def _accept(self, entry_index: int, source: Path, outcome: VerificationOutcome) -> Resolution:
        self.settled[entry_index] = source
        if outcome.unverified:
            self.tentative.add(entry_index)
        else:
            self.tentative.discard(entry_index)
        return Resolution(entry_index, EntryState.RESOLVED, source, outcome)

    def _source(self, entry_index: int) -> CandidateFile:
        return CandidateFile(self.settled[entry_index], self.manifest.files[entry_index].length)

    def _neighbours(self, entry_index: int) -> list[int]:
        neighbours: set[int] = set()
        for piece in self.piece_index.pieces_for_file(entry_index):
            neighbours.update(self.piece_index.files_for_piece(piece))
        neighbours.discard(entry_index)
        return sorted(neighbours - self.piece_index.padding)

    def attempt(self, entry_index: int, *, trusted_only: bool = True) -> _EntryAttempt:
        log = logger.bind(method="attempt", entry=entry_index)
        excluded = self.rejected[entry_index]
        group = [c for c in self.groups.get(self.manifest.files[entry_index].length, []) if c.path not in excluded]
        deferred = False
        best: VerificationOutcome | None = None
        for candidate, outcome in self._outcomes(entry_index, group, self._snapshot(trusted_only)):
            if outcome is None:
                continue
            if outcome.accepted:
                log.info("resolved", source=str(candidate.path), ratio=outcome.ratio, tentative=bool(outcome.unverified))
                return _EntryAttempt(self._accept(entry_index, candidate.path, outcome))
            if outcome.pieces_checked == 0:
                deferred = deferred or outcome.pieces_skipped > 0
            elif best is None or outcome.pieces_matched > best.pieces_matched:
                best = outcome
            log.debug(
                "candidate rejected",
                candidate=str(candidate.path),
                checked=outcome.pieces_checked,
                matched=outcome.pieces_matched,
                skipped=outcome.pieces_skipped,
            )
        return _EntryAttempt(Resolution(entry_index, EntryState.UNRESOLVED, outcome=best), deferred=deferred)

    def reconcile(self, cancel: CancelSignal | None) -> None:
        """Settle tentative sources and deferred entries against every accepted neighbour.

        Passes repeat in manifest order until one changes nothing. A tentative
        source that fails a piece it shares with a neighbour is rejected for its
        entry, which is then tried with its remaining candidates. When two
        tentative neighbours disagree, the earlier entry gives way.
        """
        changed = True
        while changed:
            changed = False
            for entry_index in range(len(self.resolutions)):
                if entry_index not in self.tentative and entry_index not in self.pending:
                    continue
                if cancel is not None and cancel.is_set():
                    raise MatchCancelled(MatchResult(self.manifest, tuple(self.resolutions)))
                if entry_index in self.tentative:
                    changed |= self._confirm(entry_index)
                else:
                    changed |= self._retry(entry_index)

    def _confirm(self, entry_index: int) -> bool:
        previous = self.resolutions[entry_index].outcome
        assert previous is not None
        source = self._source(entry_index)
        recheck = self._verify(entry_index, source, self._snapshot(trusted_only=False), previous.unverified)
        if recheck is None or recheck.pieces_matched < recheck.pieces_checked:
            self._release(entry_index, reject=True)
            return True
        if recheck.pieces_checked == 0:
            return False
        self.resolutions[entry_index] = self._accept(entry_index, source.path, previous.merged(recheck))
        return True

    def _retry(self, entry_index: int) -> bool:
        attempt = self.attempt(entry_index, trusted_only=False)
        self.resolutions[entry_index] = attempt.resolution
        if attempt.deferred and attempt.resolution.state is EntryState.UNRESOLVED:
            return False
        self.pending.discard(entry_index)
        return True

    def _rescore(self, entry_index: int) -> None:
        source = self._source(entry_index)
        outcome = self._verify(entry_index, source, self._snapshot(trusted_only=False))
        if outcome is None or (outcome.pieces_checked and not outcome.accepted):
            self._release(entry_index, reject=True)
        elif not outcome.accepted:
            self._release(entry_index, reject=False)
        else:
            self.resolutions[entry_index] = self._accept(entry_index, source.path, outcome)

    def _release(self, entry_index: int, *, reject: bool) -> None:
        """Take an entry's source back and re-check the neighbours that read it."""
        source = self.settled.pop(entry_index)
        self.tentative.discard(entry_index)
        if reject:
            logger.info("source failed a shared piece", entry=entry_index, source=str(source))
            self.rejected[entry_index].add(source)
            attempt = self.attempt(entry_index, trusted_only=False)
            self.resolutions[entry_index] = attempt.resolution
            if attempt.deferred:
                self.pending.add(entry_index)
        else:
            self.resolutions[entry_index] = Resolution(entry_index, EntryState.UNRESOLVED)
            self.pending.add(entry_index)

        for neighbour in self._neighbours(entry_index):
            if neighbour in self.settled:
                self._rescore(neighbour)
            elif self.manifest.files[neighbour].length in self.groups:
                self.pending.add(neighbour)


def resolve(
    manifest: TorrentManifest,
    piece_index: PieceIndex,
    candidates: Iterable[CandidateFile],
    fraction: float = 1.0,
    *,
    strategy: SamplingStrategy = SamplingStrategy.STRIDE,
    workers: int = 1,
    cancel: CancelSignal | None = None,
    progress: _Progress | None = None,
    reader: PieceReader | None = None,
) -> MatchResult:
    """Match manifest entries to candidate files.

    Entries are visited in manifest order and candidates of the entry's exact
    size are tried in path order; the first one that verifies wins. Pieces
    shared with a sibling are only rebuilt from siblings whose own pieces
    fully verified. Entries left waiting on siblings are retried once the
    other entries have settled, and sources accepted with unverified shared
    pieces are re-checked against their neighbours before the result is final.

    Args:
        manifest: Parsed torrent
        piece_index: Index built from the same manifest
        candidates: Files found on local storage
        fraction: Share of each entry's pieces to verify
        strategy: Piece sampling strategy
        workers: Verify the candidates of one size group on this many threads
        cancel: Checked between entries; raises MatchCancelled once set
        progress: Advanced by each entry's length after its first attempt
        reader: Handle cache; a private one is used when omitted

    Returns:
        MatchResult: One resolution per manifest entry

    """
    if reader is None:
        with FileReader() as own_reader:
            return resolve(
                manifest,
                piece_index,
                candidates,
                fraction,
                strategy=strategy,
                workers=workers,
                cancel=cancel,
                progress=progress,
                reader=own_reader,
            )

    by_size = group_by_size(candidates)
    executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
    try:
        matcher = _Matcher(manifest, piece_index, by_size, fraction, strategy, reader, executor)
        resolutions = matcher.resolutions
        deferred: list[int] = []

        for entry_index, entry in enumerate(manifest.files):
            if cancel is not None and cancel.is_set():
                raise MatchCancelled(MatchResult(manifest, tuple(resolutions)))

            if entry.padding:
                resolutions.append(Resolution(entry_index, EntryState.PADDING))
            elif entry.length not in by_size:
                logger.info("no candidate of matching size", entry=entry_index, length=entry.length)
                resolutions.append(Resolution(entry_index, EntryState.UNRESOLVED))
            else:
                attempt = matcher.attempt(entry_index)
                resolutions.append(attempt.resolution)
                if attempt.deferred and attempt.resolution.state is EntryState.UNRESOLVED:
                    deferred.append(entry_index)

            if progress is not None:
                progress.update(entry.length)

        while deferred:
            if cancel is not None and cancel.is_set():
                raise MatchCancelled(MatchResult(manifest, tuple(resolutions)))
            logger.debug("retrying deferred entries", entries=deferred)
            still_deferred: list[int] = []
            for entry_index in deferred:
                attempt = matcher.attempt(entry_index)
                resolutions[entry_index] = attempt.resolution
                if attempt.deferred and attempt.resolution.state is EntryState.UNRESOLVED:
                    still_deferred.append(entry_index)
            if len(still_deferred) == len(deferred):
                break
            deferred = still_deferred

        matcher.pending.update(deferred)
        matcher.reconcile(cancel)
    finally:
        if executor is not None:
            executor.shutdown()

    return MatchResult(manifest, tuple(resolutions))
