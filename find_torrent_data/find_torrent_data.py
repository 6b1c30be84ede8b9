#!/usr/bin/env python3
"""Find the data of a torrent on local storage and link it into place.

This module ties the pieces together: it reads the .torrent file, scans the
search directories for files of matching size, verifies them against the piece
hashes and creates a directory tree of links mirroring the torrent's layout, so
that content whose original structure was lost can be seeded again without
copying it.
"""

import os
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TypeAlias, runtime_checkable

import structlog
from tqdm import tqdm

from find_torrent_data.linker import LinkMode, create_link, plan_links
from find_torrent_data.matcher import CancelSignal, MatchCancelled, MatchResult, resolve
from find_torrent_data.metainfo import TorrentError, read_manifest
from find_torrent_data.piece_index import build_piece_index
from find_torrent_data.scanner import iter_candidates
from find_torrent_data.verifier import FileReader, SamplingStrategy

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@runtime_checkable
class _ProgressBar(Protocol):
    """Protocol for progress bar implementations."""

    def update(self, n: int) -> None:
        """Update progress by n bytes."""
        ...

    def write(self, msg: str) -> None:
        """Write a message."""
        ...

    def __enter__(self) -> "_ProgressBar":
        """Context manager entry."""
        ...

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        ...


# Simple progress indicator for --no-progress option
class SimpleProgress:
    def __init__(self, total: int) -> None:
        self.total = total
        self.current = 0

    def __enter__(self) -> "SimpleProgress":
        return self

    def __exit__(self, *args: object) -> None:
        _ = args  # Mark as intentionally unused
        pass

    def update(self, n: int) -> None:
        self.current += n

    def write(self, msg: str) -> None:
        print(msg)


# Constants
KB = 1024

StrPath: TypeAlias = str | os.PathLike[str]


def human_readable_size(size: int) -> str:
    """Convert size in bytes to human readable format.

    Args:
        size: Size in bytes

    Returns:
        str: Human readable size string (e.g., "1.5 MB")

    """
    size_float = float(size)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_float) < KB:
            return f"{size_float:3.1f} {unit}"
        size_float /= KB
    return f"{size_float:.1f} PB"


@dataclass
class RunOptions:
    """Options for locating and linking torrent data."""

    output: Path = field(default_factory=lambda: Path("."))
    link_mode: LinkMode = LinkMode.HARDLINK
    fraction: float = 1.0
    strategy: SamplingStrategy = SamplingStrategy.STRIDE
    follow_symlinks: bool = False
    workers: int = 1
    dry_run: bool = False
    no_progress: bool = False


@dataclass
class RunSummary:
    """Counts reported at the end of a run."""

    entries: int = 0
    resolved: int = 0
    unresolved: int = 0
    linked: int = 0
    link_errors: int = 0
    duplicates: int = 0
    cancelled: bool = False
    failed: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled and self.unresolved == 0 and self.link_errors == 0


def find_torrent_data(
    torrent_path: StrPath,
    search_roots: Sequence[StrPath],
    options: RunOptions | None = None,
    cancel: CancelSignal | None = None,
) -> RunSummary:
    """Locate the files of a torrent and link them below the output directory.

    Args:
        torrent_path: Path to the .torrent file
        search_roots: Directories to search for candidate files
        options: Run options (if None, uses defaults)
        cancel: Optional signal checked between manifest entries

    Returns:
        RunSummary: What was resolved and linked; ``failed`` is set when the
        torrent could not be read

    """
    if options is None:
        options = RunOptions()
    summary = RunSummary()
    try:
        manifest = read_manifest(torrent_path)
    except TorrentError as e:
        print(f"Error: {e}", file=sys.stderr)
        summary.failed = True
        return summary

    piece_index = build_piece_index(manifest)
    summary.entries = len(manifest.files)
    log = logger.bind(torrent=manifest.name)
    log.info("loaded torrent", files=len(manifest.files), pieces=manifest.num_pieces, size=manifest.total_length)

    wanted_sizes = {entry.length for entry in manifest.files if not entry.padding}
    candidates = list(iter_candidates(search_roots, follow_symlinks=options.follow_symlinks, sizes=wanted_sizes))
    log.info("collected candidates", candidates=len(candidates))

    if options.no_progress:
        pbar: _ProgressBar = SimpleProgress(manifest.total_length)
    else:
        pbar = tqdm(
            total=manifest.total_length,
            unit="B",
            unit_scale=True,
            unit_divisor=1024,
            desc=f"Matching {manifest.name[:30]}",
        )

    with pbar, FileReader() as reader:
        try:
            result = resolve(
                manifest,
                piece_index,
                candidates,
                options.fraction,
                strategy=options.strategy,
                workers=options.workers,
                cancel=cancel,
                progress=pbar,
                reader=reader,
            )
        except MatchCancelled as e:
            pbar.write(f"\n{e}")
            summary.cancelled = True
            result = e.partial

    _link_resolved(result, options, summary)
    if summary.cancelled:
        return summary

    _report_unresolved(result, summary)
    return summary


def _link_resolved(result: MatchResult, options: RunOptions, summary: RunSummary) -> None:
    resolved = result.resolved()
    summary.resolved = len(resolved)
    summary.duplicates = len(result.duplicates())
    for source, entries in result.duplicates().items():
        logger.warning("source matched by several entries", source=str(source), entries=entries)

    for link in plan_links(result, options.output):
        prefix = "[DRY RUN] " if options.dry_run else ""
        print(f"{prefix}{link.target} <= {link.source}")
        try:
            if create_link(link, options.link_mode, dry_run=options.dry_run):
                summary.linked += 1
        except OSError as exc:
            print(f"Failed to link {link.target}: {exc}", file=sys.stderr)
            summary.link_errors += 1


def _report_unresolved(result: MatchResult, summary: RunSummary) -> None:
    unresolved = result.unresolved()
    summary.unresolved = len(unresolved)
    if unresolved:
        print("\nThe following files were not found:")
        for resolution in unresolved:
            entry = result.entry(resolution)
            print(f"  - {entry.relative_path} ({human_readable_size(entry.length)})")

    resolved_bytes = sum(result.entry(r).length for r in result.resolved())
    print(
        f"\nResolved {summary.resolved} of {summary.resolved + summary.unresolved} files "
        f"({human_readable_size(resolved_bytes)}), linked {summary.linked}"
        + (f", {summary.link_errors} link error(s)" if summary.link_errors else "")
    )
