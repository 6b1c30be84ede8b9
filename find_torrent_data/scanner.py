"""Enumerate candidate files below one or more search roots."""

import os
from collections.abc import Collection, Iterable, Iterator
from pathlib import Path

import structlog

from find_torrent_data.verifier import CandidateFile

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def _walk(directory: Path, follow_symlinks: bool, visited: set[tuple[int, int]]) -> Iterator[CandidateFile]:
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        logger.warning("cannot list directory", path=str(directory), error=str(e))
        return

    for entry in entries:
        try:
            if entry.is_symlink() and not follow_symlinks:
                logger.debug("skipping symlink", path=entry.path)
                continue
            if entry.is_dir(follow_symlinks=follow_symlinks):
                st = entry.stat(follow_symlinks=follow_symlinks)
                key = (st.st_dev, st.st_ino)
                if key in visited:
                    logger.debug("skipping directory loop", path=entry.path)
                    continue
                visited.add(key)
                yield from _walk(Path(entry.path), follow_symlinks, visited)
            elif entry.is_file(follow_symlinks=follow_symlinks):
                yield CandidateFile(path=Path(entry.path), size=entry.stat(follow_symlinks=follow_symlinks).st_size)
        except OSError as e:
            logger.warning("cannot stat file", path=entry.path, error=str(e))


def iter_candidates(
    roots: Iterable[str | os.PathLike[str]],
    *,
    follow_symlinks: bool = False,
    sizes: Collection[int] | None = None,
) -> Iterator[CandidateFile]:
    """Yield regular files below each root, with absolute paths.

    Args:
        roots: Search directories, walked in the given order; a root may also be a file
        follow_symlinks: Descend into and report files behind symbolic links
        sizes: If given, only files with one of these sizes are yielded

    """
    for root in roots:
        root_path = Path(root).absolute()
        log = logger.bind(root=str(root_path))
        if root_path.is_file():
            candidates: Iterator[CandidateFile] = iter([CandidateFile(path=root_path, size=root_path.stat().st_size)])
        elif root_path.is_dir():
            st = root_path.stat()
            candidates = _walk(root_path, follow_symlinks, {(st.st_dev, st.st_ino)})
        else:
            log.warning("search root does not exist")
            continue

        found = 0
        for candidate in candidates:
            if sizes is not None and candidate.size not in sizes:
                continue
            found += 1
            yield candidate
        log.info("scanned", candidates=found)
