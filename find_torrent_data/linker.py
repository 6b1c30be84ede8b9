"""Materialize the torrent's directory layout as links to resolved files."""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog

from find_torrent_data.matcher import MatchResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class LinkMode(str, Enum):
    SYMLINK = "symlink"
    HARDLINK = "hardlink"


@dataclass(frozen=True)
class Link:
    source: Path
    target: Path


def plan_links(result: MatchResult, output_root: Path) -> list[Link]:
    """Return one link per resolved entry, targets laid out as in the torrent."""
    links = []
    for resolution in result.resolved():
        assert resolution.source is not None
        target = output_root.joinpath(*result.entry(resolution).path)
        links.append(Link(source=resolution.source, target=target))
    return links


def _same_file(a: Path, b: Path) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False


def create_link(link: Link, mode: LinkMode = LinkMode.HARDLINK, dry_run: bool = False) -> bool:
    """Create a link, its parent directories included.

    Returns:
        bool: True if a link was created (or would be, in dry-run mode), False
        if the target already refers to the source

    Raises:
        FileExistsError: If the target exists and is a different file
        OSError: If the link cannot be created

    """
    if os.path.lexists(link.target):
        if _same_file(link.source, link.target):
            logger.debug("link already in place", target=str(link.target))
            return False
        raise FileExistsError(f"Target already exists: {link.target}")

    if dry_run:
        return True

    link.target.parent.mkdir(parents=True, exist_ok=True)
    if mode is LinkMode.SYMLINK:
        os.symlink(link.source, link.target)
    else:
        os.link(link.source, link.target)
    logger.debug("linked", mode=mode.value, source=str(link.source), target=str(link.target))
    return True
