#!/usr/bin/env python3
"""Command-line interface for find-torrent-data."""

# Standard library imports
import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

# Third-party imports
import structlog

# Local application imports
from find_torrent_data.find_torrent_data import RunOptions, find_torrent_data
from find_torrent_data.linker import LinkMode
from find_torrent_data.verifier import SamplingStrategy, clamp_fraction

EXIT_UNRESOLVED = 2


def _fraction(value: str) -> float:
    try:
        return clamp_fraction(float(value))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid fraction: {value!r}") from e


def _workers(value: str) -> int:
    try:
        workers = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid worker count: {value!r}") from e
    if workers < 1:
        raise argparse.ArgumentTypeError("worker count must be at least 1")
    return workers


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="find-torrent-data",
        description="Search for files that are part of a torrent and prepare a directory with links to these files",
    )
    parser.add_argument("torrent_file", help="Path to the .torrent file")
    parser.add_argument("-i", "--input", action="append", required=True, metavar="DIR", help="Add search directory (repeatable)")
    parser.add_argument("-o", "--output", default=".", help="Output directory (default: current directory)")
    parser.add_argument("-s", "--symlinks", action="store_true", help="Create symbolic links instead of hard links")
    parser.add_argument("--follow-symlinks", action="store_true", help="Follow symlinks in search directories")
    parser.add_argument(
        "-f",
        "--hash-fraction",
        type=_fraction,
        default=1.0,
        metavar="FRACTION",
        help="Fraction of each file's pieces to verify, between 0 and 1 (default: 1.0)",
    )
    parser.add_argument(
        "--sample",
        choices=[s.value for s in SamplingStrategy],
        default=SamplingStrategy.STRIDE.value,
        help="Which pieces to verify when the fraction is below 1: spread evenly (stride) or the leading ones (prefix)",
    )
    parser.add_argument("-j", "--workers", type=_workers, default=1, help="Verify candidates of equal size on N threads")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be linked without creating links")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Log more details (-vv for debug output)")
    return parser.parse_args()


def configure_logging(verbosity: int) -> None:
    """Send structured log events to stderr, filtered by verbosity."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _install_cancel_handler(cancel: threading.Event) -> object:
    """First Ctrl-C stops matching after the current file, a second one aborts."""

    def handler(signum: int, frame: object) -> None:
        _ = signum, frame
        if cancel.is_set():
            raise KeyboardInterrupt
        print("\nCancelling after the current file, press Ctrl-C again to abort", file=sys.stderr)
        cancel.set()

    return signal.signal(signal.SIGINT, handler)


def main() -> None:
    """Parse programm arguments and run corresponding action."""
    try:
        args = parse_args()
        configure_logging(args.verbose)
        torrent_path = Path(args.torrent_file)

        if not torrent_path.exists():
            print(f"Error: Torrent file '{torrent_path}' not found", file=sys.stderr)
            sys.exit(1)

        options = RunOptions(
            output=Path(args.output),
            link_mode=LinkMode.SYMLINK if args.symlinks else LinkMode.HARDLINK,
            fraction=args.hash_fraction,
            strategy=SamplingStrategy(args.sample),
            follow_symlinks=args.follow_symlinks,
            workers=args.workers,
            dry_run=args.dry_run,
            no_progress=args.no_progress,
        )
        cancel = threading.Event()
        previous_handler = _install_cancel_handler(cancel)
        try:
            summary = find_torrent_data(torrent_path, args.input, options, cancel=cancel)
        finally:
            signal.signal(signal.SIGINT, previous_handler)

        if summary.failed or summary.cancelled:
            sys.exit(1)
        if summary.unresolved:
            sys.exit(EXIT_UNRESOLVED)
        sys.exit(0)

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
