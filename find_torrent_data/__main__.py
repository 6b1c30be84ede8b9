#!/usr/bin/env python3
"""Command-line entry point for the find-torrent-data package.

This module provides a command-line interface for locating the files of a
torrent on local storage and linking them into the torrent's layout.
"""

from .cli import main

if __name__ == "__main__":
    main()
