"""Map pieces of the virtual concatenated-file space onto per-file segments."""

from dataclasses import dataclass

from find_torrent_data.metainfo import TorrentManifest


@dataclass(frozen=True)
class Segment:
    """The part of one piece that lives in one file."""

    file_index: int
    offset: int  # within the file
    length: int

    @property
    def stop(self) -> int:
        return self.offset + self.length


@dataclass(frozen=True)
class PieceIndex:
    """Piece-to-file and file-to-piece lookups derived from a manifest."""

    piece_length: int
    total_length: int
    piece_hashes: tuple[bytes, ...]
    file_ranges: tuple[tuple[int, int], ...]
    piece_segments: tuple[tuple[Segment, ...], ...]
    padding: frozenset[int] = frozenset()

    @property
    def num_pieces(self) -> int:
        return len(self.piece_hashes)

    def segments(self, piece: int) -> tuple[Segment, ...]:
        return self.piece_segments[piece]

    def piece_size(self, piece: int) -> int:
        if self.num_pieces == 0:
            return 0
        if piece < self.num_pieces - 1:
            return self.piece_length
        remainder = self.total_length % self.piece_length
        return remainder if remainder else self.piece_length

    def pieces_for_file(self, file_index: int) -> range:
        """Return the pieces overlapping a file, empty for zero-length files."""
        start, end = self.file_ranges[file_index]
        if start == end:
            return range(0)
        return range(start // self.piece_length, (end - 1) // self.piece_length + 1)

    def files_for_piece(self, piece: int) -> list[int]:
        return [segment.file_index for segment in self.piece_segments[piece]]


def build_piece_index(manifest: TorrentManifest) -> PieceIndex:
    """Derive the piece index for a validated manifest.

    Single pass over the files with a running offset; every non-empty file
    contributes one segment, clipped to its own extent, to each piece it touches.
    """
    piece_length = manifest.piece_length
    num_pieces = manifest.num_pieces
    segments: list[list[Segment]] = [[] for _ in range(num_pieces)]
    file_ranges: list[tuple[int, int]] = []
    padding: set[int] = set()

    offset = 0
    for file_index, entry in enumerate(manifest.files):
        start = offset
        end = start + entry.length
        file_ranges.append((start, end))
        if entry.padding:
            padding.add(file_index)

        if entry.length:
            first = start // piece_length
            last = (end - 1) // piece_length
            for piece in range(first, last + 1):
                piece_start = piece * piece_length
                overlap_start = max(start, piece_start)
                overlap_end = min(end, piece_start + piece_length)
                segments[piece].append(Segment(file_index, overlap_start - start, overlap_end - overlap_start))

        offset = end

    return PieceIndex(
        piece_length=piece_length,
        total_length=offset,
        piece_hashes=manifest.piece_hashes,
        file_ranges=tuple(file_ranges),
        piece_segments=tuple(tuple(piece_segments) for piece_segments in segments),
        padding=frozenset(padding),
    )
