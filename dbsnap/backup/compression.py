"""
Compression handlers for dump files.

Dumps are written either as-is or through a gzip stream. Nothing here
buffers a whole dump in memory: writers and readers work chunk by chunk.
"""

import gzip
import os
import zlib
from typing import BinaryIO, Iterator

CHUNK_SIZE = 64 * 1024


class CompressionError(Exception):
    """Raised when a compressed file fails its integrity test."""
    pass


def open_output_stream(path: str, compress: bool, compression_level: int = 6) -> BinaryIO:
    """
    Open a binary output stream for a dump file.

    Args:
        path: Destination file path
        compress: Wrap the file in a gzip stream
        compression_level: gzip level (1-9)

    Returns:
        Writable binary file object (use as a context manager)
    """
    if compress:
        return gzip.open(path, 'wb', compresslevel=compression_level)
    return open(path, 'wb')


def iter_file_chunks(path: str, decompress: bool = False, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """
    Yield the contents of a file in chunks, decompressing gzip if requested.

    Raises:
        CompressionError: If the gzip stream is corrupted
    """
    opener = gzip.open if decompress else open
    try:
        with opener(path, 'rb') as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk
    except (EOFError, zlib.error, gzip.BadGzipFile) as e:
        raise CompressionError(f"Corrupted gzip stream in {os.path.basename(path)}: {e}")


def check_gzip_integrity(path: str) -> None:
    """
    Read a gzip file end to end, discarding output (like ``gzip -t``).

    Raises:
        CompressionError: If the container is truncated or corrupted
        OSError: If the file cannot be read
    """
    for _ in iter_file_chunks(path, decompress=True):
        pass


def get_file_size(path: str) -> int:
    return os.path.getsize(path)
