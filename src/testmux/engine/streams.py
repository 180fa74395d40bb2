"""Non-blocking reads from worker streams."""

from __future__ import annotations

import os
from typing import IO


def read_available(stream: IO[bytes], size: int) -> bytes | None:
    """Read up to ``size`` bytes from a non-blocking stream.

    Args:
        stream: A stream backed by a file descriptor.
        size: Maximum number of bytes to read.

    Returns:
        The bytes read, ``b""`` at end of file, or None if no data is
        available right now.
    """
    try:
        return os.read(stream.fileno(), size)
    except BlockingIOError:
        return None
