"""Expansion of user-supplied paths into the ordered list of test files."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from testmux._internal.errors import DiscoveryError

if TYPE_CHECKING:
    from collections.abc import Iterable

DEFAULT_PATTERN = "test_*.py"


def discover(paths: Iterable[str | Path], pattern: str = DEFAULT_PATTERN) -> list[str]:
    """Resolve files and directories into absolute test file paths.

    Files are kept as given. Directories are searched recursively for
    ``pattern`` and their matches sorted. Duplicates are dropped, keeping
    the first occurrence.

    Args:
        paths: Files and directories to search.
        pattern: Glob applied inside directories.

    Returns:
        Absolute paths in dispatch order.

    Raises:
        DiscoveryError: If a path does not exist.
    """
    found: dict[str, None] = {}
    for entry in paths:
        path = Path(entry)
        if not path.exists():
            msg = f"Test path not found: {path}"
            raise DiscoveryError(msg)

        if path.is_dir():
            for match in sorted(path.rglob(pattern)):
                if match.is_file():
                    found.setdefault(str(match.resolve()), None)
        else:
            found.setdefault(str(path.resolve()), None)

    return list(found)
