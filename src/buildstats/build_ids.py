"""Loading and saving lists of build IDs.

Build ID files hold one ID per line, UTF-8 encoded.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable


def load_build_ids(path: Path) -> list[str]:
    """Read build IDs from a file.

    Args:
        path: File with one build ID per line.

    Returns:
        The IDs in file order. Blank lines are skipped.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    with open(path, encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def save_build_ids(path: Path, build_ids: Iterable[str]) -> int:
    """Write build IDs to a file, one per line.

    Creates parent directories as needed.

    Args:
        path: Destination file; overwritten if it exists.
        build_ids: The IDs to write, in order.

    Returns:
        The number of IDs written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(path, "w", encoding="utf-8") as f:
        for build_id in build_ids:
            f.write(f"{build_id}\n")
            count += 1
    return count
