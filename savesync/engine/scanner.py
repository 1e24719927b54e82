from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import HashError
from .hashing import hash_file

logger = logging.getLogger("scan")


@dataclass(frozen=True)
class FileDescriptor:
    rel_path: str
    digest: str
    size: int
    mtime: float
    full_path: Path


def safe_rel_path(value: str) -> str:
    return str(Path(value).as_posix()).lstrip("/")


def list_groups(root: Path) -> List[str]:
    base = Path(root)
    if not base.is_dir():
        return []
    return sorted(
        entry.name
        for entry in os.scandir(base)
        if entry.is_dir(follow_symlinks=False) and not entry.name.startswith(".")
    )


def _candidates(base: Path, extensions: Iterable[str]) -> List[Tuple[str, Path]]:
    wanted = {ext.lower() for ext in extensions}
    out: List[Tuple[str, Path]] = []
    for group in list_groups(base):
        group_dir = base / group
        try:
            entries = list(os.scandir(group_dir))
        except OSError as e:
            logger.warning("group_unreadable %s: %s", group_dir, e)
            continue
        for entry in entries:
            if not entry.is_file(follow_symlinks=False):
                continue
            if Path(entry.name).suffix.lower() not in wanted:
                continue
            out.append((f"{group}/{entry.name}", Path(entry.path)))
    return out


def _describe(rel: str, full: Path) -> Optional[FileDescriptor]:
    try:
        digest = hash_file(full)
        st = full.stat()
    except (HashError, OSError) as e:
        logger.warning("file_skipped %s: %s", rel, e)
        return None
    return FileDescriptor(rel_path=rel, digest=digest, size=st.st_size, mtime=st.st_mtime, full_path=full)


def scan_tree(root: Path, extensions: Iterable[str], workers: int = 1) -> Dict[str, FileDescriptor]:
    """Map "group/file.ext" -> FileDescriptor for every recognized file under root.

    Only immediate subdirectories are groups and only their direct children are
    considered. Files that cannot be hashed are left out of the map.
    """
    base = Path(root)
    if not base.is_dir():
        return {}

    candidates = _candidates(base, extensions)
    if workers > 1 and len(candidates) > 1:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scan") as pool:
            described = list(pool.map(lambda item: _describe(*item), candidates))
    else:
        described = [_describe(rel, full) for rel, full in candidates]

    return {d.rel_path: d for d in described if d is not None}
