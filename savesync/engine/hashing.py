import hashlib
from pathlib import Path

from .errors import HashError

CHUNK_SIZE = 1024 * 64


def hash_file(path: Path) -> str:
    h = hashlib.sha256()
    try:
        with Path(path).open("rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                h.update(chunk)
    except OSError as e:
        raise HashError(f"hash_failed: {path}: {e}") from e
    return h.hexdigest()
