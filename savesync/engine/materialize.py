from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Sequence

logger = logging.getLogger("materialize")


def pin_directory(path: Path, command: Sequence[str], timeout_sec: int = 30) -> bool:
    """Ask the cloud client to keep `path` downloaded.

    `command` is an argv template where "{path}" is substituted. Never raises:
    a failed or missing pin only means files may be fetched on demand.
    """
    if not command:
        return False
    argv = [part.replace("{path}", str(path)) for part in command]
    try:
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=timeout_sec, check=False)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("pin_failed path=%s error=%s", path, e)
        return False
    if proc.returncode != 0:
        logger.warning(
            "pin_failed path=%s code=%s stderr=%s",
            path,
            proc.returncode,
            (proc.stderr or proc.stdout or "").strip(),
        )
        return False
    logger.debug("pinned path=%s", path)
    return True
