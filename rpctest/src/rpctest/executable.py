"""
Process-wide lookup of the node executable.

The path is resolved on first use and reused by every harness in the
process.
"""

from __future__ import annotations

import os
import shutil
import threading
from pathlib import Path

from loguru import logger

from rpctest.errors import ExecutableNotFoundError

DEFAULT_EXECUTABLE = "bitcoind"

_executable_lock = threading.Lock()
_executable_path: Path | None = None


def node_executable_path(override: Path | None = None) -> Path:
    """
    Return the node executable, resolving it once per process.

    Lookup order: explicit override, then DEFAULT_EXECUTABLE on PATH.
    """
    global _executable_path

    with _executable_lock:
        if _executable_path is not None:
            return _executable_path

        if override is not None:
            candidate = Path(override).expanduser()
            if not (candidate.is_file() and os.access(candidate, os.X_OK)):
                raise ExecutableNotFoundError(f"Node executable not usable: {candidate}")
        else:
            found = shutil.which(DEFAULT_EXECUTABLE)
            if found is None:
                raise ExecutableNotFoundError(f"{DEFAULT_EXECUTABLE} not found on PATH")
            candidate = Path(found)

        _executable_path = candidate.resolve()
        logger.info(f"Using node executable {_executable_path}")
        return _executable_path


def reset_executable_path() -> None:
    """Forget the cached path (tests only)"""
    global _executable_path

    with _executable_lock:
        _executable_path = None
