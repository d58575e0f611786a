"""
Processing units.

A processing unit is any callable taking the file path and returning an
optional note. It signals failure by raising: ``TransientProcessingError``
for retryable problems, ``PermanentProcessingError`` for bad input. Units
may be re-run for the same file after a crash, so they must be idempotent.
"""

from __future__ import annotations

import errno
import importlib
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from app.utils.helpers import format_bytes, hash_file

from ..errors import PermanentProcessingError, TransientProcessingError

ProcessingUnit = Callable[[Path], Optional[str]]

_TRANSIENT_ERRNOS = {errno.EAGAIN, errno.EBUSY, errno.EWOULDBLOCK, errno.ETXTBSY}


def is_transient(exc: BaseException) -> bool:
    """
    Classify a unit failure.

    Explicit ``TransientProcessingError`` / ``PermanentProcessingError`` win;
    otherwise busy or temporarily unavailable resources are transient and
    everything else is permanent.
    """
    if isinstance(exc, TransientProcessingError):
        return True
    if isinstance(exc, PermanentProcessingError):
        return False
    if isinstance(exc, (BlockingIOError, InterruptedError, TimeoutError)):
        return True
    if isinstance(exc, OSError) and exc.errno in _TRANSIENT_ERRNOS:
        return True
    return False


def describe_error(exc: BaseException) -> str:
    """Text stored in the record's note for a failure."""
    message = str(exc).strip()
    return message or exc.__class__.__name__


def checksum_file(path: Path) -> Optional[str]:
    """
    Default unit: verify the file is readable and non-empty, then hash it.

    Returns None so successful records keep an empty note.
    """
    try:
        size = path.stat().st_size
    except FileNotFoundError as exc:
        raise PermanentProcessingError("file not found") from exc
    except PermissionError as exc:
        raise PermanentProcessingError(f"permission denied: {path.name}") from exc

    if size == 0:
        raise PermanentProcessingError("empty file")

    digest = hash_file(path)
    logger.info(f"Processed {path.name} ({format_bytes(size)}) sha256={digest[:12]}")
    return None


def load_unit(target: str) -> ProcessingUnit:
    """
    Import a unit from ``"package.module:attribute"``.

    Raises:
        ValueError: if ``target`` is malformed or does not name a callable
    """
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Processing unit must look like 'module:callable', got {target!r}")

    module = importlib.import_module(module_name)
    unit = getattr(module, attribute)
    if not callable(unit):
        raise ValueError(f"Processing unit {target!r} is not callable")

    logger.info(f"Using processing unit {target}")
    return unit
