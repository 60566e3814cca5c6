from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .config import settings
from .schemas import ConvergenceResult

logger = logging.getLogger(__name__)


def state_path(path: Path | str | None = None) -> Path:
    return Path(path or settings.state_file)


def save_result(result: ConvergenceResult, path: Path | str | None = None) -> Path:
    target = state_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_suffix(target.suffix + ".tmp")
    tmp.write_text(result.model_dump_json(indent=2), encoding="utf-8")
    tmp.replace(target)
    logger.debug("Saved run result to %s", target)
    return target


def load_result(path: Path | str | None = None) -> Optional[ConvergenceResult]:
    """Last saved result, or None when there is none (or it is unreadable)."""
    target = state_path(path)
    if not target.exists():
        return None
    try:
        return ConvergenceResult.model_validate_json(target.read_text(encoding="utf-8"))
    except ValidationError as e:
        logger.warning("Ignoring unreadable state file %s: %s", target, e)
        return None
