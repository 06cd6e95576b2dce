"""Load optional board configuration from `.taskboard/config.yaml`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from .constants import (
    CONFIG_FILE,
    CONFLICT_TOLERANCE_ENV,
    CONFLICT_TOLERANCE_MS,
    DEFAULT_DRAG_DISTANCE_PX,
    DEFAULT_ELEVATED_ROLES,
    DEFAULT_HIGH_PRIORITY,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error


def load_board_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional board config file.

    Args:
        project_dir: Directory holding the `.taskboard/` state directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def get_elevated_roles(config: dict[str, Any]) -> frozenset[str]:
    """Return the actor roles that carry elevated privilege."""
    raw = _get_nested(config, "constraints", "elevated_roles")
    if isinstance(raw, list) and raw:
        return frozenset(str(role).strip().lower() for role in raw if str(role).strip())
    return frozenset(DEFAULT_ELEVATED_ROLES)


def get_high_priority(config: dict[str, Any]) -> str:
    raw = _get_nested(config, "constraints", "high_priority")
    if isinstance(raw, str) and raw.strip():
        return raw.strip().lower()
    return DEFAULT_HIGH_PRIORITY


def get_drag_distance_px(config: dict[str, Any]) -> int:
    raw = _get_nested(config, "drag", "min_distance_px")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_DRAG_DISTANCE_PX
    return value if value >= 0 else DEFAULT_DRAG_DISTANCE_PX


def get_conflict_tolerance_ms(config: dict[str, Any]) -> int:
    """Resolve the conflict tolerance.

    The environment variable wins over the config file; both fall back to
    :data:`CONFLICT_TOLERANCE_MS`. Negative or unparsable values are ignored.
    """
    for raw in (os.getenv(CONFLICT_TOLERANCE_ENV), _get_nested(config, "conflict", "tolerance_ms")):
        if raw is None or raw == "":
            continue
        try:
            value = int(raw)
        except (TypeError, ValueError):
            continue
        if value >= 0:
            return value
    return CONFLICT_TOLERANCE_MS
