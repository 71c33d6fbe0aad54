"""Desired config down to the device, telemetry up to the device document."""

import json
import logging
import math
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pillsync.documents.store import get_device, merge_device
from pillsync.triggers.bus import Change

if TYPE_CHECKING:
    from pillsync.triggers.context import HandlerContext

logger = logging.getLogger(__name__)

# Accepted battery keys, in priority order
BATTERY_KEYS = ("battery_level", "battery", "batteryPercent", "battery_percentage")

_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def config_path(device_id: str) -> str:
    return f"devices/{device_id}/config"


def _canonical(value: Any) -> str:
    return json.dumps(value or None, sort_keys=True, default=str)


def on_desired_config_updated(ctx: "HandlerContext", change: Change) -> None:
    """``devices/{device_id}`` document updated: push a changed desired config."""
    device_id = change.params["device_id"]
    before_cfg = (change.before or {}).get("desired_config")
    after_cfg = (change.after or {}).get("desired_config")
    if _canonical(before_cfg) == _canonical(after_cfg):
        return

    # update, not set: keys only the device writes survive
    ctx.tree.update(config_path(device_id), after_cfg or {})
    logger.info("Mirrored desired config to realtime for %s", device_id)


def _clamp_percent(value: float) -> int:
    # Half-up rounding keeps 72.5 -> 73
    return int(min(100, max(0, math.floor(value + 0.5))))


def normalize_battery(raw: Any) -> int | None:
    """Normalize a battery reading to an integer percentage.

    Values above 1 are already percentages; values at or below 1 are
    fractions. Both are clamped to [0, 100]. Numeric strings are accepted;
    anything else yields None.
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        cleaned = _NON_NUMERIC.sub("", raw)
        try:
            value = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    if value > 1:
        return _clamp_percent(value)
    return _clamp_percent(value * 100)


def build_state_snapshot(state: dict[str, Any]) -> dict[str, Any]:
    raw = next((state[key] for key in BATTERY_KEYS if state.get(key) is not None), None)
    return {
        "battery": normalize_battery(raw),
        "batteryRaw": {key: state.get(key) for key in BATTERY_KEYS},
        "status": state.get("current_status"),
        "lastSeen": state.get("last_seen"),
    }


def on_device_state_updated(ctx: "HandlerContext", change: Change) -> None:
    """``devices/{device_id}/state`` written: mirror telemetry to the document."""
    device_id = change.params["device_id"]
    state = change.after
    if not isinstance(state, dict):
        logger.debug("Device %s state removed or not a mapping; nothing to mirror", device_id)
        return

    snapshot = build_state_snapshot(state)
    with ctx.session() as session:
        device = get_device(session, device_id)
        current = dict(device.last_known_state or {}) if device is not None else {}
        current.pop("updatedAt", None)
        if device is not None and current == snapshot:
            return
        merge_device(
            session,
            device_id,
            last_known_state={**snapshot, "updatedAt": datetime.now(UTC).isoformat()},
        )
    logger.info("Mirrored device state for %s (battery=%s)", device_id, snapshot["battery"])
