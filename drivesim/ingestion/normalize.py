"""
Telemetry sample normalization

The producer (browser simulation) sends loosely-typed key/value maps.
Missing or unparseable fields fall back to neutral values and bounded
fields are clamped, so a sample is never rejected for imprecision.

Accepted timestamp forms: datetime, ISO-8601 string, or epoch number
(values above 1e11 are read as milliseconds, as produced by Date.now()).
Anything else is stamped with the server clock.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

# Producer keys that are accepted as aliases of the stored field names
FIELD_ALIASES = {
    'steering': 'steering_angle',
    'brake': 'brake_force',
    'throttle': 'throttle_force',
}

EPOCH_MS_CUTOFF = 1e11

# Reverse (-1) through top gear; anything else is treated as missing
GEAR_RANGE = (-1, 10)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(result) or math.isinf(result):
        return default
    return result


def _as_int(value: Any, default: int, low: int, high: int) -> int:
    result = int(_as_float(value, float(default)))
    if not low <= result <= high:
        return default
    return result


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Any, now: Optional[datetime] = None) -> datetime:
    """Best-effort conversion of a producer timestamp to a naive UTC datetime"""
    fallback = now or datetime.utcnow()

    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, datetime):
        return _to_naive_utc(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > EPOCH_MS_CUTOFF else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return fallback
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return fallback
        try:
            return parse_timestamp(float(text), fallback)
        except ValueError:
            pass
        try:
            return _to_naive_utc(datetime.fromisoformat(text.replace('Z', '+00:00')))
        except ValueError:
            return fallback
    return fallback


def normalize_sample(session_id: int,
                     raw: Optional[Mapping[str, Any]],
                     now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Convert one raw producer sample into a storable telemetry row

    Args:
        session_id: Owning session
        raw: Producer key/value map (None or non-mapping is treated as empty)
        now: Timestamp to use when the sample carries none

    Returns:
        Row dict with every TelemetrySampleModel column except id
    """
    data: Dict[str, Any] = dict(raw) if isinstance(raw, Mapping) else {}
    for alias, field in FIELD_ALIASES.items():
        if field not in data and alias in data:
            data[field] = data[alias]

    position = data.get('position')
    if isinstance(position, Mapping):
        for axis in ('x', 'y', 'z'):
            data.setdefault(f'position_{axis}', position.get(axis))

    return {
        'session_id': session_id,
        'timestamp': parse_timestamp(data.get('timestamp'), now),
        'speed': max(0.0, _as_float(data.get('speed'))),
        'steering_angle': clamp(_as_float(data.get('steering_angle')), -1.0, 1.0),
        'brake_force': clamp(_as_float(data.get('brake_force')), 0.0, 1.0),
        'throttle_force': clamp(_as_float(data.get('throttle_force')), 0.0, 1.0),
        'gear': _as_int(data.get('gear'), 1, *GEAR_RANGE),
        'rpm': _as_float(data.get('rpm')),
        'lane_position': clamp(_as_float(data.get('lane_position')), -1.0, 1.0),
        'position_x': _as_float(data.get('position_x')),
        'position_y': _as_float(data.get('position_y')),
        'position_z': _as_float(data.get('position_z')),
        'collision': _as_bool(data.get('collision', False)),
    }
