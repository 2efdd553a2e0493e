"""Tests for producer sample normalization."""

from datetime import datetime, timezone

from drivesim.ingestion.normalize import normalize_sample, parse_timestamp

NOW = datetime(2025, 10, 30, 12, 0, 0)


# ---------------------------------------------------------------------------
# Clamping and defaults
# ---------------------------------------------------------------------------


def test_out_of_range_inputs_are_clamped() -> None:
    """steering 5 is stored as 1.0 and brake -3 as 0.0."""
    row = normalize_sample(1, {"steering_angle": 5, "brake_force": -3, "throttle_force": 2.5,
                               "lane_position": -4, "speed": -12}, now=NOW)
    assert row["steering_angle"] == 1.0
    assert row["brake_force"] == 0.0
    assert row["throttle_force"] == 1.0
    assert row["lane_position"] == -1.0
    assert row["speed"] == 0.0


def test_missing_fields_get_neutral_defaults() -> None:
    row = normalize_sample(7, {}, now=NOW)
    assert row == {
        "session_id": 7,
        "timestamp": NOW,
        "speed": 0.0,
        "steering_angle": 0.0,
        "brake_force": 0.0,
        "throttle_force": 0.0,
        "gear": 1,
        "rpm": 0.0,
        "lane_position": 0.0,
        "position_x": 0.0,
        "position_y": 0.0,
        "position_z": 0.0,
        "collision": False,
    }


def test_garbage_values_do_not_reject_the_sample() -> None:
    row = normalize_sample(1, {"speed": "fast", "gear": None, "rpm": float("nan"),
                               "collision": "true"}, now=NOW)
    assert row["speed"] == 0.0
    assert row["gear"] == 1
    assert row["rpm"] == 0.0
    assert row["collision"] is True


def test_none_sample_is_treated_as_empty() -> None:
    row = normalize_sample(3, None, now=NOW)
    assert row["speed"] == 0.0
    assert row["timestamp"] == NOW


def test_producer_aliases_and_nested_position() -> None:
    """The simulator sends steering/throttle/brake and a position object."""
    row = normalize_sample(1, {"steering": -0.4, "throttle": 0.9, "brake": 0.2,
                               "position": {"x": 1.5, "y": 0.2, "z": -8}}, now=NOW)
    assert row["steering_angle"] == -0.4
    assert row["throttle_force"] == 0.9
    assert row["brake_force"] == 0.2
    assert (row["position_x"], row["position_y"], row["position_z"]) == (1.5, 0.2, -8.0)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def test_epoch_milliseconds_and_seconds() -> None:
    expected = datetime(2025, 10, 30, 12, 0, 0)
    epoch = expected.replace(tzinfo=timezone.utc).timestamp()
    assert parse_timestamp(epoch * 1000) == expected
    assert parse_timestamp(epoch) == expected


def test_iso_strings_are_converted_to_naive_utc() -> None:
    assert parse_timestamp("2025-10-30T19:00:00+07:00") == datetime(2025, 10, 30, 12, 0, 0)
    assert parse_timestamp("2025-10-30T12:00:00Z") == datetime(2025, 10, 30, 12, 0, 0)


def test_unparseable_timestamp_falls_back_to_now() -> None:
    assert parse_timestamp("yesterday-ish", NOW) == NOW
    assert parse_timestamp(True, NOW) == NOW
    assert parse_timestamp(None, NOW) == NOW


def test_out_of_range_gear_falls_back_to_default() -> None:
    """A gear the database could not store must not poison the buffer."""
    assert normalize_sample(1, {"gear": 1e19}, now=NOW)["gear"] == 1
    assert normalize_sample(1, {"gear": 11}, now=NOW)["gear"] == 1
    assert normalize_sample(1, {"gear": -1}, now=NOW)["gear"] == -1
    assert normalize_sample(1, {"gear": "4"}, now=NOW)["gear"] == 4
