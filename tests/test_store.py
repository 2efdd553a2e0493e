"""Tests for the SQLAlchemy-backed persistence store."""

from datetime import datetime

import pytest
from sqlalchemy import inspect

from conftest import BASE_TIME, make_sample
from drivesim.database import DatabaseManager, PersistenceStore, SessionModel, TelemetrySampleModel
from drivesim.errors import InvalidParameter, StorageFailure
from drivesim.ingestion.normalize import normalize_sample


def _new_session(store, user_id: int = 1, environment: str = "city") -> int:
    return store.insert_session(
        user_id=user_id,
        start_time=datetime.utcnow(),
        environment_type=environment,
        input_device="keyboard",
        status="active",
    )


def _rows(session_id: int, n: int, **fields) -> list:
    return [normalize_sample(session_id, make_sample(i, **fields)) for i in range(n)]


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def test_several_managers_in_one_process(tmp_path) -> None:
    """Each manager creates its own schema, composite indices included."""
    managers = []
    try:
        for n in range(3):
            manager = DatabaseManager()
            manager.initialize(db_path=str(tmp_path / f"db{n}.db"))
            managers.append(manager)

            PersistenceStore(manager).insert_session(user_id=n, environment_type="city", input_device="keyboard")
            assert manager.get_statistics()["sessions"] == 1

            index_names = {i["name"] for i in inspect(manager.engine).get_indexes("sessions")}
            assert "idx_sessions_user_status" in index_names
    finally:
        for manager in managers:
            manager.close()

    for model in (SessionModel, TelemetrySampleModel):
        names = [index.name for index in model.__table__.indexes]
        assert len(names) == len(set(names))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def test_insert_and_get_session(store) -> None:
    session_id = _new_session(store, user_id=5, environment="rain")
    session = store.get_session(session_id)

    assert session["session_id"] == session_id
    assert session["user_id"] == 5
    assert session["environment_type"] == "rain"
    assert session["vehicle_type"] == "sedan"
    assert session["status"] == "active"
    assert session["end_time"] is None
    assert session["total_distance"] == 0.0
    assert session["total_time"] == 0


def test_missing_session_is_none(store) -> None:
    assert store.get_session(12345) is None
    assert store.update_session(12345, status="completed") is False


def test_unknown_session_field_is_rejected(store) -> None:
    with pytest.raises(InvalidParameter):
        store.insert_session(user_id=1, environment_type="city", input_device="keyboard", colour="red")


def test_active_session_lookup(store) -> None:
    first = _new_session(store, user_id=2)
    store.update_session(first, status="completed")
    second = _new_session(store, user_id=2)

    assert store.get_active_session(2)["session_id"] == second
    assert store.get_active_session(99) is None


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


def test_batch_insert_preserves_submission_order(store) -> None:
    session_id = _new_session(store)
    rows = _rows(session_id, 3)
    # Identical timestamps: order must fall back to insertion order
    for row, speed in zip(rows, (10.0, 20.0, 30.0)):
        row["timestamp"] = BASE_TIME
        row["speed"] = speed

    assert store.insert_telemetry_batch(rows) == 3
    assert [r["speed"] for r in store.query_telemetry(session_id)] == [10.0, 20.0, 30.0]


def test_batch_insert_is_all_or_nothing(store) -> None:
    """A single bad row (dangling session id) rolls back the whole batch."""
    session_id = _new_session(store)
    rows = _rows(session_id, 5)
    rows.append(normalize_sample(999999, make_sample(5)))

    with pytest.raises(StorageFailure):
        store.insert_telemetry_batch(rows)

    assert store.count_telemetry(session_id) == 0


def test_driver_overflow_becomes_storage_failure(store) -> None:
    """sqlite3 cannot bind an integer beyond 64 bits."""
    session_id = _new_session(store)
    rows = _rows(session_id, 3)
    rows[1]["gear"] = 10 ** 19

    with pytest.raises(StorageFailure):
        store.insert_telemetry_batch(rows)

    assert store.count_telemetry(session_id) == 0


def test_empty_batch_is_a_noop(store) -> None:
    assert store.insert_telemetry_batch([]) == 0


def test_query_order_limit_offset_and_filters(store) -> None:
    session_id = _new_session(store)
    rows = _rows(session_id, 6)
    rows[4]["collision"] = True
    store.insert_telemetry_batch(rows)

    newest = store.query_telemetry(session_id, order="desc", limit=2)
    assert [r["timestamp"] for r in newest] == [rows[5]["timestamp"], rows[4]["timestamp"]]

    page = store.query_telemetry(session_id, limit=2, offset=2)
    assert [r["timestamp"] for r in page] == [rows[2]["timestamp"], rows[3]["timestamp"]]

    crashes = store.query_telemetry(session_id, filters={"collision": True})
    assert len(crashes) == 1

    with pytest.raises(InvalidParameter):
        store.query_telemetry(session_id, filters={"colour": "red"})
    with pytest.raises(InvalidParameter):
        store.query_telemetry(session_id, order="sideways")


def test_telemetry_frame(store) -> None:
    session_id = _new_session(store)
    assert store.telemetry_frame(session_id).empty

    store.insert_telemetry_batch(_rows(session_id, 4))
    frame = store.telemetry_frame(session_id)
    assert len(frame) == 4
    assert frame["timestamp"].is_monotonic_increasing


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def test_aggregate_without_telemetry_is_zero(store) -> None:
    agg = store.aggregate(_new_session(store))
    assert agg["total_logs"] == 0
    assert agg["max_speed"] == 0.0
    assert agg["avg_speed"] == 0.0
    assert agg["first_log"] is None


def test_aggregate_and_log_statistics(store) -> None:
    session_id = _new_session(store)
    rows = _rows(session_id, 5)
    for row, speed in zip(rows, (10.0, 20.0, 30.0, 40.0, 50.0)):
        row["speed"] = speed
    rows[1]["collision"] = True
    rows[2]["lane_position"] = -0.5
    store.insert_telemetry_batch(rows)

    stats = store.log_statistics(session_id)
    assert stats["total_logs"] == 5
    assert stats["max_speed"] == 50.0
    assert stats["min_speed"] == 10.0
    assert stats["avg_speed"] == pytest.approx(30.0)
    assert stats["collision_count"] == 1
    assert stats["avg_lane_deviation"] == pytest.approx(0.1)
    assert stats["first_log"] == BASE_TIME
    assert stats["session_duration"] == 4
    assert stats["data_points_per_second"] == pytest.approx(1.25)


# ---------------------------------------------------------------------------
# Evaluations and history
# ---------------------------------------------------------------------------


def _evaluation(score: int, grade: str) -> dict:
    return {
        "overspeed_count": 0,
        "sudden_brake_count": 0,
        "sudden_acceleration_count": 0,
        "lane_violation_count": 0,
        "collision_count": 0,
        "signal_violation_count": 0,
        "total_score": score,
        "grade": grade,
        "evaluation_data": {"recommendations": ["ok"]},
    }


def test_evaluation_upsert_replaces_in_place(store, db) -> None:
    session_id = _new_session(store)
    first_id = store.insert_or_update_evaluation(session_id, **_evaluation(70, "C"))
    second_id = store.insert_or_update_evaluation(session_id, **_evaluation(91, "A"))

    assert first_id == second_id
    assert db.get_statistics()["evaluations"] == 1
    stored = store.get_evaluation(session_id)
    assert stored["total_score"] == 91
    assert stored["grade"] == "A"
    assert stored["evaluation_data"] == {"recommendations": ["ok"]}


def test_user_history_and_stats(store) -> None:
    graded = _new_session(store, user_id=3)
    store.insert_or_update_evaluation(graded, **_evaluation(96, "A+"))
    failed = _new_session(store, user_id=3)
    store.insert_or_update_evaluation(failed, **_evaluation(40, "F"))
    ungraded = _new_session(store, user_id=3)
    _new_session(store, user_id=4)

    sessions = store.user_sessions(3)
    assert [s["session_id"] for s in sessions] == [ungraded, failed, graded]
    assert sessions[0]["grade"] is None
    assert sessions[2]["total_score"] == 96

    assert len(store.user_sessions(3, page=2, limit=2)) == 1
    assert len(store.user_evaluations(3)) == 2

    stats = store.evaluation_stats(user_id=3)
    assert stats["total_evaluations"] == 2
    assert stats["avg_score"] == pytest.approx(68.0)
    assert stats["min_score"] == 40
    assert stats["max_score"] == 96
    assert stats["excellent_count"] == 1
    assert stats["fail_count"] == 1


def test_session_statistics_per_environment(store) -> None:
    first = _new_session(store, user_id=6, environment="city")
    store.update_session(first, status="completed", total_time=600, total_distance=5.0)
    store.insert_or_update_evaluation(first, **_evaluation(80, "B"))
    second = _new_session(store, user_id=6, environment="city")
    store.update_session(second, status="aborted", total_time=120, total_distance=1.25)
    third = _new_session(store, user_id=6, environment="rain")
    store.update_session(third, status="completed", total_time=300, total_distance=2.0)
    store.insert_or_update_evaluation(third, **_evaluation(90, "A"))
    _new_session(store, user_id=7, environment="night")

    stats = store.session_statistics(user_id=6)

    assert [s["environment_type"] for s in stats] == ["city", "rain"]
    assert stats[0] == {
        "environment_type": "city",
        "total_sessions": 2,
        "total_driving_time": 720,
        "total_distance": 6.25,
        "avg_score": 80.0,
        "completed_sessions": 1,
        "aborted_sessions": 1,
    }
    assert stats[1]["avg_score"] == 90.0
    assert len(store.session_statistics()) == 3


def test_session_statistics_without_sessions(store) -> None:
    assert store.session_statistics(user_id=404) == []
