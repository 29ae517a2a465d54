import logging
from datetime import datetime, timedelta, timezone

import pytest

from audit import TRACE, AuditContext, severity_for
from database import utcnow
from errors import ValidationError


def _seed(db, count, **fields):
    now = utcnow()
    db["log_entry"].insert_many(
        [
            {
                "timestamp": now - timedelta(minutes=n),
                "level": fields.get("level", "INFORMATION"),
                "message": fields.get("message", f"entry {n}"),
                "exception": None,
                "username": fields.get("username"),
                "controller": None,
                "action": None,
            }
            for n in range(count)
        ]
    )


def test_record_carries_the_context(audit, db):
    audit.record(AuditContext("ana", "Books", "create_book"), "information", "Created a book")

    entry = db["log_entry"].find_one({})
    assert entry["level"] == "INFORMATION"
    assert entry["message"] == "Created a book"
    assert entry["username"] == "ana"
    assert entry["controller"] == "Books"
    assert entry["action"] == "create_book"
    assert entry["exception"] is None


def test_record_without_request(audit, db):
    audit.record(AuditContext(), "WARNING", "Background work")
    entry = db["log_entry"].find_one({})
    assert entry["username"] is None
    assert entry["controller"] is None


def test_record_keeps_the_traceback(audit, db, caplog):
    try:
        raise RuntimeError("disk on fire")
    except RuntimeError as exc:
        with caplog.at_level(logging.ERROR, logger="audit"):
            audit.record(AuditContext("ana"), "ERROR", "Something broke", exc)

    entry = db["log_entry"].find_one({})
    assert "RuntimeError: disk on fire" in entry["exception"]
    assert caplog.records[-1].exc_info is not None


def test_record_mirrors_to_process_logger(audit, caplog):
    with caplog.at_level(logging.DEBUG, logger="audit"):
        audit.record(AuditContext(), "WARNING", "Mirrored")
    assert ("audit", logging.WARNING, "Mirrored") in caplog.record_tuples


@pytest.mark.parametrize(
    "level, expected",
    [
        ("ERROR", logging.ERROR),
        ("Warning", logging.WARNING),
        ("INFORMATION", logging.INFO),
        ("CRITICAL", logging.CRITICAL),
        ("TRACE", TRACE),
        ("DEBUG", logging.DEBUG),
        ("nonsense", logging.DEBUG),
        ("", logging.DEBUG),
    ],
)
def test_severity_mapping(level, expected):
    assert severity_for(level) == expected


def test_recent_is_newest_first(audit, db):
    _seed(db, 3)
    assert [e["message"] for e in audit.recent()] == ["entry 0", "entry 1", "entry 2"]


@pytest.mark.parametrize("limit, expected", [(3, 3), (0, 100), (-5, 100), (1001, 100), (1000, 120)])
def test_recent_limit_is_clamped(audit, db, limit, expected):
    _seed(db, 120)
    assert len(audit.recent(limit)) == expected


def test_count_by_level_is_case_insensitive(audit, db):
    _seed(db, 2, level="ERROR")
    _seed(db, 1, level="WARNING")
    assert audit.count_by_level("error") == 2
    assert audit.count_by_level(" Warning ") == 1
    with pytest.raises(ValidationError):
        audit.count_by_level("  ")


def test_by_date_range(audit, db):
    _seed(db, 10)
    now = utcnow()
    found = audit.by_date_range(now - timedelta(minutes=4, seconds=30), now + timedelta(seconds=1))
    assert [e["message"] for e in found] == ["entry 0", "entry 1", "entry 2", "entry 3", "entry 4"]


def test_by_date_range_accepts_aware_datetimes(audit, db):
    _seed(db, 1)
    now = datetime.now(timezone.utc)
    assert len(audit.by_date_range(now - timedelta(hours=1), now + timedelta(hours=1))) == 1


def test_by_date_range_requires_ordered_bounds(audit):
    now = utcnow()
    with pytest.raises(ValidationError):
        audit.by_date_range(now, now)
    with pytest.raises(ValidationError):
        audit.by_date_range(now, now - timedelta(days=1))


def test_by_user(audit, db):
    _seed(db, 2, username="ana")
    _seed(db, 3, username="bob")
    assert len(audit.by_user("ana")) == 2
    assert audit.by_user("carla") == []
    with pytest.raises(ValidationError):
        audit.by_user("")


def test_search_is_case_insensitive_and_literal(audit, db):
    audit.record(AuditContext(), "INFORMATION", "Loan created: 42")
    audit.record(AuditContext(), "INFORMATION", "Book (2nd ed.) updated")
    audit.record(AuditContext(), "INFORMATION", "Nothing to see")

    assert [e["message"] for e in audit.search("LOAN")] == ["Loan created: 42"]
    assert [e["message"] for e in audit.search("(2nd ed.)")] == ["Book (2nd ed.) updated"]
    assert audit.search(".*") == []
    with pytest.raises(ValidationError):
        audit.search(" ")


def test_statistics(audit, db):
    _seed(db, 2, level="ERROR")
    _seed(db, 3, level="WARNING")
    _seed(db, 4, level="INFORMATION")
    db["log_entry"].insert_one({"timestamp": utcnow() - timedelta(days=3), "level": "DEBUG", "message": "old"})

    stats = audit.statistics()
    assert stats["total_logs"] == 10
    assert stats["error_logs"] == 2
    assert stats["warning_logs"] == 3
    assert stats["info_logs"] == 4
    assert stats["recent_logs_24h"] == 9


def test_operations_are_audited_with_their_context(db, make_book):
    make_book("Dune")
    entries = list(db["log_entry"].find({"message": {"$regex": "Dune"}}))
    assert entries
    assert all(e["username"] == "librarian1" and e["controller"] == "Tests" for e in entries)
