"""Audit log.

Every significant operation appends a ``log_entry`` document and mirrors the
same event to the process logger.  Who did it and through which route is
passed in explicitly as an :class:`AuditContext`; nothing here looks at the
HTTP request.

Writes are synchronous.  If the store is down the calling operation fails
with it.
"""

from __future__ import annotations

import logging
import re
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, get_documents, naive_utc, utcnow
from errors import ValidationError
from schemas import LogEntry, LogLevel

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

logger = logging.getLogger("audit")

COLLECTION = "log_entry"
MAX_LIMIT = 1000

_SEVERITY = {
    LogLevel.ERROR.value: logging.ERROR,
    LogLevel.WARNING.value: logging.WARNING,
    LogLevel.INFORMATION.value: logging.INFO,
    LogLevel.CRITICAL.value: logging.CRITICAL,
    LogLevel.TRACE.value: TRACE,
}


def severity_for(level: str) -> int:
    return _SEVERITY.get((level or "").upper(), logging.DEBUG)


@dataclass(frozen=True)
class AuditContext:
    username: Optional[str] = None
    controller: Optional[str] = None
    action: Optional[str] = None


def _clamp(limit: int, default: int) -> int:
    if limit <= 0 or limit > MAX_LIMIT:
        return default
    return limit


class AuditLog:
    def __init__(self, db: Database):
        self.db = db

    def record(
        self,
        context: AuditContext,
        level: str,
        message: str,
        exception: Optional[BaseException] = None,
    ) -> None:
        entry = LogEntry(
            level=(level or LogLevel.DEBUG.value).upper(),
            message=message,
            exception=(
                "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))
                if exception is not None
                else None
            ),
            username=context.username,
            controller=context.controller,
            action=context.action,
        )
        create_document(self.db, COLLECTION, entry)

        severity = severity_for(level)
        if exception is not None and severity >= logging.ERROR:
            logger.log(severity, message, exc_info=(type(exception), exception, exception.__traceback__))
        else:
            logger.log(severity, message)

    # Queries, administrator only

    def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        return get_documents(self.db, COLLECTION, sort=[("timestamp", DESCENDING)], limit=_clamp(limit, 100))

    def count_by_level(self, level: str) -> int:
        if not level or not level.strip():
            raise ValidationError("Log level is required")
        return self.db[COLLECTION].count_documents({"level": level.strip().upper()})

    def by_date_range(self, start: datetime, end: datetime, limit: int = 500) -> List[Dict[str, Any]]:
        start, end = naive_utc(start), naive_utc(end)
        if start >= end:
            raise ValidationError("Start date must be earlier than end date")
        return get_documents(
            self.db,
            COLLECTION,
            {"timestamp": {"$gte": start, "$lte": end}},
            sort=[("timestamp", DESCENDING)],
            limit=_clamp(limit, 500),
        )

    def by_user(self, username: str, limit: int = 200) -> List[Dict[str, Any]]:
        if not username or not username.strip():
            raise ValidationError("Username is required")
        return get_documents(
            self.db,
            COLLECTION,
            {"username": username},
            sort=[("timestamp", DESCENDING)],
            limit=_clamp(limit, 200),
        )

    def search(self, term: str, limit: int = 300) -> List[Dict[str, Any]]:
        if not term or not term.strip():
            raise ValidationError("Search term is required")
        return get_documents(
            self.db,
            COLLECTION,
            {"message": {"$regex": re.escape(term), "$options": "i"}},
            sort=[("timestamp", DESCENDING)],
            limit=_clamp(limit, 300),
        )

    def statistics(self) -> Dict[str, Any]:
        logs = self.db[COLLECTION]
        now = utcnow()
        return {
            "total_logs": logs.count_documents({}),
            "error_logs": logs.count_documents({"level": LogLevel.ERROR.value}),
            "warning_logs": logs.count_documents({"level": LogLevel.WARNING.value}),
            "info_logs": logs.count_documents({"level": LogLevel.INFORMATION.value}),
            "recent_logs_24h": logs.count_documents({"timestamp": {"$gte": now - timedelta(days=1)}}),
            "timestamp": now,
        }
