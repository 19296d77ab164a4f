"""Storage backends for the usage ledger, budgets and pending work items."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Protocol
import sqlite3

from gatekeeper.models import BudgetLimits, UsageRecord

DEFAULT_MAX_RECORDS = 10_000


class UsageStore(Protocol):
    """Usage ledger and budget storage interface."""

    def set_budget(self, limits: BudgetLimits) -> BudgetLimits:
        ...

    def get_budget(self, user_id: str) -> Optional[BudgetLimits]:
        ...

    def remove_budget(self, user_id: str) -> bool:
        ...

    def list_budgets(self) -> List[BudgetLimits]:
        ...

    def add_record(self, record: UsageRecord) -> UsageRecord:
        ...

    def list_records(self) -> List[UsageRecord]:
        ...

    def list_records_since(self, cutoff: datetime) -> List[UsageRecord]:
        ...

    def clear_records(self) -> None:
        ...


class InMemoryUsageStore:
    """In-memory ledger (default). Oldest records are evicted beyond max_records."""

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS):
        self.max_records = max_records
        self._budgets: Dict[str, BudgetLimits] = {}
        self._records: Deque[UsageRecord] = deque(maxlen=max_records)

    def set_budget(self, limits: BudgetLimits) -> BudgetLimits:
        self._budgets[limits.user_id] = limits
        return limits

    def get_budget(self, user_id: str) -> Optional[BudgetLimits]:
        return self._budgets.get(user_id)

    def remove_budget(self, user_id: str) -> bool:
        if user_id in self._budgets:
            del self._budgets[user_id]
            return True
        return False

    def list_budgets(self) -> List[BudgetLimits]:
        return list(self._budgets.values())

    def add_record(self, record: UsageRecord) -> UsageRecord:
        self._records.append(record)
        return record

    def list_records(self) -> List[UsageRecord]:
        return list(self._records)

    def list_records_since(self, cutoff: datetime) -> List[UsageRecord]:
        return [r for r in self._records if r.timestamp >= cutoff]

    def clear_records(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class SQLiteUsageStore:
    """SQLite-backed ledger. Keeps at most max_records rows, pruning the oldest."""

    def __init__(self, db_path: str = "gatekeeper.db", max_records: int = DEFAULT_MAX_RECORDS):
        self.max_records = max_records
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS budgets (
                user_id TEXT PRIMARY KEY,
                daily_limit REAL NOT NULL,
                monthly_limit REAL NOT NULL,
                alert_threshold REAL NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS usage_records (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                request_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                model TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                cost REAL NOT NULL,
                operation TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_user ON usage_records(user_id)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_time ON usage_records(timestamp)")
        self._conn.commit()

    def set_budget(self, limits: BudgetLimits) -> BudgetLimits:
        self._conn.execute(
            """
            INSERT INTO budgets (user_id, daily_limit, monthly_limit, alert_threshold)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                daily_limit=excluded.daily_limit,
                monthly_limit=excluded.monthly_limit,
                alert_threshold=excluded.alert_threshold
            """,
            (limits.user_id, limits.daily_limit, limits.monthly_limit, limits.alert_threshold),
        )
        self._conn.commit()
        return limits

    @staticmethod
    def _row_to_budget(row: sqlite3.Row) -> BudgetLimits:
        return BudgetLimits(
            user_id=row["user_id"],
            daily_limit=row["daily_limit"],
            monthly_limit=row["monthly_limit"],
            alert_threshold=row["alert_threshold"],
        )

    def get_budget(self, user_id: str) -> Optional[BudgetLimits]:
        row = self._conn.execute(
            "SELECT * FROM budgets WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if not row:
            return None
        return self._row_to_budget(row)

    def remove_budget(self, user_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM budgets WHERE user_id = ?", (user_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def list_budgets(self) -> List[BudgetLimits]:
        rows = self._conn.execute("SELECT * FROM budgets").fetchall()
        return [self._row_to_budget(row) for row in rows]

    def add_record(self, record: UsageRecord) -> UsageRecord:
        self._conn.execute(
            """
            INSERT INTO usage_records
                (request_id, user_id, model, input_tokens, output_tokens, cost, operation, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.request_id,
                record.user_id,
                record.model,
                record.input_tokens,
                record.output_tokens,
                record.cost,
                record.operation,
                record.timestamp.isoformat(),
            ),
        )
        self._conn.execute(
            """
            DELETE FROM usage_records WHERE seq <= (
                SELECT seq FROM usage_records ORDER BY seq DESC LIMIT 1 OFFSET ?
            )
            """,
            (self.max_records,),
        )
        self._conn.commit()
        return record

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> UsageRecord:
        timestamp = datetime.fromisoformat(row["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return UsageRecord(
            user_id=row["user_id"],
            model=row["model"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            cost=row["cost"],
            operation=row["operation"],
            request_id=row["request_id"],
            timestamp=timestamp,
        )

    def list_records(self) -> List[UsageRecord]:
        rows = self._conn.execute("SELECT * FROM usage_records ORDER BY seq ASC").fetchall()
        return [self._row_to_record(row) for row in rows]

    def list_records_since(self, cutoff: datetime) -> List[UsageRecord]:
        rows = self._conn.execute(
            "SELECT * FROM usage_records WHERE timestamp >= ? ORDER BY seq ASC",
            (cutoff.isoformat(),),
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def clear_records(self) -> None:
        self._conn.execute("DELETE FROM usage_records")
        self._conn.commit()

    def __len__(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM usage_records").fetchone()[0]

    def close(self) -> None:
        self._conn.close()


class InMemoryWorkItemStore:
    """
    In-memory store of pending work items, shared context and processing outcomes.

    Stands in for the application's persistence layer in tests, the CLI
    simulation and examples. Implements the WorkItemStore protocol from
    gatekeeper.orchestrator.
    """

    def __init__(self):
        self._items: Dict[str, List[Any]] = {}
        self._context: Dict[str, List[Dict[str, Any]]] = {}
        self.processed: Dict[str, Dict[str, Any]] = {}

    def add_user(self, user_id: str, items: List[Any], context: Optional[List[Dict[str, Any]]] = None) -> None:
        self._items.setdefault(user_id, []).extend(items)
        self._context[user_id] = list(context or [])

    async def list_users(self) -> List[str]:
        return list(self._items)

    async def get_pending(self, user_id: str) -> List[Any]:
        return [
            item for item in self._items.get(user_id, [])
            if item.item_id not in self.processed
        ]

    async def get_context(self, user_id: str) -> List[Dict[str, Any]]:
        return list(self._context.get(user_id, []))

    async def mark_processed(
        self,
        item: Any,
        success: bool,
        extracted: Optional[Dict[str, Any]],
        model: str,
    ) -> None:
        self.processed[item.item_id] = {
            "user_id": item.user_id,
            "success": success,
            "extracted": extracted,
            "model": model,
            "processed_at": datetime.now(timezone.utc),
        }
