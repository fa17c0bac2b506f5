"""
Repository pattern for data access.

Handles database operations for the governance store: the append-only usage
ledger, per-principal limit overrides, the alert de-duplication ledger,
service pause state and rate counters.

All methods are synchronous and open their own connection, so they are safe
to run on worker threads.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from .db import DEFAULT_DB_PATH, SCHEMA, get_connection
from .models import (
    AlertRecord,
    AlertSeverity,
    BudgetLimit,
    BudgetScope,
    BudgetWindow,
    OperationKind,
    PauseStatus,
    ServicePauseState,
    UsageEvent,
)


GLOBAL_PRINCIPAL = "__global__"

_EVENT_COLUMNS = (
    "id, principal, provider, model, operation_kind, endpoint, input_units, "
    "output_units, cost, timestamp, cached, error, metadata"
)


def to_storage_time(value: datetime) -> str:
    """Serialize a datetime as a sortable UTC ISO string.

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_storage_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _principal_key(principal: Optional[str]) -> str:
    return principal if principal is not None else GLOBAL_PRINCIPAL


def _row_to_event(row) -> UsageEvent:
    return UsageEvent(
        id=row[0],
        principal=row[1],
        provider=row[2],
        model=row[3],
        operation_kind=OperationKind(row[4]),
        endpoint=row[5],
        input_units=row[6],
        output_units=row[7],
        cost=row[8],
        timestamp=from_storage_time(row[9]),
        cached=bool(row[10]),
        error=bool(row[11]),
        metadata=json.loads(row[12] or "{}"),
    )


def _event_params(event: UsageEvent) -> tuple:
    return (
        event.id,
        event.principal,
        event.provider,
        event.model,
        event.operation_kind.value,
        event.endpoint,
        event.input_units,
        event.output_units,
        event.cost,
        to_storage_time(event.timestamp),
        int(event.cached),
        int(event.error),
        json.dumps(event.metadata, default=str),
    )


class GovernanceRepository:
    """Repository for the shared governance store.

    This class is the only place that talks SQL. Every piece of state that
    must be consistent across service instances (events, alerts, pauses,
    counters) goes through it.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create all governance tables if they don't exist."""
        conn = get_connection(self.db_path)
        try:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()

    # Usage ledger

    def insert_usage_event(self, event: UsageEvent) -> None:
        """Append a single usage event to the ledger.

        Events are never updated or deleted once inserted.

        Args:
            event: The usage event to record
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO usage_event ({_EVENT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _event_params(event),
            )
            conn.commit()
        finally:
            conn.close()

    def insert_usage_events(self, events: List[UsageEvent]) -> None:
        """Append several usage events atomically.

        Args:
            events: List of usage events to record
        """
        if not events:
            return

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for event in events:
                conn.execute(
                    f"INSERT INTO usage_event ({_EVENT_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    _event_params(event),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def sum_usage(
        self,
        start: datetime,
        end: Optional[datetime] = None,
        principal: Optional[str] = None,
    ) -> Dict[str, float]:
        """Sum cost and units of events with ``start <= timestamp < end``.

        Args:
            start: Inclusive window start
            end: Exclusive window end, or None for open-ended
            principal: Restrict to one principal; None means all principals

        Returns:
            Dictionary with ``cost``, ``units`` and ``count``
        """
        conn = get_connection(self.db_path)
        try:
            query = (
                "SELECT COALESCE(SUM(cost), 0), "
                "COALESCE(SUM(input_units + output_units), 0), COUNT(*) "
                "FROM usage_event WHERE timestamp >= ?"
            )
            params: List[Any] = [to_storage_time(start)]
            if end is not None:
                query += " AND timestamp < ?"
                params.append(to_storage_time(end))
            if principal is not None:
                query += " AND principal = ?"
                params.append(principal)

            row = conn.execute(query, params).fetchone()
            return {
                "cost": float(row[0]),
                "units": int(row[1]),
                "count": int(row[2]),
            }
        finally:
            conn.close()

    def fetch_usage_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        principal: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[UsageEvent]:
        """Fetch usage events in a time range, newest first.

        Args:
            start: Optional inclusive lower bound
            end: Optional inclusive upper bound
            principal: Optional filter for one principal
            limit: Maximum number of events to return

        Returns:
            List of usage events ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_EVENT_COLUMNS} FROM usage_event"
            conditions = []
            params: List[Any] = []

            if start is not None:
                conditions.append("timestamp >= ?")
                params.append(to_storage_time(start))
            if end is not None:
                conditions.append("timestamp <= ?")
                params.append(to_storage_time(end))
            if principal is not None:
                conditions.append("principal = ?")
                params.append(principal)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY timestamp DESC, seq DESC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)

            return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    # Per-principal limit overrides

    def upsert_budget_limit(self, principal: str, limit: BudgetLimit) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO budget_limit
                    (principal, budget_window, scope, max_cost, max_units, enabled, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (principal, budget_window) DO UPDATE SET
                    scope = excluded.scope,
                    max_cost = excluded.max_cost,
                    max_units = excluded.max_units,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    _principal_key(principal),
                    limit.window.value,
                    limit.scope.value,
                    limit.max_cost,
                    limit.max_units,
                    int(limit.enabled),
                    to_storage_time(datetime.now(timezone.utc)),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def fetch_budget_limits(self, principal: Optional[str]) -> Dict[BudgetWindow, BudgetLimit]:
        """Return the stored overrides for a principal keyed by window."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT budget_window, scope, max_cost, max_units, enabled "
                "FROM budget_limit WHERE principal = ?",
                (_principal_key(principal),),
            ).fetchall()
            return {
                BudgetWindow(row[0]): BudgetLimit(
                    scope=BudgetScope(row[1]),
                    window=BudgetWindow(row[0]),
                    max_cost=row[2],
                    max_units=row[3],
                    enabled=bool(row[4]),
                )
                for row in rows
            }
        finally:
            conn.close()

    def delete_budget_limits(self, principal: Optional[str]) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM budget_limit WHERE principal = ?", (_principal_key(principal),)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # Alert ledger

    def insert_alert_record(self, record: AlertRecord) -> bool:
        """Insert an alert record unless one exists for the same key.

        Args:
            record: Alert to append to the ledger

        Returns:
            True if the record was inserted, False if (principal, period,
            threshold) was already recorded
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO alert_record
                    (principal, period, threshold, severity, budget_window, message, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _principal_key(record.principal),
                    record.period,
                    record.threshold_crossed,
                    record.severity.value,
                    record.window.value,
                    record.message,
                    to_storage_time(record.timestamp),
                ),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def alert_recorded(self, principal: Optional[str], period: str, threshold: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT 1 FROM alert_record WHERE principal = ? AND period = ? AND threshold = ?",
                (_principal_key(principal), period, threshold),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def fetch_alert_records(
        self,
        principal: Optional[str] = None,
        period: Optional[str] = None,
    ) -> List[AlertRecord]:
        """Fetch alert records in insertion order.

        Args:
            principal: Optional principal filter (use None for all)
            period: Optional month key filter

        Returns:
            List of alert records, oldest first
        """
        conn = get_connection(self.db_path)
        try:
            query = (
                "SELECT severity, threshold, budget_window, principal, message, timestamp, period "
                "FROM alert_record"
            )
            conditions = []
            params: List[Any] = []
            if principal is not None:
                conditions.append("principal = ?")
                params.append(principal)
            if period is not None:
                conditions.append("period = ?")
                params.append(period)
            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY id"

            records = []
            for row in conn.execute(query, params).fetchall():
                records.append(AlertRecord(
                    severity=AlertSeverity(row[0]),
                    threshold_crossed=row[1],
                    window=BudgetWindow(row[2]),
                    principal=None if row[3] == GLOBAL_PRINCIPAL else row[3],
                    message=row[4],
                    timestamp=from_storage_time(row[5]),
                    period=row[6],
                ))
            return records
        finally:
            conn.close()

    # Service pause state

    def upsert_pause_state(self, state: ServicePauseState) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO service_pause
                    (principal, service, status, reason, paused_at, resumed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (principal, service) DO UPDATE SET
                    status = excluded.status,
                    reason = excluded.reason,
                    paused_at = excluded.paused_at,
                    resumed_at = excluded.resumed_at
                """,
                (
                    state.principal,
                    state.service,
                    state.status.value,
                    state.reason,
                    to_storage_time(state.paused_at) if state.paused_at else None,
                    to_storage_time(state.resumed_at) if state.resumed_at else None,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def fetch_pause_states(
        self,
        principal: str,
        services: Optional[Iterable[str]] = None,
    ) -> List[ServicePauseState]:
        """Return stored pause states for a principal.

        Args:
            principal: Principal to look up
            services: Optional subset of services to return

        Returns:
            List of pause states (active and paused)
        """
        conn = get_connection(self.db_path)
        try:
            query = (
                "SELECT principal, service, status, reason, paused_at, resumed_at "
                "FROM service_pause WHERE principal = ?"
            )
            params: List[Any] = [principal]
            if services is not None:
                services = list(services)
                query += " AND service IN ({})".format(", ".join("?" for _ in services))
                params.extend(services)

            return [
                ServicePauseState(
                    principal=row[0],
                    service=row[1],
                    status=PauseStatus(row[2]),
                    reason=row[3],
                    paused_at=from_storage_time(row[4]),
                    resumed_at=from_storage_time(row[5]),
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    # Rate counters

    def increment_counter(self, key: str, ttl_seconds: int, now: Optional[datetime] = None) -> int:
        """Atomically increment a counter that resets after its TTL.

        ``BEGIN IMMEDIATE`` takes the write lock up front so concurrent
        increments from several processes serialize on the database.

        Args:
            key: Counter key
            ttl_seconds: Lifetime of the counter from its first increment
            now: Current time (defaults to UTC now)

        Returns:
            The counter value after incrementing
        """
        now = now or datetime.now(timezone.utc)
        now_str = to_storage_time(now)
        conn = get_connection(self.db_path)
        try:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT count, expires_at FROM rate_counter WHERE key = ?",
                    (key,),
                ).fetchone()
                if row is None or row[1] <= now_str:
                    count = 1
                    expires_at = to_storage_time(now + timedelta(seconds=ttl_seconds))
                    conn.execute(
                        "INSERT OR REPLACE INTO rate_counter (key, count, expires_at) VALUES (?, ?, ?)",
                        (key, count, expires_at),
                    )
                else:
                    count = row[0] + 1
                    conn.execute(
                        "UPDATE rate_counter SET count = ? WHERE key = ?",
                        (count, key),
                    )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            return count
        finally:
            conn.close()


# Keep module-level helpers for callers that only need the ledger

def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the governance tables in the given database."""
    GovernanceRepository(db_path).initialize_schema()


def insert_usage_event(event: UsageEvent, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage event into the append-only ledger."""
    GovernanceRepository(db_path).insert_usage_event(event)


def fetch_recent_usage_events(
    principal: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageEvent]:
    """Fetch recent usage events, newest first."""
    return GovernanceRepository(db_path).fetch_usage_events(principal=principal, limit=limit)
