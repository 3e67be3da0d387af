"""
Request Repository - SQLite persistence for budget requests

Each request is stored as one row holding its JSON body plus a few indexed
columns for listing. Writes carry an optimistic version check so two
concurrent transitions on the same request cannot both land.
"""

import sqlite3
from contextlib import nullcontext
from datetime import datetime
from typing import ContextManager

from budget_trail.kernel.database import SQLiteDatabase
from budget_trail.kernel.errors import (
    ConcurrencyConflictError,
    NotFoundError,
    ValidationError,
)
from budget_trail.requests.models import BudgetRequest, RequestState


class RequestRepository:
    """Load, insert, save and list BudgetRequest rows"""

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    def _reader(self, conn: sqlite3.Connection | None) -> ContextManager[sqlite3.Connection]:
        return nullcontext(conn) if conn is not None else self.db.connect()

    def find(
        self, request_id: str, conn: sqlite3.Connection | None = None
    ) -> BudgetRequest | None:
        with self._reader(conn) as read_conn:
            row = read_conn.execute(
                "SELECT version, body_json FROM budget_requests WHERE request_id = ?",
                (request_id,),
            ).fetchone()
        return self._row_to_request(row) if row is not None else None

    def get(self, request_id: str, conn: sqlite3.Connection | None = None) -> BudgetRequest:
        """
        Raises:
            NotFoundError: If the request does not exist
        """
        request = self.find(request_id, conn)
        if request is None:
            raise NotFoundError("budget request", request_id)
        return request

    def insert(
        self, request: BudgetRequest, conn: sqlite3.Connection | None = None
    ) -> BudgetRequest:
        """
        Store a newly created request at version 1

        Raises:
            ValidationError: If a request with the same id already exists
        """
        stored = request.model_copy(update={"version": 1})
        writer = nullcontext(conn) if conn is not None else self.db.transaction()
        with writer as write_conn:
            try:
                write_conn.execute(
                    "INSERT INTO budget_requests (request_id, requester_id, department, project, "
                    "state, fiscal_period, version, body_json, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        stored.request_id,
                        stored.requester_id,
                        stored.department,
                        stored.project,
                        stored.state.value,
                        stored.fiscal_period,
                        stored.version,
                        stored.model_dump_json(),
                        stored.requested_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(
                    "request_id", f"{request.request_id} already exists"
                ) from e
        return stored

    def save(
        self, request: BudgetRequest, conn: sqlite3.Connection, updated_at: datetime
    ) -> BudgetRequest:
        """
        Persist a transitioned request inside the caller's write transaction

        Returns:
            The request carrying its new version

        Raises:
            ConcurrencyConflictError: If the stored version moved on
        """
        expected_version = request.version
        stored = request.model_copy(update={"version": expected_version + 1})

        cursor = conn.execute(
            "UPDATE budget_requests SET state = ?, version = ?, body_json = ?, updated_at = ? "
            "WHERE request_id = ? AND version = ?",
            (
                stored.state.value,
                stored.version,
                stored.model_dump_json(),
                updated_at.isoformat(),
                stored.request_id,
                expected_version,
            ),
        )
        if cursor.rowcount != 1:
            raise ConcurrencyConflictError(
                f"request {request.request_id}",
                f"Request {request.request_id} changed since version {expected_version}",
            )
        return stored

    def list_requests(
        self,
        *,
        state: RequestState | None = None,
        department: str | None = None,
        fiscal_period: str | None = None,
        limit: int | None = None,
    ) -> list[BudgetRequest]:
        """List requests, oldest first"""
        conditions = []
        params: list[object] = []

        if state is not None:
            conditions.append("state = ?")
            params.append(state.value)

        if department:
            conditions.append("department = ?")
            params.append(department)

        if fiscal_period:
            conditions.append("fiscal_period = ?")
            params.append(fiscal_period)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        query = (
            f"SELECT version, body_json FROM budget_requests WHERE {where_clause} "
            "ORDER BY rowid ASC"
        )
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_request(row) for row in rows]

    def count_by_state(self) -> dict[str, int]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) AS n FROM budget_requests GROUP BY state"
            ).fetchall()
        return {row["state"]: row["n"] for row in rows}

    def _row_to_request(self, row: sqlite3.Row) -> BudgetRequest:
        request = BudgetRequest.model_validate_json(row["body_json"])
        return request.model_copy(update={"version": row["version"]})
