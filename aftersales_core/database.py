"""Async SQLite data layer for the after-sales core."""

from __future__ import annotations

import asyncio
import json
import os
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Optional

import aiosqlite

from . import constants
from .enums import CaseState
from .errors import StaleCaseError, TransientPersistenceError
from .logger import get_logger
from .models import (
    AuditLogEntry,
    Carrier,
    CaseRecord,
    ExchangeShipment,
    RefundExecution,
    ReturnAddress,
    ReturnShipment,
)
from .utils.timestamps import to_iso, utcnow

logger = get_logger()

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, sqlite3.OperationalError) and any(
        marker in str(error).lower() for marker in _TRANSIENT_MARKERS
    )


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class Database:
    """Async database handler using SQLite."""

    def __init__(self, db_path: str | Path = "aftersales.db", connect_timeout: float | None = None) -> None:
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self.target_schema_version = 4

        if connect_timeout is None:
            connect_timeout = float(os.getenv("DB_CONNECT_TIMEOUT", "5.0"))
        self.connect_timeout = connect_timeout

    async def connect(self) -> None:
        """Connect to the database with timeout protection and retry logic."""
        if self._connection is None:
            max_retries = constants.DATABASE_MAX_RETRIES
            for attempt in range(max_retries + 1):
                try:
                    self._connection = await asyncio.wait_for(
                        aiosqlite.connect(str(self.db_path)),
                        timeout=self.connect_timeout
                    )

                    try:
                        self._connection.row_factory = aiosqlite.Row
                        await self._connection.execute("PRAGMA foreign_keys = ON;")
                        await self._connection.execute("PRAGMA busy_timeout = 5000;")
                        await self._connection.commit()
                        await self._initialize_schema()
                    except Exception as init_error:
                        if self._connection:
                            await self._connection.close()
                        self._connection = None
                        logger.error(
                            f"Failed to initialize database after connection: {init_error}. "
                            f"Database path: {self.db_path}"
                        )
                        raise

                    return

                except asyncio.TimeoutError:
                    self._connection = None
                    timeout_msg = (
                        f"Database connection timed out after {self.connect_timeout}s "
                        f"(attempt {attempt + 1}/{max_retries + 1}). Database path: {self.db_path}"
                    )
                    if attempt < max_retries:
                        wait_seconds = constants.DATABASE_RETRY_BASE_DELAY_SECONDS * 2 ** attempt
                        logger.warning(f"{timeout_msg}. Waiting {wait_seconds}s before retry...")
                        await asyncio.sleep(wait_seconds)
                    else:
                        logger.error(f"{timeout_msg}. Max retries exhausted.")
                        raise TimeoutError(timeout_msg) from None

                except Exception as conn_error:
                    self._connection = None
                    error_msg = (
                        f"Failed to connect to database (attempt {attempt + 1}/{max_retries + 1}): {conn_error}. "
                        f"Database path: {self.db_path}"
                    )
                    if attempt < max_retries:
                        wait_seconds = constants.DATABASE_RETRY_BASE_DELAY_SECONDS * 2 ** attempt
                        logger.warning(f"{error_msg}. Waiting {wait_seconds}s before retry...")
                        await asyncio.sleep(wait_seconds)
                    else:
                        logger.error(f"{error_msg}. Max retries exhausted.")
                        raise RuntimeError(error_msg) from conn_error

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def _initialize_schema(self) -> None:
        """Initialize the database schema with versioning support."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        await self._connection.commit()

        current_version = await self._get_current_schema_version()
        logger.info(f"Current database schema version: {current_version}")

        await self._apply_pending_migrations(current_version)

        final_version = await self._get_current_schema_version()
        logger.info(f"Database schema migration complete. Final version: {final_version}")

    async def _get_current_schema_version(self) -> int:
        """Get the current schema version from the migrations table."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        cursor = await self._connection.execute(
            "SELECT MAX(version) as version FROM schema_migrations"
        )
        row = await cursor.fetchone()
        return row["version"] if row and row["version"] else 0

    async def _apply_pending_migrations(self, current_version: int) -> None:
        """Apply all pending migrations after the current version."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        migrations = {
            1: ("cases_table", self._migration_v1),
            2: ("satellite_tables", self._migration_v2),
            3: ("audit_logs_table", self._migration_v3),
            4: ("carriers_and_return_addresses", self._migration_v4),
        }

        for version in sorted(migrations.keys()):
            if version > current_version:
                name, migration_fn = migrations[version]
                logger.info(f"Applying migration v{version}: {name}")
                try:
                    await migration_fn()
                    await self._record_migration(version, name)
                    logger.info(f"Migration v{version}: {name} applied successfully")
                except Exception as e:
                    logger.exception(
                        f"Failed to apply migration v{version} ({name}): {e}",
                        exc_info=True
                    )
                    raise RuntimeError(
                        f"Migration v{version} ({name}) failed: {e}"
                    ) from e

    async def _record_migration(self, version: int, name: str) -> None:
        """Record a migration as applied in the schema_migrations table."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.execute(
            "INSERT INTO schema_migrations (version, name) VALUES (?, ?)",
            (version, name),
        )
        await self._connection.commit()

    async def _migration_v1(self) -> None:
        """Migration v1: after-sales case table."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS cases (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                reference_number TEXT NOT NULL UNIQUE,
                case_type TEXT NOT NULL,
                reason TEXT NOT NULL,
                state TEXT NOT NULL,
                stage TEXT NOT NULL,
                order_number TEXT NOT NULL,
                order_product_id TEXT,
                user_id TEXT,
                applicant_name TEXT,
                applicant_phone TEXT,
                description TEXT,
                proof_images TEXT NOT NULL DEFAULT '[]',
                original_refund_cents INTEGER NOT NULL CHECK(original_refund_cents >= 0),
                approved_refund_cents INTEGER,
                actual_refund_cents INTEGER,
                refund_amount_modified INTEGER NOT NULL DEFAULT 0,
                refund_amount_modify_reason TEXT,
                modification_count INTEGER NOT NULL DEFAULT 0 CHECK(modification_count >= 0),
                deadline_at TEXT,
                audit_at TEXT,
                completed_at TEXT,
                reject_reason TEXT,
                service_note TEXT,
                processor TEXT,
                product_snapshot TEXT,
                exchange_address TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK(actual_refund_cents IS NULL OR actual_refund_cents <= original_refund_cents),
                CHECK(approved_refund_cents IS NULL OR approved_refund_cents <= original_refund_cents)
            );

            CREATE INDEX IF NOT EXISTS idx_cases_state_deadline
                ON cases(state, deadline_at);
            CREATE INDEX IF NOT EXISTS idx_cases_order_number
                ON cases(order_number);
            CREATE INDEX IF NOT EXISTS idx_cases_user_id
                ON cases(user_id);
            """
        )
        await self._connection.commit()

    async def _migration_v2(self) -> None:
        """Migration v2: refund execution, return shipment and exchange shipment tables."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS refund_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                case_id INTEGER NOT NULL UNIQUE,
                case_type TEXT NOT NULL CHECK(case_type IN ('refund_only', 'return_refund')),
                refund_no TEXT NOT NULL UNIQUE,
                amount_cents INTEGER NOT NULL CHECK(amount_cents >= 0),
                status TEXT NOT NULL,
                payment_method TEXT,
                transaction_no TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                failure_reason TEXT,
                gateway_response TEXT,
                processed_at TEXT,
                completed_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (case_id) REFERENCES cases(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS return_shipments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                case_id INTEGER NOT NULL UNIQUE,
                case_type TEXT NOT NULL CHECK(case_type = 'return_refund'),
                return_no TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL,
                carrier TEXT,
                tracking_no TEXT,
                remark TEXT,
                shipped_at TEXT,
                received_at TEXT,
                inspected_at TEXT,
                inspection_passed INTEGER,
                inspection_note TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (case_id) REFERENCES cases(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS exchange_shipments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                case_id INTEGER NOT NULL UNIQUE,
                case_type TEXT NOT NULL CHECK(case_type = 'exchange'),
                exchange_no TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL,
                return_carrier TEXT,
                return_tracking_no TEXT,
                return_shipped_at TEXT,
                return_received_at TEXT,
                exchange_carrier TEXT,
                exchange_tracking_no TEXT,
                exchange_shipped_at TEXT,
                completed_at TEXT,
                reject_reason TEXT,
                shipping_address TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (case_id) REFERENCES cases(id) ON DELETE CASCADE
            );
            """
        )
        await self._connection.commit()

    async def _migration_v3(self) -> None:
        """Migration v3: append-only audit log."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                case_id INTEGER NOT NULL,
                action TEXT NOT NULL,
                actor_type TEXT NOT NULL,
                actor_id TEXT,
                previous_state TEXT,
                next_state TEXT,
                content TEXT,
                context TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_logs_case
                ON audit_logs(case_id, id);
            CREATE INDEX IF NOT EXISTS idx_audit_logs_created
                ON audit_logs(created_at);

            CREATE TRIGGER IF NOT EXISTS audit_logs_immutable
            BEFORE UPDATE ON audit_logs
            BEGIN
                SELECT RAISE(ABORT, 'audit log entries are immutable');
            END;
            """
        )
        await self._connection.commit()

    async def _migration_v4(self) -> None:
        """Migration v4: carrier registry and merchant return addresses."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS carriers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                tracking_url_template TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                sort_order INTEGER NOT NULL DEFAULT 0,
                description TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_carriers_active
                ON carriers(is_active, sort_order);

            CREATE TABLE IF NOT EXISTS return_addresses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                contact_name TEXT NOT NULL,
                contact_phone TEXT NOT NULL,
                province TEXT NOT NULL,
                city TEXT NOT NULL,
                district TEXT,
                address TEXT NOT NULL,
                zip_code TEXT,
                company_name TEXT,
                business_hours TEXT,
                special_instructions TEXT,
                is_default INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                sort_order INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_return_addresses_active
                ON return_addresses(is_active, is_default, sort_order);
            """
        )
        now = to_iso(utcnow())
        await self._connection.executemany(
            """
            INSERT OR IGNORE INTO carriers (
                code, name, sort_order, tracking_url_template, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [(code, name, order, template, now, now) for code, name, order, template in constants.DEFAULT_CARRIERS],
        )
        await self._connection.commit()

    # ------------------------------------------------------------------
    # Atomic units
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator["Database"]:
        """Run the enclosed writes as one unit.

        Writers are serialised by an in-process lock and SQLite's reserved
        lock (BEGIN IMMEDIATE). Any exception rolls the unit back; lock
        contention surfaces as TransientPersistenceError.

        Example:
            async with db.atomic():
                case = await db.get_case(case_id)
                ...
                await db.update_case(case)
                await db.append_audit_log(entry)
        """
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        async with self._write_lock:
            try:
                await self._connection.execute("BEGIN IMMEDIATE;")
            except sqlite3.OperationalError as e:
                if _is_transient(e):
                    raise TransientPersistenceError(e) from e
                raise

            try:
                yield self
                await self._connection.commit()
            except BaseException as e:
                try:
                    await self._connection.rollback()
                    logger.debug(f"Database unit rolled back due to: {e!r}")
                except Exception as rollback_error:
                    logger.error(f"Failed to rollback unit: {rollback_error}")
                if _is_transient(e):
                    raise TransientPersistenceError(e) from e
                raise

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def _case_params(self, case: CaseRecord) -> dict[str, Any]:
        return {
            "reference_number": case.reference_number,
            "case_type": _enum_value(case.case_type),
            "reason": _enum_value(case.reason),
            "state": _enum_value(case.state),
            "stage": _enum_value(case.stage),
            "order_number": case.order_number,
            "order_product_id": case.order_product_id,
            "user_id": case.user_id,
            "applicant_name": case.applicant_name,
            "applicant_phone": case.applicant_phone,
            "description": case.description,
            "proof_images": _dump_json(list(case.proof_images)),
            "original_refund_cents": case.original_refund_cents,
            "approved_refund_cents": case.approved_refund_cents,
            "actual_refund_cents": case.actual_refund_cents,
            "refund_amount_modified": int(case.refund_amount_modified),
            "refund_amount_modify_reason": case.refund_amount_modify_reason,
            "modification_count": case.modification_count,
            "deadline_at": to_iso(case.deadline_at),
            "audit_at": to_iso(case.audit_at),
            "completed_at": to_iso(case.completed_at),
            "reject_reason": case.reject_reason,
            "service_note": case.service_note,
            "processor": case.processor,
            "product_snapshot": _dump_json(case.product_snapshot.to_dict()) if case.product_snapshot else None,
            "exchange_address": _dump_json(case.exchange_address),
        }

    async def insert_case(self, case: CaseRecord) -> int:
        """Insert a new case. Raises sqlite3.IntegrityError on a duplicate reference."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        now = utcnow()
        params = self._case_params(case)
        params["created_at"] = to_iso(case.created_at or now)
        params["updated_at"] = to_iso(now)
        params["version"] = 0

        columns = ", ".join(params)
        placeholders = ", ".join(f":{name}" for name in params)
        cursor = await self._connection.execute(
            f"INSERT INTO cases ({columns}) VALUES ({placeholders})",
            params,
        )
        case.id = cursor.lastrowid
        case.version = 0
        case.created_at = case.created_at or now
        case.updated_at = now
        return case.id

    async def update_case(self, case: CaseRecord) -> None:
        """Write a case back, guarded by its version.

        The stored product snapshot is never replaced once set.
        """
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")
        if case.id is None:
            raise ValueError("Cannot update a case that has not been inserted")

        now = utcnow()
        params = self._case_params(case)
        params.pop("reference_number")
        snapshot = params.pop("product_snapshot")

        assignments = ", ".join(f"{name} = :{name}" for name in params)
        params.update(
            {
                "product_snapshot": snapshot,
                "updated_at": to_iso(now),
                "id": case.id,
                "expected_version": case.version,
            }
        )
        cursor = await self._connection.execute(
            f"""
            UPDATE cases
            SET {assignments},
                product_snapshot = COALESCE(product_snapshot, :product_snapshot),
                updated_at = :updated_at,
                version = version + 1
            WHERE id = :id AND version = :expected_version
            """,
            params,
        )
        if cursor.rowcount == 0:
            raise StaleCaseError(case.id, case.version)
        case.version += 1
        case.updated_at = now

    async def get_case(self, case_id: int) -> Optional[CaseRecord]:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        cursor = await self._connection.execute("SELECT * FROM cases WHERE id = ?", (case_id,))
        row = await cursor.fetchone()
        return CaseRecord.from_row(row) if row else None

    async def find_case_by_reference(self, reference_number: str) -> Optional[CaseRecord]:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        cursor = await self._connection.execute(
            "SELECT * FROM cases WHERE reference_number = ?", (reference_number,)
        )
        row = await cursor.fetchone()
        return CaseRecord.from_row(row) if row else None

    async def list_cases(
        self,
        *,
        state: CaseState | None = None,
        user_id: str | None = None,
        order_number: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CaseRecord]:
        """List cases newest first, optionally filtered."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        clauses: list[str] = []
        params: list[Any] = []
        if state is not None:
            clauses.append("state = ?")
            params.append(_enum_value(state))
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if order_number is not None:
            clauses.append("order_number = ?")
            params.append(order_number)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._connection.execute(
            f"SELECT * FROM cases {where} ORDER BY id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        rows = await cursor.fetchall()
        return [CaseRecord.from_row(row) for row in rows]

    async def find_expired_cases(
        self,
        now: datetime,
        states: Iterable[CaseState],
        limit: int = constants.SWEEP_BATCH_SIZE,
        after: tuple[datetime, int] | None = None,
    ) -> list[CaseRecord]:
        """Cases in one of states whose deadline is at or before now, oldest deadline first.

        ``after`` is the (deadline_at, id) of the last case of the previous
        batch; results resume strictly after it.
        """
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        state_values = [_enum_value(s) for s in states]
        if not state_values:
            return []
        placeholders = ", ".join("?" for _ in state_values)
        params: list[Any] = [to_iso(now), *state_values]
        keyset = ""
        if after is not None:
            after_deadline = to_iso(after[0])
            keyset = "AND (deadline_at > ? OR (deadline_at = ? AND id > ?))"
            params.extend([after_deadline, after_deadline, after[1]])
        params.append(limit)

        cursor = await self._connection.execute(
            f"""
            SELECT * FROM cases
            WHERE deadline_at IS NOT NULL
              AND deadline_at <= ?
              AND state IN ({placeholders})
              {keyset}
            ORDER BY deadline_at ASC, id ASC
            LIMIT ?
            """,
            params,
        )
        rows = await cursor.fetchall()
        return [CaseRecord.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Satellite records
    # ------------------------------------------------------------------

    async def get_refund_execution(self, case_id: int) -> Optional[RefundExecution]:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        cursor = await self._connection.execute(
            "SELECT * FROM refund_executions WHERE case_id = ?", (case_id,)
        )
        row = await cursor.fetchone()
        return RefundExecution.from_row(row) if row else None

    async def save_refund_execution(self, execution: RefundExecution) -> int:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        now = utcnow()
        params = {
            "case_id": execution.case_id,
            "case_type": _enum_value(execution.case_type),
            "refund_no": execution.refund_no,
            "amount_cents": execution.amount_cents,
            "status": _enum_value(execution.status),
            "payment_method": _enum_value(execution.payment_method),
            "transaction_no": execution.transaction_no,
            "retry_count": execution.retry_count,
            "failure_reason": execution.failure_reason,
            "gateway_response": _dump_json(execution.gateway_response),
            "processed_at": to_iso(execution.processed_at),
            "completed_at": to_iso(execution.completed_at),
        }
        execution.id = await self._save_row("refund_executions", execution.id, params, now)
        execution.updated_at = now
        return execution.id

    async def get_return_shipment(self, case_id: int) -> Optional[ReturnShipment]:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        cursor = await self._connection.execute(
            "SELECT * FROM return_shipments WHERE case_id = ?", (case_id,)
        )
        row = await cursor.fetchone()
        return ReturnShipment.from_row(row) if row else None

    async def save_return_shipment(self, shipment: ReturnShipment) -> int:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        now = utcnow()
        params = {
            "case_id": shipment.case_id,
            "case_type": _enum_value(shipment.case_type),
            "return_no": shipment.return_no,
            "status": _enum_value(shipment.status),
            "carrier": shipment.carrier,
            "tracking_no": shipment.tracking_no,
            "remark": shipment.remark,
            "shipped_at": to_iso(shipment.shipped_at),
            "received_at": to_iso(shipment.received_at),
            "inspected_at": to_iso(shipment.inspected_at),
            "inspection_passed": None if shipment.inspection_passed is None else int(shipment.inspection_passed),
            "inspection_note": shipment.inspection_note,
        }
        shipment.id = await self._save_row("return_shipments", shipment.id, params, now)
        shipment.updated_at = now
        return shipment.id

    async def get_exchange_shipment(self, case_id: int) -> Optional[ExchangeShipment]:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        cursor = await self._connection.execute(
            "SELECT * FROM exchange_shipments WHERE case_id = ?", (case_id,)
        )
        row = await cursor.fetchone()
        return ExchangeShipment.from_row(row) if row else None

    async def save_exchange_shipment(self, shipment: ExchangeShipment) -> int:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        now = utcnow()
        params = {
            "case_id": shipment.case_id,
            "case_type": _enum_value(shipment.case_type),
            "exchange_no": shipment.exchange_no,
            "status": _enum_value(shipment.status),
            "return_carrier": shipment.return_carrier,
            "return_tracking_no": shipment.return_tracking_no,
            "return_shipped_at": to_iso(shipment.return_shipped_at),
            "return_received_at": to_iso(shipment.return_received_at),
            "exchange_carrier": shipment.exchange_carrier,
            "exchange_tracking_no": shipment.exchange_tracking_no,
            "exchange_shipped_at": to_iso(shipment.exchange_shipped_at),
            "completed_at": to_iso(shipment.completed_at),
            "reject_reason": shipment.reject_reason,
            "shipping_address": _dump_json(shipment.shipping_address),
        }
        shipment.id = await self._save_row("exchange_shipments", shipment.id, params, now)
        shipment.updated_at = now
        return shipment.id

    async def _save_row(
        self, table: str, record_id: Optional[int], params: dict[str, Any], now: datetime
    ) -> int:
        """Insert or update one row. For satellites the unique case_id index rejects a second row."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        params = dict(params, updated_at=to_iso(now))
        if record_id is None:
            params["created_at"] = to_iso(now)
            columns = ", ".join(params)
            placeholders = ", ".join(f":{name}" for name in params)
            cursor = await self._connection.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", params
            )
            return cursor.lastrowid

        assignments = ", ".join(f"{name} = :{name}" for name in params if name != "case_id")
        params["id"] = record_id
        await self._connection.execute(
            f"UPDATE {table} SET {assignments} WHERE id = :id", params
        )
        return record_id

    # ------------------------------------------------------------------
    # Carriers and return addresses
    # ------------------------------------------------------------------

    async def list_carriers(self, active_only: bool = True) -> list[Carrier]:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        query = "SELECT * FROM carriers"
        if active_only:
            query += " WHERE is_active = 1"
        cursor = await self._connection.execute(query + " ORDER BY sort_order ASC, id ASC")
        rows = await cursor.fetchall()
        return [Carrier.from_row(row) for row in rows]

    async def find_carrier(self, name_or_code: str) -> Optional[Carrier]:
        """Look a carrier up by code, then by the name of an active carrier. Case-insensitive."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        value = (name_or_code or "").strip()
        if not value:
            return None
        cursor = await self._connection.execute(
            "SELECT * FROM carriers WHERE code = ? COLLATE NOCASE", (value,)
        )
        row = await cursor.fetchone()
        if row is None:
            cursor = await self._connection.execute(
                """
                SELECT * FROM carriers
                WHERE name = ? COLLATE NOCASE AND is_active = 1
                ORDER BY sort_order ASC
                LIMIT 1
                """,
                (value,),
            )
            row = await cursor.fetchone()
        return Carrier.from_row(row) if row else None

    async def save_carrier(self, carrier: Carrier) -> int:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        now = utcnow()
        params = {
            "code": carrier.code.strip().upper(),
            "name": carrier.name.strip(),
            "tracking_url_template": carrier.tracking_url_template,
            "is_active": int(carrier.is_active),
            "sort_order": carrier.sort_order,
            "description": carrier.description,
        }
        carrier.id = await self._save_row("carriers", carrier.id, params, now)
        carrier.updated_at = now
        return carrier.id

    async def list_return_addresses(self, active_only: bool = True) -> list[ReturnAddress]:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        query = "SELECT * FROM return_addresses"
        if active_only:
            query += " WHERE is_active = 1"
        cursor = await self._connection.execute(
            query + " ORDER BY is_default DESC, sort_order ASC, id ASC"
        )
        rows = await cursor.fetchall()
        return [ReturnAddress.from_row(row) for row in rows]

    async def get_default_return_address(self) -> Optional[ReturnAddress]:
        """The default address, or the first active one when none is marked default."""
        addresses = await self.list_return_addresses()
        return addresses[0] if addresses else None

    async def save_return_address(self, address: ReturnAddress) -> int:
        """Insert or update an address. Marking one default clears the flag on the others."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        now = utcnow()
        params = {
            "name": address.name,
            "contact_name": address.contact_name,
            "contact_phone": address.contact_phone,
            "province": address.province,
            "city": address.city,
            "district": address.district,
            "address": address.address,
            "zip_code": address.zip_code,
            "company_name": address.company_name,
            "business_hours": address.business_hours,
            "special_instructions": address.special_instructions,
            "is_default": int(address.is_default),
            "is_active": int(address.is_active),
            "sort_order": address.sort_order,
        }
        address.id = await self._save_row("return_addresses", address.id, params, now)
        address.updated_at = now
        if address.is_default:
            await self._connection.execute(
                "UPDATE return_addresses SET is_default = 0, updated_at = ? WHERE id != ? AND is_default = 1",
                (to_iso(now), address.id),
            )
        return address.id

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    async def append_audit_log(self, entry: AuditLogEntry) -> int:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        cursor = await self._connection.execute(
            """
            INSERT INTO audit_logs (
                case_id, action, actor_type, actor_id,
                previous_state, next_state, content, context, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.case_id,
                _enum_value(entry.action),
                _enum_value(entry.actor_type),
                entry.actor_id,
                _enum_value(entry.previous_state),
                _enum_value(entry.next_state),
                entry.content,
                _dump_json(entry.context or {}),
                to_iso(entry.created_at or utcnow()),
            ),
        )
        return cursor.lastrowid

    async def list_audit_logs(self, case_id: int) -> list[AuditLogEntry]:
        """Audit entries for a case in write order."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        cursor = await self._connection.execute(
            "SELECT * FROM audit_logs WHERE case_id = ? ORDER BY id ASC", (case_id,)
        )
        rows = await cursor.fetchall()
        return [AuditLogEntry.from_row(row) for row in rows]

    async def purge_audit_logs(self, before: datetime) -> int:
        """Delete audit entries created before the cutoff. Returns the number removed."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        async with self.atomic():
            cursor = await self._connection.execute(
                "DELETE FROM audit_logs WHERE created_at < ?", (to_iso(before),)
            )
            deleted = cursor.rowcount
        logger.info(f"Purged {deleted} audit log entries created before {to_iso(before)}")
        return deleted
