"""Repository layer responsible for all database access.

Classes, class instances and entitlements are stored as one row per document.
Every read and write is scoped by ``tenant_id``; writes to instances and
entitlements are conditional on the caller's ``revision`` token so concurrent
request handlers never overwrite each other's changes.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Sequence
from uuid import uuid4

from classbook.domain.models import (
    Booking,
    ClassInstance,
    ClassTemplate,
    Entitlement,
    EntitlementKind,
    RecurringWindow,
    WeeklySlot,
)
from classbook.utils.config import Settings, get_settings
from classbook.utils.logger import get_logger


logger = get_logger(__name__)


class StoreError(Exception):
    """Base failure raised by the document store."""


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached or a lock wait timed out."""


class RevisionConflictError(StoreError):
    """Raised when a conditional write finds a different revision."""


class DocumentNotFoundError(StoreError):
    """Raised when a conditional write targets a missing document."""


class StoreIntegrityError(StoreError):
    """Raised when a write breaks a schema constraint (foreign key, check)."""


class DuplicateDocumentError(StoreIntegrityError):
    """Raised when a document with the same natural key already exists."""


_DUPLICATE_KEY_ERRORS = frozenset({"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"})


def _integrity_error(exc: sqlite3.IntegrityError) -> StoreIntegrityError:
    if exc.sqlite_errorname in _DUPLICATE_KEY_ERRORS:
        return DuplicateDocumentError(str(exc))
    return StoreIntegrityError(str(exc))


def new_document_id() -> str:
    return str(uuid4())


def new_revision() -> str:
    return uuid4().hex


def to_db_timestamp(value: datetime) -> str:
    """Normalize an aware datetime to a sortable UTC ISO-8601 string."""
    if value.tzinfo is None:
        raise ValueError("timestamps must be timezone-aware")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _bookings_to_json(bookings: Sequence[Booking]) -> str:
    return json.dumps([booking.to_document() for booking in bookings])


def _schedule_to_json(slots: Sequence[WeeklySlot]) -> str:
    return json.dumps(
        [
            {
                "day_of_week": slot.day_of_week,
                "start_time": slot.start_time,
                "end_time": slot.end_time,
            }
            for slot in slots
        ]
    )


def _row_to_class(row: sqlite3.Row) -> ClassTemplate:
    window = None
    if row["window_start"] is not None and row["window_end"] is not None:
        window = RecurringWindow(
            start_date=date.fromisoformat(row["window_start"]),
            end_date=date.fromisoformat(row["window_end"]),
        )
    slots = tuple(
        WeeklySlot(
            day_of_week=str(item.get("day_of_week", "")),
            start_time=str(item.get("start_time", "")),
            end_time=str(item.get("end_time", "")),
        )
        for item in json.loads(row["weekly_schedule_json"] or "[]")
    )
    return ClassTemplate(
        class_id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        title=str(row["title"]),
        capacity=int(row["capacity"]),
        is_recurring=bool(row["is_recurring"]),
        is_active=bool(row["is_active"]),
        single_date=_from_db_timestamp(row["single_date"]),
        recurring_window=window,
        weekly_schedule=slots,
    )


def _row_to_instance(row: sqlite3.Row) -> ClassInstance:
    bookings = tuple(
        Booking.from_document(item) for item in json.loads(row["bookings_json"] or "[]")
    )
    return ClassInstance(
        instance_id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        class_id=str(row["class_id"]),
        starts_at=datetime.fromisoformat(row["starts_at"]),
        capacity=int(row["capacity"]),
        remaining_capacity=int(row["remaining_capacity"]),
        revision=str(row["revision"]),
        is_cancelled=bool(row["is_cancelled"]),
        cancellation_reason=row["cancellation_reason"],
        bookings=bookings,
    )


def _row_to_entitlement(row: sqlite3.Row) -> Entitlement:
    clips = row["remaining_clips"]
    return Entitlement(
        entitlement_id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        user_id=str(row["user_id"]),
        kind=EntitlementKind(row["kind"]),
        remaining_clips=None if clips is None else int(clips),
        valid_from=datetime.fromisoformat(row["valid_from"]),
        valid_until=datetime.fromisoformat(row["valid_until"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        revision=str(row["revision"]),
        is_active=bool(row["is_active"]),
        pass_name=row["pass_name"],
    )


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a short-lived connection; commit on success, always close.

        The busy timeout bounds every lock wait, and operational failures are
        surfaced as StoreUnavailableError so callers can retry.
        """
        try:
            connection = sqlite3.connect(
                self._db_path,
                timeout=self._settings.store_timeout_seconds,
            )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open store: {exc}") from exc
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON;")
            yield connection
            connection.commit()
        except sqlite3.IntegrityError as exc:
            connection.rollback()
            raise _integrity_error(exc) from exc
        except sqlite3.Error as exc:
            connection.rollback()
            raise StoreUnavailableError(f"Store operation failed: {exc}") from exc
        except BaseException:
            connection.rollback()
            raise
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode = WAL;")

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS classes (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    capacity INTEGER NOT NULL CHECK (capacity > 0),
                    is_recurring INTEGER NOT NULL CHECK (is_recurring IN (0,1)),
                    is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0,1)),
                    single_date TEXT,
                    window_start TEXT,
                    window_end TEXT,
                    weekly_schedule_json TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL
                );
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS class_instances (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    class_id TEXT NOT NULL,
                    starts_at TEXT NOT NULL,
                    capacity INTEGER NOT NULL CHECK (capacity > 0),
                    remaining_capacity INTEGER NOT NULL
                        CHECK (remaining_capacity >= 0 AND remaining_capacity <= capacity),
                    is_cancelled INTEGER NOT NULL DEFAULT 0 CHECK (is_cancelled IN (0,1)),
                    cancellation_reason TEXT,
                    bookings_json TEXT NOT NULL DEFAULT '[]',
                    revision TEXT NOT NULL,
                    FOREIGN KEY (class_id) REFERENCES classes(id)
                );
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS entitlements (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL
                        CHECK (kind IN ('single', 'multi-pass', 'clipcard', 'monthly')),
                    remaining_clips INTEGER CHECK (remaining_clips IS NULL OR remaining_clips >= 0),
                    valid_from TEXT NOT NULL,
                    valid_until TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0,1)),
                    pass_name TEXT,
                    created_at TEXT NOT NULL,
                    revision TEXT NOT NULL
                );
                """
            )

            cursor.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_instances_tenant_class_start
                ON class_instances(tenant_id, class_id, starts_at);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_instances_tenant_start
                ON class_instances(tenant_id, starts_at);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_classes_tenant_active
                ON classes(tenant_id, is_active, is_recurring);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_entitlements_tenant_user
                ON entitlements(tenant_id, user_id, is_active);
                """
            )
        logger.info("Database initialized at %s", self._db_path)

    # ------------------------------------------------------------------
    # Classes
    # ------------------------------------------------------------------

    def create_class(self, template: ClassTemplate, created_at: datetime) -> ClassTemplate:
        window = template.recurring_window
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO classes (
                    id, tenant_id, title, capacity, is_recurring, is_active,
                    single_date, window_start, window_end, weekly_schedule_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    template.class_id,
                    template.tenant_id,
                    template.title,
                    template.capacity,
                    int(template.is_recurring),
                    int(template.is_active),
                    to_db_timestamp(template.single_date) if template.single_date else None,
                    window.start_date.isoformat() if window else None,
                    window.end_date.isoformat() if window else None,
                    _schedule_to_json(template.weekly_schedule),
                    to_db_timestamp(created_at),
                ),
            )
        return template

    def get_class(self, *, tenant_id: str, class_id: str) -> Optional[ClassTemplate]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM classes WHERE id = ? AND tenant_id = ?;",
                (class_id, tenant_id),
            ).fetchone()
        return None if row is None else _row_to_class(row)

    def list_generatable_classes(self, *, tenant_id: str) -> list[ClassTemplate]:
        """Return active recurring classes of a tenant in creation order."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM classes
                WHERE tenant_id = ? AND is_active = 1 AND is_recurring = 1
                ORDER BY created_at ASC, id ASC;
                """,
                (tenant_id,),
            ).fetchall()
        return [_row_to_class(row) for row in rows]

    # ------------------------------------------------------------------
    # Class instances
    # ------------------------------------------------------------------

    def create_instance(
        self,
        *,
        tenant_id: str,
        class_id: str,
        starts_at: datetime,
        capacity: int,
    ) -> ClassInstance:
        """Insert a fresh instance; DuplicateDocumentError if the slot exists."""
        instance = ClassInstance(
            instance_id=new_document_id(),
            tenant_id=tenant_id,
            class_id=class_id,
            starts_at=starts_at.astimezone(timezone.utc),
            capacity=capacity,
            remaining_capacity=capacity,
            revision=new_revision(),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO class_instances (
                        id, tenant_id, class_id, starts_at, capacity,
                        remaining_capacity, is_cancelled, bookings_json, revision
                    )
                    VALUES (?, ?, ?, ?, ?, ?, 0, '[]', ?);
                    """,
                    (
                        instance.instance_id,
                        tenant_id,
                        class_id,
                        to_db_timestamp(starts_at),
                        capacity,
                        capacity,
                        instance.revision,
                    ),
                )
        except DuplicateDocumentError as exc:
            raise DuplicateDocumentError(
                f"Instance for class {class_id} at {starts_at.isoformat()} already exists"
            ) from exc
        return instance

    def get_instance(self, *, tenant_id: str, instance_id: str) -> Optional[ClassInstance]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM class_instances WHERE id = ? AND tenant_id = ?;",
                (instance_id, tenant_id),
            ).fetchone()
        return None if row is None else _row_to_instance(row)

    def find_instance_at(
        self,
        *,
        tenant_id: str,
        class_id: str,
        starts_at: datetime,
    ) -> Optional[ClassInstance]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM class_instances
                WHERE tenant_id = ? AND class_id = ? AND starts_at = ?;
                """,
                (tenant_id, class_id, to_db_timestamp(starts_at)),
            ).fetchone()
        return None if row is None else _row_to_instance(row)

    def list_instances_for_class(self, *, tenant_id: str, class_id: str) -> list[ClassInstance]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM class_instances
                WHERE tenant_id = ? AND class_id = ?
                ORDER BY starts_at ASC;
                """,
                (tenant_id, class_id),
            ).fetchall()
        return [_row_to_instance(row) for row in rows]

    def list_instances_between(
        self,
        *,
        tenant_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ClassInstance]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM class_instances
                WHERE tenant_id = ? AND starts_at >= ? AND starts_at <= ?
                ORDER BY starts_at ASC, id ASC;
                """,
                (tenant_id, to_db_timestamp(start), to_db_timestamp(end)),
            ).fetchall()
        return [_row_to_instance(row) for row in rows]

    def list_future_instances(
        self,
        *,
        tenant_id: str,
        class_id: str,
        now: datetime,
    ) -> list[ClassInstance]:
        """Return not-yet-cancelled instances of a class starting at or after now."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM class_instances
                WHERE tenant_id = ? AND class_id = ? AND starts_at >= ? AND is_cancelled = 0
                ORDER BY starts_at ASC;
                """,
                (tenant_id, class_id, to_db_timestamp(now)),
            ).fetchall()
        return [_row_to_instance(row) for row in rows]

    def list_instances_booked_by(self, *, tenant_id: str, student_id: str) -> list[ClassInstance]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT ci.* FROM class_instances AS ci
                WHERE ci.tenant_id = ?
                  AND EXISTS (
                      SELECT 1 FROM json_each(ci.bookings_json) AS b
                      WHERE json_extract(b.value, '$.student_id') = ?
                  )
                ORDER BY ci.starts_at ASC;
                """,
                (tenant_id, student_id),
            ).fetchall()
        return [_row_to_instance(row) for row in rows]

    def save_instance_bookings(self, *, tenant_id: str, instance: ClassInstance) -> ClassInstance:
        """Write bookings/remaining capacity if the stored revision still matches.

        ``instance.revision`` is the revision the caller read. Returns the
        instance carrying its new revision.
        """
        if instance.tenant_id != tenant_id:
            raise DocumentNotFoundError(f"Instance {instance.instance_id} not found")
        if instance.remaining_capacity != instance.capacity - len(instance.bookings):
            raise ValueError("remaining_capacity must equal capacity minus bookings")
        next_revision = new_revision()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE class_instances
                SET bookings_json = ?, remaining_capacity = ?, revision = ?
                WHERE id = ? AND tenant_id = ? AND revision = ?;
                """,
                (
                    _bookings_to_json(instance.bookings),
                    instance.remaining_capacity,
                    next_revision,
                    instance.instance_id,
                    tenant_id,
                    instance.revision,
                ),
            )
            if cursor.rowcount != 1:
                self._raise_write_miss(conn, "class_instances", tenant_id, instance.instance_id)
        return replace(instance, revision=next_revision)

    def mark_instance_cancelled(
        self,
        *,
        tenant_id: str,
        instance: ClassInstance,
        reason: str,
    ) -> ClassInstance:
        if instance.tenant_id != tenant_id:
            raise DocumentNotFoundError(f"Instance {instance.instance_id} not found")
        next_revision = new_revision()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE class_instances
                SET is_cancelled = 1, cancellation_reason = ?, revision = ?
                WHERE id = ? AND tenant_id = ? AND revision = ?;
                """,
                (reason, next_revision, instance.instance_id, tenant_id, instance.revision),
            )
            if cursor.rowcount != 1:
                self._raise_write_miss(conn, "class_instances", tenant_id, instance.instance_id)
        return replace(
            instance,
            is_cancelled=True,
            cancellation_reason=reason,
            revision=next_revision,
        )

    # ------------------------------------------------------------------
    # Entitlements
    # ------------------------------------------------------------------

    def create_entitlement(self, entitlement: Entitlement) -> Entitlement:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO entitlements (
                    id, tenant_id, user_id, kind, remaining_clips, valid_from,
                    valid_until, is_active, pass_name, created_at, revision
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    entitlement.entitlement_id,
                    entitlement.tenant_id,
                    entitlement.user_id,
                    entitlement.kind.value,
                    entitlement.remaining_clips,
                    to_db_timestamp(entitlement.valid_from),
                    to_db_timestamp(entitlement.valid_until),
                    int(entitlement.is_active),
                    entitlement.pass_name,
                    to_db_timestamp(entitlement.created_at),
                    entitlement.revision,
                ),
            )
        return entitlement

    def get_entitlement(self, *, tenant_id: str, entitlement_id: str) -> Optional[Entitlement]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM entitlements WHERE id = ? AND tenant_id = ?;",
                (entitlement_id, tenant_id),
            ).fetchone()
        return None if row is None else _row_to_entitlement(row)

    def list_valid_entitlements(
        self,
        *,
        tenant_id: str,
        user_id: str,
        now: datetime,
    ) -> list[Entitlement]:
        """Active entitlements whose validity window contains ``now``."""
        stamp = to_db_timestamp(now)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM entitlements
                WHERE tenant_id = ? AND user_id = ? AND is_active = 1
                  AND valid_from <= ? AND valid_until > ?
                ORDER BY created_at DESC, id ASC;
                """,
                (tenant_id, user_id, stamp, stamp),
            ).fetchall()
        return [_row_to_entitlement(row) for row in rows]

    def list_lapsed_entitlements(
        self,
        *,
        tenant_id: str,
        user_id: str,
        now: datetime,
        since: datetime,
    ) -> list[Entitlement]:
        """Inactive or expired entitlements whose validity ended after ``since``."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM entitlements
                WHERE tenant_id = ? AND user_id = ?
                  AND (is_active = 0 OR valid_until <= ?)
                  AND valid_until >= ?
                ORDER BY created_at DESC, id ASC;
                """,
                (tenant_id, user_id, to_db_timestamp(now), to_db_timestamp(since)),
            ).fetchall()
        return [_row_to_entitlement(row) for row in rows]

    def decrement_entitlement_clips(
        self,
        *,
        tenant_id: str,
        entitlement: Entitlement,
    ) -> Entitlement:
        """Take one clip if the stored revision matches and a clip is left."""
        if entitlement.tenant_id != tenant_id:
            raise DocumentNotFoundError(f"Entitlement {entitlement.entitlement_id} not found")
        next_revision = new_revision()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE entitlements
                SET remaining_clips = remaining_clips - 1, revision = ?
                WHERE id = ? AND tenant_id = ? AND revision = ?
                  AND remaining_clips IS NOT NULL AND remaining_clips > 0;
                """,
                (next_revision, entitlement.entitlement_id, tenant_id, entitlement.revision),
            )
            if cursor.rowcount != 1:
                self._raise_write_miss(
                    conn, "entitlements", tenant_id, entitlement.entitlement_id
                )
        return replace(
            entitlement,
            remaining_clips=(entitlement.remaining_clips or 0) - 1,
            revision=next_revision,
        )

    @staticmethod
    def _raise_write_miss(
        conn: sqlite3.Connection,
        table: str,
        tenant_id: str,
        document_id: str,
    ) -> None:
        row = conn.execute(
            f"SELECT revision FROM {table} WHERE id = ? AND tenant_id = ?;",
            (document_id, tenant_id),
        ).fetchone()
        if row is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        raise RevisionConflictError(
            f"Document {document_id} changed concurrently (now at revision {row['revision']})"
        )
