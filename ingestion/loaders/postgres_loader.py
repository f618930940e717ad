"""
Reconcile extracted records into the relational store with upsert logic (idempotency)

Two modes share one entry point, ``PostgresLoader.reconcile``:

- Snapshot-replace: the caller passes a scope; every live row in that
  scope is soft-deleted first, then the snapshot is upserted, which
  revives whatever is still present.
- Incremental merge: no scope; rows are simply upserted.

Upserts run as ``INSERT .. ON CONFLICT (natural key)`` on PostgreSQL and
on SQLite, choosing the dialect's insert construct at runtime.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Type

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.clock import utcnow
from core.config import settings
from core.exceptions import DatabaseError, UpsertError
from schemas.records import SyncRecord

logger = logging.getLogger(__name__)

KEY_LOOKUP_CHUNK = 1000

Key = Tuple[Any, ...]


@dataclass(frozen=True)
class SyncTarget:
    """
    Describes how rows land in one table.

    Attributes:
        model: ORM model of the table
        natural_key: Columns of the unique constraint used as conflict target
        preserve_fields: Portal-owned columns never written on conflict
        carry_forward_fields: Columns keeping the stored value when the incoming one is null
        nullable_on_conflict: Columns nulled to resolve a secondary unique conflict
        insert_only: Existing rows are left untouched (ON CONFLICT DO NOTHING)
    """
    model: Type[Any]
    natural_key: Tuple[str, ...]
    preserve_fields: Tuple[str, ...] = ()
    carry_forward_fields: Tuple[str, ...] = ()
    nullable_on_conflict: Tuple[str, ...] = ()
    insert_only: bool = False

    @property
    def table_name(self) -> str:
        return self.model.__tablename__

    @property
    def columns(self):
        return self.model.__table__.c

    @property
    def has_lifecycle(self) -> bool:
        return "ns_deleted_at" in self.columns

    def key_of(self, row: Dict[str, Any]) -> Key:
        return tuple(row[k] for k in self.natural_key)


@dataclass
class SnapshotScope:
    """
    Subset of the natural-key space one run fully represents.

    ``column``/``values`` restrict the scope to rows whose column is in
    values (e.g. location ids); ``column=None`` means the whole table.
    ``exclude`` removes values from the scope (e.g. a sentinel id).
    """
    column: Optional[str] = None
    values: Sequence[Any] = ()
    exclude: Dict[str, Sequence[Any]] = field(default_factory=dict)

    def value_chunks(self) -> List[Optional[List[Any]]]:
        if self.column is None:
            return [None]
        unique = list(dict.fromkeys(self.values))
        return [unique[i:i + KEY_LOOKUP_CHUNK] for i in range(0, len(unique), KEY_LOOKUP_CHUNK)]

    def clauses(self, target: SyncTarget, chunk: Optional[List[Any]]) -> list:
        cols = target.columns
        clauses = []
        if self.column is not None:
            clauses.append(cols[self.column].in_(chunk))
        for column, excluded in self.exclude.items():
            if excluded:
                clauses.append(cols[column].notin_(list(excluded)))
        return clauses


@dataclass
class ReconcileResult:
    inserted: int = 0
    updated: int = 0
    soft_deleted: int = 0
    soft_deleted_keys: List[Key] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "soft_deleted": self.soft_deleted,
        }

    def merge(self, other: "ReconcileResult") -> "ReconcileResult":
        self.inserted += other.inserted
        self.updated += other.updated
        self.soft_deleted += other.soft_deleted
        self.soft_deleted_keys.extend(other.soft_deleted_keys)
        return self


class PostgresLoader:
    """
    Load records with idempotent upsert and scoped soft-delete.

    Ensures:
    - At most one row per live natural key
    - Portal-owned columns survive every sync
    - Soft-delete of a scope happens before any upsert into it
    - Committed batches stay committed when a later batch fails
    """

    def __init__(
        self,
        db_session: AsyncSession,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
    ):
        self.db = db_session
        self.batch_size = batch_size or settings.ETL_BATCH_SIZE
        self.dry_run = dry_run

    @property
    def dialect_name(self) -> str:
        return self.db.get_bind().dialect.name

    async def reconcile(
        self,
        target: SyncTarget,
        records: Iterable[Any],
        scope: Optional[SnapshotScope] = None,
    ) -> ReconcileResult:
        """
        Merge records into the target table.

        Args:
            target: Table description
            records: SyncRecord instances or plain dicts
            scope: Snapshot scope; None for an incremental merge

        Returns:
            ReconcileResult with inserted / updated / soft_deleted counts

        Raises:
            UpsertError: A batch failed to write (earlier batches stay committed)
        """
        rows = self._dedupe(target, records)
        result = ReconcileResult()
        now = utcnow()

        live_before: Set[Key] = set()
        if scope is not None and target.has_lifecycle:
            live_before = await self._live_keys(target, scope)
            if not self.dry_run:
                await self._soft_delete_scope(target, scope, now)

        for batch_index, start in enumerate(range(0, len(rows), self.batch_size)):
            batch = rows[start:start + self.batch_size]
            existing = await self._existing_keys(target, [target.key_of(r) for r in batch])

            batch_inserted = sum(1 for r in batch if target.key_of(r) not in existing)
            batch_updated = len(batch) - batch_inserted
            if target.insert_only:
                batch_updated = 0

            if not self.dry_run:
                await self._write_batch(target, batch, now, batch_index, result)

            result.inserted += batch_inserted
            result.updated += batch_updated
            logger.debug(
                f"{target.table_name} batch {batch_index + 1}: "
                f"{batch_inserted} new, {batch_updated} existing"
            )

        incoming = {target.key_of(r) for r in rows}
        gone = sorted(live_before - incoming, key=repr)
        result.soft_deleted = len(gone)
        result.soft_deleted_keys = gone

        logger.info(
            f"Reconciled {len(rows)} rows into {target.table_name}"
            f"{' (dry run)' if self.dry_run else ''}: "
            f"{result.inserted} inserted, {result.updated} updated, "
            f"{result.soft_deleted} soft-deleted"
        )
        return result

    async def soft_delete(self, target: SyncTarget, column: str, values: Sequence[Any]) -> int:
        """
        Soft-delete the live rows whose column is in values.

        Returns:
            Number of live rows matched (also computed in dry run)
        """
        scope = SnapshotScope(column=column, values=values)
        if not values:
            return 0
        matched = await self._live_keys(target, scope)
        if matched and not self.dry_run:
            await self._soft_delete_scope(target, scope, utcnow())
        logger.info(
            f"Soft-deleted {len(matched)} rows of {target.table_name} by {column}"
            f"{' (dry run)' if self.dry_run else ''}"
        )
        return len(matched)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    @staticmethod
    def _dedupe(target: SyncTarget, records: Iterable[Any]) -> List[Dict[str, Any]]:
        """One row per natural key, last occurrence wins, first-seen order kept"""
        by_key: Dict[Key, Dict[str, Any]] = {}
        for record in records:
            row = record.to_row() if isinstance(record, SyncRecord) else dict(record)
            by_key[target.key_of(row)] = row
        return list(by_key.values())

    async def _live_keys(self, target: SyncTarget, scope: SnapshotScope) -> Set[Key]:
        cols = target.columns
        key_cols = [cols[k] for k in target.natural_key]
        keys: Set[Key] = set()
        try:
            for chunk in scope.value_chunks():
                stmt = select(*key_cols).where(
                    cols["ns_deleted_at"].is_(None), *scope.clauses(target, chunk)
                )
                result = await self.db.execute(stmt)
                keys.update(tuple(r) for r in result.all())
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to read live keys in scope",
                context={"operation": "SELECT", "table_name": target.table_name},
                original_exception=e,
            )
        return keys

    async def _soft_delete_scope(self, target: SyncTarget, scope: SnapshotScope, now) -> None:
        cols = target.columns
        try:
            for chunk in scope.value_chunks():
                stmt = (
                    update(target.model.__table__)
                    .where(cols["ns_deleted_at"].is_(None), *scope.clauses(target, chunk))
                    .values(ns_deleted_at=now, synced_at=now)
                )
                await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatabaseError(
                "Failed to soft-delete snapshot scope",
                context={"operation": "UPDATE", "table_name": target.table_name},
                original_exception=e,
            )

    async def _existing_keys(self, target: SyncTarget, keys: List[Key]) -> Set[Key]:
        """Keys already stored (live or soft-deleted)"""
        if not keys:
            return set()
        cols = target.columns
        key_cols = [cols[k] for k in target.natural_key]
        wanted = set(keys)
        first_values = list(dict.fromkeys(k[0] for k in keys))
        found: Set[Key] = set()
        try:
            for i in range(0, len(first_values), KEY_LOOKUP_CHUNK):
                chunk = first_values[i:i + KEY_LOOKUP_CHUNK]
                result = await self.db.execute(select(*key_cols).where(key_cols[0].in_(chunk)))
                found.update(tuple(r) for r in result.all())
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to look up existing keys",
                context={"operation": "SELECT", "table_name": target.table_name},
                original_exception=e,
            )
        return found & wanted

    async def _write_batch(
        self,
        target: SyncTarget,
        batch: List[Dict[str, Any]],
        now,
        batch_index: int,
        result: ReconcileResult,
    ) -> None:
        values = [self._prepare(target, row, now) for row in batch]
        try:
            await self.db.execute(self._build_upsert(target, values))
            await self.db.commit()
            return
        except IntegrityError as e:
            await self.db.rollback()
            if not target.nullable_on_conflict:
                raise self._upsert_error(target, batch_index, result, e)
            logger.warning(
                f"{target.table_name} batch {batch_index + 1} hit a unique conflict, "
                f"retrying row by row"
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise self._upsert_error(target, batch_index, result, e)

        await self._write_rows_individually(target, values, batch_index, result)

    async def _write_rows_individually(
        self,
        target: SyncTarget,
        values: List[Dict[str, Any]],
        batch_index: int,
        result: ReconcileResult,
    ) -> None:
        """Per-row upsert; a conflicting row is retried once with the nullable columns cleared"""
        for row in values:
            try:
                await self.db.execute(self._build_upsert(target, [row]))
                await self.db.commit()
                continue
            except IntegrityError:
                await self.db.rollback()

            fallback = {**row, **{c: None for c in target.nullable_on_conflict}}
            try:
                await self.db.execute(self._build_upsert(target, [fallback], coalesce=False))
                await self.db.commit()
                logger.warning(
                    f"{target.table_name} {target.key_of(row)}: stored with "
                    f"{', '.join(target.nullable_on_conflict)} cleared after a unique conflict"
                )
            except SQLAlchemyError as e:
                await self.db.rollback()
                raise self._upsert_error(target, batch_index, result, e)

    # ------------------------------------------------------------------
    # Statement building
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare(target: SyncTarget, row: Dict[str, Any], now) -> Dict[str, Any]:
        values = {k: v for k, v in row.items() if k not in target.preserve_fields}
        if "synced_at" in target.columns:
            values["synced_at"] = now
        if target.has_lifecycle:
            values["ns_deleted_at"] = None
        return values

    def _build_upsert(self, target: SyncTarget, values: List[Dict[str, Any]], coalesce: bool = True):
        insert_fn = pg_insert if self.dialect_name == "postgresql" else sqlite_insert
        stmt = insert_fn(target.model.__table__).values(values)

        if target.insert_only:
            return stmt.on_conflict_do_nothing(index_elements=list(target.natural_key))

        table_cols = target.columns
        set_ = {}
        for column in values[0]:
            if column in target.natural_key or column in target.preserve_fields:
                continue
            if coalesce and column in target.carry_forward_fields:
                set_[column] = func.coalesce(stmt.excluded[column], table_cols[column])
            else:
                set_[column] = stmt.excluded[column]

        return stmt.on_conflict_do_update(index_elements=list(target.natural_key), set_=set_)

    @staticmethod
    def _upsert_error(target: SyncTarget, batch_index: int, result: ReconcileResult, e: Exception) -> UpsertError:
        return UpsertError(
            f"Upsert into {target.table_name} failed",
            context={
                "table_name": target.table_name,
                "conflict_fields": list(target.natural_key),
                "batch_index": batch_index,
                "counts": result.as_dict(),
            },
            original_exception=e,
        )
