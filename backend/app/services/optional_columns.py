# backend/app/services/optional_columns.py
"""
Schema-drift tolerant writes and reads.

Every write path that touches columns added by later migrations declares a
WriteSchema: the columns it always writes and the columns it may drop when a
deployed database has not been migrated yet. Each attempt runs in a SAVEPOINT;
an undefined-column error on an optional column drops that column and retries.
Reads declare the columns they need the same way; a missing optional column
comes back as NULL under its own name. Anything else propagates.
"""

import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, null, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import SchemaDriftError

logger = logging.getLogger(__name__)

UNDEFINED_COLUMN_SQLSTATE = "42703"

_MISSING_COLUMN_PATTERNS = (
    re.compile(r"column [\"']?(?:[a-zA-Z0-9_]+\.)?([a-zA-Z0-9_]+)[\"']? (?:of relation [\"']?[a-zA-Z0-9_]+[\"']? )?does not exist", re.IGNORECASE),
    re.compile(r"Could not find the ['\"]([a-zA-Z0-9_]+)['\"] column", re.IGNORECASE),
    re.compile(r"schema cache.*['\"]([a-zA-Z0-9_]+)['\"]", re.IGNORECASE),
)


def extract_missing_column(error: BaseException) -> Optional[str]:
    """Name of the column an undefined-column error complains about, if any."""
    text = str(error)
    orig = getattr(error, "orig", None)
    if orig is not None:
        text = f"{text} {orig}"

    for pattern in _MISSING_COLUMN_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def is_undefined_column_error(error: BaseException) -> bool:
    orig = getattr(error, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == UNDEFINED_COLUMN_SQLSTATE:
        return True
    return extract_missing_column(error) is not None


class WriteSchema:
    """
    Declared write shape for one table.

    Column names are checked against the mapped table at import time so a
    typo in an optional set fails loudly instead of being silently dropped.
    """

    def __init__(
        self,
        model: Any,
        required: Sequence[str],
        optional: Sequence[str] = (),
        conflict_columns: Sequence[str] = (),
        preserve_existing: Sequence[str] = (),
        version: int = 1
    ):
        self.model = model
        self.table_name = model.__table__.name
        self.required = tuple(required)
        self.optional = frozenset(optional)
        self.conflict_columns = tuple(conflict_columns)
        self.preserve_existing = frozenset(preserve_existing)
        self.version = version

        known = set(model.__table__.columns.keys())
        declared = set(self.required) | self.optional | set(self.conflict_columns) | self.preserve_existing
        unknown = declared - known
        if unknown:
            raise ValueError(f"{self.table_name} write schema v{version} has unknown columns: {sorted(unknown)}")
        overlap = set(self.required) & self.optional
        if overlap:
            raise ValueError(f"{self.table_name} columns both required and optional: {sorted(overlap)}")

    @property
    def columns(self) -> frozenset:
        return frozenset(self.required) | self.optional | frozenset(self.conflict_columns)

    def prepare(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Keep declared columns and drop None so existing values are never nulled."""
        unknown = set(values) - self.columns
        if unknown:
            raise ValueError(f"{self.table_name} write received undeclared columns: {sorted(unknown)}")
        return {key: value for key, value in values.items() if value is not None}


class WriteOutcome:
    """Result of a drift-tolerant write."""

    def __init__(self, value: Any, payload_used: Dict[str, Any], dropped_columns: List[str]):
        self.value = value
        self.payload_used = payload_used
        self.dropped_columns = dropped_columns


async def execute_with_optional_columns(
    db: AsyncSession,
    schema: WriteSchema,
    values: Dict[str, Any],
    build_statement: Callable[[Dict[str, Any]], Any],
    collect: Callable[[Any], Any] = lambda result: None
) -> WriteOutcome:
    """Run build_statement(payload), dropping missing optional columns between attempts."""
    payload = schema.prepare(values)
    dropped: List[str] = []

    while True:
        try:
            async with db.begin_nested():
                result = await db.execute(build_statement(payload))
                value = collect(result)
            return WriteOutcome(value, payload, dropped)
        except DBAPIError as exc:
            if not is_undefined_column_error(exc):
                raise
            column = extract_missing_column(exc)
            if column is None or column not in payload:
                raise
            if column not in schema.optional:
                raise SchemaDriftError(column, schema.table_name) from exc

            logger.warning(
                f"Column {column} missing on {schema.table_name} "
                f"(write schema v{schema.version}); retrying without it"
            )
            payload = {key: value for key, value in payload.items() if key != column}
            dropped.append(column)
            if not payload:
                return WriteOutcome(None, payload, dropped)


async def upsert_row(
    db: AsyncSession,
    schema: WriteSchema,
    values: Dict[str, Any],
    update_columns: Optional[Iterable[str]] = None
) -> WriteOutcome:
    """
    INSERT .. ON CONFLICT (conflict_columns) DO UPDATE, returning the row id.

    Columns in preserve_existing only fill NULLs on conflict. update_columns
    restricts which supplied columns are refreshed on conflict.
    """
    model = schema.model
    restrict = set(update_columns) if update_columns is not None else None

    def build(payload: Dict[str, Any]):
        stmt = insert(model).values(**payload)
        set_: Dict[str, Any] = {}
        for key in payload:
            if key in schema.conflict_columns:
                continue
            if restrict is not None and key not in restrict:
                continue
            if key in schema.preserve_existing:
                set_[key] = func.coalesce(getattr(model, key), stmt.excluded[key])
            else:
                set_[key] = stmt.excluded[key]

        if set_:
            stmt = stmt.on_conflict_do_update(index_elements=list(schema.conflict_columns), set_=set_)
        else:
            # Touch a conflict column so RETURNING still yields the existing row.
            first = schema.conflict_columns[0]
            stmt = stmt.on_conflict_do_update(
                index_elements=list(schema.conflict_columns),
                set_={first: stmt.excluded[first]}
            )
        return stmt.returning(model.id)

    return await execute_with_optional_columns(db, schema, values, build, lambda result: result.scalar_one())


async def insert_if_absent(
    db: AsyncSession,
    schema: WriteSchema,
    values: Dict[str, Any]
) -> WriteOutcome:
    """INSERT .. ON CONFLICT DO NOTHING; value is the new id or None when the key existed."""
    model = schema.model

    def build(payload: Dict[str, Any]):
        return (
            insert(model)
            .values(**payload)
            .on_conflict_do_nothing(index_elements=list(schema.conflict_columns))
            .returning(model.id)
        )

    return await execute_with_optional_columns(db, schema, values, build, lambda result: result.scalar_one_or_none())


async def update_rows(
    db: AsyncSession,
    schema: WriteSchema,
    values: Dict[str, Any],
    *criteria: Any
) -> WriteOutcome:
    """UPDATE .. WHERE criteria; value is the affected row count."""
    model = schema.model

    def build(payload: Dict[str, Any]):
        return update(model).where(*criteria).values(**payload)

    if not schema.prepare(values):
        return WriteOutcome(0, {}, [])
    return await execute_with_optional_columns(db, schema, values, build, lambda result: result.rowcount)



async def read_with_optional_columns(
    db: AsyncSession,
    schema: WriteSchema,
    columns: Sequence[str],
    build_statement: Callable[[List[Any]], Any],
    collect: Callable[[Any], Any] = lambda result: list(result.all())
) -> Any:
    """
    Run build_statement(selected) where selected holds one column per name.

    An optional column the live table lacks is replaced by NULL labelled
    with the column name, so rows keep the same attributes. Criteria that
    reference the missing column still fail.
    """
    unknown = set(columns) - set(schema.model.__table__.columns.keys())
    if unknown:
        raise ValueError(f"{schema.table_name} read of unknown columns: {sorted(unknown)}")

    dropped: List[str] = []
    while True:
        selected = [
            null().label(name) if name in dropped else getattr(schema.model, name)
            for name in columns
        ]
        try:
            async with db.begin_nested():
                result = await db.execute(build_statement(selected))
                return collect(result)
        except DBAPIError as exc:
            if not is_undefined_column_error(exc):
                raise
            column = extract_missing_column(exc)
            if column is None or column not in columns or column in dropped:
                raise
            if column not in schema.optional:
                raise SchemaDriftError(column, schema.table_name) from exc

            logger.warning(
                f"Column {column} missing on {schema.table_name} "
                f"(write schema v{schema.version}); reading it as NULL"
            )
            dropped.append(column)
