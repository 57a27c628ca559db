"""
Data Source / Restore Target — export and re-load the protected dataset.

Backups use a canonical JSON-lines format, one record per line, sorted by
table and primary key::

    {"table": "...", "key": [...], "changed_at": "...", "op": "upsert", "row": {...}}

A full export of a dataset and the serialization of a restored dataset are
byte-identical when the data matches, which is what restore verification
compares.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Protocol

from sqlalchemy import Date, DateTime, MetaData, Table, delete, insert, select
from sqlalchemy.engine import Engine

from dr_engine.errors import ConfigurationError
from dr_engine.models.backup import BackupType
from dr_engine.services.common import as_utc
from dr_engine.services.storage_backend import sha256_hex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportResult:
    payload: bytes
    row_count: int
    latest_change_at: datetime | None


@dataclass(frozen=True)
class RestoreResult:
    row_count: int
    checksum: str
    latest_change_at: datetime | None


class DataSource(Protocol):
    def export(
        self,
        kind: BackupType,
        scope: dict,
        since: datetime | None,
        until: datetime | None = None,
    ) -> ExportResult: ...


class RestoreTarget(Protocol):
    def restore(self, artifacts: list[bytes], until: datetime | None = None) -> RestoreResult: ...

    def checksum(self) -> str: ...


# ---------------------------------------------------------------------------
# Canonical format helpers
# ---------------------------------------------------------------------------


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


def _sort_key(record: dict) -> tuple:
    return (record["table"], json.dumps(record["key"], default=_json_default))


def serialize_records(records: Iterable[dict]) -> bytes:
    lines = [
        json.dumps(record, sort_keys=True, separators=(",", ":"), default=_json_default)
        for record in sorted(records, key=_sort_key)
    ]
    return ("\n".join(lines) + "\n").encode() if lines else b""


def parse_records(payload: bytes) -> list[dict]:
    return [json.loads(line) for line in payload.decode().splitlines() if line.strip()]


def latest_change(records: Iterable[dict]) -> datetime | None:
    stamps = [_parse_ts(r.get("changed_at")) for r in records]
    stamps = [s for s in stamps if s is not None]
    return max(stamps) if stamps else None


def merge_artifacts(artifacts: list[bytes], until: datetime | None = None) -> dict[tuple, dict]:
    """Replay artifacts in order into a dataset keyed by (table, key).

    Records changed after ``until`` are skipped, which is how point-in-time
    restores stop replay at the target timestamp.
    """
    until = as_utc(until)
    dataset: dict[tuple, dict] = {}
    for payload in artifacts:
        for record in parse_records(payload):
            changed_at = _parse_ts(record.get("changed_at"))
            if until is not None and changed_at is not None and changed_at > until:
                continue
            ident = (record["table"], json.dumps(record["key"], default=_json_default))
            if record.get("op") == "delete":
                dataset.pop(ident, None)
            else:
                dataset[ident] = {**record, "op": "upsert"}
    return dataset


def dataset_checksum(dataset: dict[tuple, dict]) -> str:
    return sha256_hex(serialize_records(dataset.values()))


# ---------------------------------------------------------------------------
# SQLAlchemy implementations
# ---------------------------------------------------------------------------


class SqlTableSource:
    """Exports rows of reflected tables; ``change_column`` drives incrementals.

    Log archives are read from ``change_log_table`` (columns: table_name,
    row_key, operation, row_data, changed_at) when one is configured.
    """

    def __init__(self, engine: Engine, change_column: str = "updated_at", change_log_table: str | None = None):
        self.engine = engine
        self.change_column = change_column
        self.change_log_table = change_log_table

    def _tables(self, scope: dict) -> list[Table]:
        metadata = MetaData()
        schemas = scope.get("schemas") or [None]
        names = set(scope.get("tables") or [])
        tables: list[Table] = []
        for schema in schemas:
            metadata.reflect(bind=self.engine, schema=schema)
        for table in metadata.sorted_tables:
            if table.name == self.change_log_table:
                continue
            if names and table.name not in names and table.fullname not in names:
                continue
            tables.append(table)
        if names and not tables:
            raise ConfigurationError(f"No tables matched scope {sorted(names)}")
        return tables

    def _records(self, table: Table, since: datetime | None, until: datetime | None) -> list[dict]:
        stmt = select(table)
        change_col = table.c.get(self.change_column)
        if change_col is not None:
            if since is not None:
                stmt = stmt.where(change_col > since)
            if until is not None:
                stmt = stmt.where(change_col <= until)
        elif since is not None:
            # Without a change column nothing can be proven unchanged.
            logger.debug("Table %s has no %s column; exporting fully", table.name, self.change_column)
        pk_cols = list(table.primary_key.columns) or list(table.columns)
        records = []
        with self.engine.connect() as conn:
            for row in conn.execute(stmt).mappings():
                row_data = dict(row)
                changed_at = row_data.get(self.change_column) if change_col is not None else None
                records.append(
                    {
                        "table": table.fullname,
                        "key": [row_data[c.name] for c in pk_cols],
                        "changed_at": as_utc(changed_at) if isinstance(changed_at, datetime) else changed_at,
                        "op": "upsert",
                        "row": row_data,
                    }
                )
        return records

    def _change_log_records(self, since: datetime | None, until: datetime | None) -> list[dict]:
        if not self.change_log_table:
            raise ConfigurationError("Log-archive backups require a change log table")
        metadata = MetaData()
        log = Table(self.change_log_table, metadata, autoload_with=self.engine)
        stmt = select(log).order_by(log.c.changed_at)
        if since is not None:
            stmt = stmt.where(log.c.changed_at > since)
        if until is not None:
            stmt = stmt.where(log.c.changed_at <= until)
        records = []
        with self.engine.connect() as conn:
            for row in conn.execute(stmt).mappings():
                row_data = row["row_data"]
                if isinstance(row_data, str):
                    row_data = json.loads(row_data)
                key = row["row_key"]
                if isinstance(key, str):
                    key = json.loads(key)
                records.append(
                    {
                        "table": row["table_name"],
                        "key": key,
                        "changed_at": as_utc(row["changed_at"]),
                        "op": "delete" if row["operation"] == "delete" else "upsert",
                        "row": row_data or {},
                    }
                )
        return records

    def export(
        self,
        kind: BackupType,
        scope: dict,
        since: datetime | None,
        until: datetime | None = None,
    ) -> ExportResult:
        match kind:
            case BackupType.full:
                records = [r for t in self._tables(scope) for r in self._records(t, None, until)]
            case BackupType.incremental:
                records = [r for t in self._tables(scope) for r in self._records(t, since, until)]
            case BackupType.log_archive:
                # Replay order matters for logs, so keep them in commit order.
                records = self._change_log_records(since, until)
                payload = "".join(
                    json.dumps(r, sort_keys=True, separators=(",", ":"), default=_json_default) + "\n"
                    for r in records
                ).encode()
                return ExportResult(payload, len(records), latest_change(_roundtrip(records)))
        payload = serialize_records(records)
        return ExportResult(payload, len(records), latest_change(_roundtrip(records)))


def _roundtrip(records: list[dict]) -> list[dict]:
    return [json.loads(json.dumps(r, default=_json_default)) for r in records]


class SqlRestoreTarget:
    """Loads a merged dataset into an isolated database and re-exports it."""

    def __init__(self, engine: Engine, change_column: str = "updated_at"):
        self.engine = engine
        self.change_column = change_column

    def _coerce(self, table: Table, row: dict) -> dict:
        values = {}
        for name, value in row.items():
            column = table.c.get(name)
            if column is None:
                continue
            if isinstance(value, str) and isinstance(column.type, DateTime):
                value = datetime.fromisoformat(value)
            elif isinstance(value, str) and isinstance(column.type, Date):
                value = date.fromisoformat(value)
            values[name] = value
        return values

    def restore(self, artifacts: list[bytes], until: datetime | None = None) -> RestoreResult:
        dataset = merge_artifacts(artifacts, until)
        by_table: dict[str, list[dict]] = {}
        for record in dataset.values():
            by_table.setdefault(record["table"], []).append(record["row"])

        metadata = MetaData()
        metadata.reflect(bind=self.engine)
        with self.engine.begin() as conn:
            for table_name, rows in by_table.items():
                table = metadata.tables.get(table_name)
                if table is None:
                    raise ConfigurationError(f"Restore target has no table {table_name}")
                conn.execute(delete(table))
                conn.execute(insert(table), [self._coerce(table, row) for row in rows])

        exported = self._reexport(sorted(by_table))
        return RestoreResult(
            row_count=exported.row_count,
            checksum=sha256_hex(exported.payload),
            latest_change_at=exported.latest_change_at,
        )

    def _reexport(self, tables: list[str] | None = None) -> ExportResult:
        source = SqlTableSource(self.engine, change_column=self.change_column)
        return source.export(BackupType.full, {"tables": tables or []}, None)

    def checksum(self) -> str:
        return sha256_hex(self._reexport().payload)
