"""
Region collaborators — replication control, write fencing, metrics and routing.

The defaults talk to PostgreSQL over one DSN per region and publish the active
primary to a routing file read by the connection pooler.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Protocol

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from dr_engine.errors import ConfigurationError
from dr_engine.models.dr_configuration import ReplicationMode
from dr_engine.services.common import as_utc, utcnow

logger = logging.getLogger(__name__)


class ReplicationDriver(Protocol):
    def create_slot(self, primary: str, replica: str) -> str: ...

    def drop_slot(self, primary: str, slot_id: str) -> None: ...

    def latest_commit(self, region: str) -> datetime | None: ...

    def latest_applied(self, region: str) -> datetime | None: ...

    def set_mode(self, primary: str, replica: str, mode: ReplicationMode) -> None: ...


class RegionController(Protocol):
    def block_writes(self, region: str) -> None: ...

    def unblock_writes(self, region: str) -> None: ...

    def in_flight_writes(self, region: str) -> int: ...

    def terminate_writes(self, region: str) -> int: ...

    def promote(self, region: str) -> None: ...

    def synthetic_check(self, region: str) -> bool: ...


class MetricsSource(Protocol):
    def connection_count(self, region: str) -> int: ...

    def resource_usage(self, region: str) -> dict[str, float]: ...


class ConnectionRouter(Protocol):
    def update_target(self, region: str) -> None: ...


_REGION_NAME = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


def validate_region_name(region: str) -> str:
    if not region or not _REGION_NAME.match(region):
        raise ConfigurationError(f"Invalid region name: {region!r}", {"region": region})
    return region


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def slot_name(replica: str) -> str:
    safe = re.sub(r"[^a-z0-9_]", "_", replica.lower())
    return f"dr_{safe}_{uuid.uuid4().hex[:8]}"


class PostgresRegionDriver:
    """ReplicationDriver, RegionController and MetricsSource for PostgreSQL regions."""

    def __init__(self, region_dsns: dict[str, str]):
        self.region_dsns = dict(region_dsns)
        self._engines: dict[str, Engine] = {}
        self._lock = threading.Lock()

    def _engine(self, region: str) -> Engine:
        dsn = self.region_dsns.get(region)
        if not dsn:
            raise ConfigurationError(f"No DSN configured for region {region}")
        with self._lock:
            engine = self._engines.get(region)
            if engine is None:
                engine = create_engine(dsn, pool_pre_ping=True, pool_size=2, max_overflow=2)
                self._engines[region] = engine
            return engine

    def _autocommit(self, region: str) -> Connection:
        return self._engine(region).connect().execution_options(isolation_level="AUTOCOMMIT")

    def _scalar(self, region: str, sql: str, **params):
        with self._engine(region).connect() as conn:
            return conn.execute(text(sql), params).scalar()

    # -- replication -----------------------------------------------------

    def _require_regions(self, *regions: str) -> None:
        for region in regions:
            validate_region_name(region)
            if not self.region_dsns.get(region):
                raise ConfigurationError(f"No DSN configured for region {region}", {"region": region})

    def create_slot(self, primary: str, replica: str) -> str:
        self._require_regions(primary, replica)
        name = slot_name(replica)
        with self._autocommit(primary) as conn:
            conn.execute(text("SELECT pg_create_physical_replication_slot(:name)"), {"name": name})
        logger.info("Created replication slot %s on %s for %s", name, primary, replica)
        return name

    def drop_slot(self, primary: str, slot_id: str) -> None:
        with self._autocommit(primary) as conn:
            conn.execute(
                text(
                    "SELECT pg_drop_replication_slot(slot_name) FROM pg_replication_slots "
                    "WHERE slot_name = :name"
                ),
                {"name": slot_id},
            )

    def latest_commit(self, region: str) -> datetime | None:
        value = self._scalar(
            region,
            "SELECT COALESCE((pg_last_committed_xact()).timestamp, now())",
        )
        return as_utc(value)

    def latest_applied(self, region: str) -> datetime | None:
        return as_utc(self._scalar(region, "SELECT pg_last_xact_replay_timestamp()"))

    def set_mode(self, primary: str, replica: str, mode: ReplicationMode) -> None:
        self._require_regions(primary, replica)
        names = '"' + replica.replace('"', '""') + '"' if mode == ReplicationMode.sync else ""
        # ALTER SYSTEM takes no bind parameters.
        with self._autocommit(primary) as conn:
            conn.execute(text(f"ALTER SYSTEM SET synchronous_standby_names = {_quote_literal(names)}"))
            conn.execute(text("SELECT pg_reload_conf()"))
        logger.info("Set %s -> %s replication to %s", primary, replica, mode.value)

    # -- write fencing ---------------------------------------------------

    def _set_read_only(self, region: str, enabled: bool) -> None:
        value = "on" if enabled else "off"
        with self._autocommit(region) as conn:
            conn.execute(text(f"ALTER SYSTEM SET default_transaction_read_only = {value}"))
            conn.execute(text("SELECT pg_reload_conf()"))

    def block_writes(self, region: str) -> None:
        self._set_read_only(region, True)
        logger.info("Blocked new writes on %s", region)

    def unblock_writes(self, region: str) -> None:
        self._set_read_only(region, False)
        logger.info("Re-enabled writes on %s", region)

    def in_flight_writes(self, region: str) -> int:
        return int(
            self._scalar(
                region,
                "SELECT count(*) FROM pg_stat_activity "
                "WHERE backend_xid IS NOT NULL AND pid <> pg_backend_pid()",
            )
            or 0
        )

    def terminate_writes(self, region: str) -> int:
        with self._autocommit(region) as conn:
            terminated = conn.execute(
                text(
                    "SELECT count(pg_terminate_backend(pid)) FROM pg_stat_activity "
                    "WHERE backend_xid IS NOT NULL AND pid <> pg_backend_pid()"
                )
            ).scalar()
        return int(terminated or 0)

    def promote(self, region: str) -> None:
        with self._autocommit(region) as conn:
            promoted = conn.execute(text("SELECT pg_promote(true, 60)")).scalar()
        if not promoted:
            raise RuntimeError(f"pg_promote did not complete on {region}")
        logger.info("Promoted %s", region)

    def synthetic_check(self, region: str) -> bool:
        in_recovery = self._scalar(region, "SELECT pg_is_in_recovery()")
        read_only = self._scalar(region, "SHOW default_transaction_read_only")
        return in_recovery is False and read_only == "off"

    # -- metrics ---------------------------------------------------------

    def connection_count(self, region: str) -> int:
        return int(
            self._scalar(region, "SELECT count(*) FROM pg_stat_activity WHERE backend_type = 'client backend'")
            or 0
        )

    def resource_usage(self, region: str) -> dict[str, float]:
        used = self.connection_count(region)
        limit = int(self._scalar(region, "SHOW max_connections") or 0)
        if not limit:
            return {}
        return {"connections": round(used * 100.0 / limit, 2)}


class FileConnectionRouter:
    """Publishes the active primary region as JSON for the connection pooler."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def update_target(self, region: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({"primary_region": region, "updated_at": utcnow().isoformat()})
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".routing-")
        try:
            with os.fdopen(fd, "w") as fh:
                fh.write(payload)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Routing now points at %s", region)

    def current_target(self) -> str | None:
        if not self.path.exists():
            return None
        return json.loads(self.path.read_text()).get("primary_region")
