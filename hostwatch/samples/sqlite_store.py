"""
SQLite sample store.

Holds the host and metric tables that agents feed. hostwatch only reads
them during evaluation; the write helpers exist for feeders and tests.
"""

import sqlite3
import logging
import threading
from dataclasses import fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from hostwatch.errors import StorageError
from hostwatch.samples.base_store import BaseSampleStore
from hostwatch.samples.models import Host, SAMPLE_TYPES, resolve_table, sample_columns, fields_of

logger = logging.getLogger(__name__)

_SQL_TYPES = {
    int: 'INTEGER',
    float: 'REAL',
    str: 'VARCHAR(255)',
}


def _to_db_time(value: datetime) -> str:
    return value.isoformat(timespec='microseconds')


def _from_db_time(value):
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class SQLiteSampleStore(BaseSampleStore):
    """SQLite implementation of the sample store"""

    def __init__(self, config: Dict):
        """
        Initialize SQLite sample store.

        Args:
            config: Samples configuration dict with 'sqlite_path' key
        """
        self.db_path = config.get('sqlite_path', './data/samples.db')

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self.conn = None
        self._init_db()

        logger.info(f"Initialized SQLite sample store at {self.db_path}")

    def _init_db(self):
        """Create host and sample tables"""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS hosts (
                uuid VARCHAR(255) PRIMARY KEY,
                system VARCHAR(255) NOT NULL DEFAULT '',
                os_version VARCHAR(255) NOT NULL DEFAULT '',
                hostname VARCHAR(255) NOT NULL,
                uptime INTEGER NOT NULL DEFAULT 0,
                sync_interval INTEGER,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)

        for table, sample_type in SAMPLE_TYPES.items():
            columns = []
            for f in fields(sample_type):
                if f.name in ('id', 'host_uuid', 'created_at'):
                    continue
                columns.append(f"{f.name} {_SQL_TYPES.get(f.type, 'INTEGER')}")

            self.conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    {', '.join(columns)},
                    host_uuid VARCHAR(255) NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
            """)
            self.conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_host_time ON {table}(host_uuid, created_at)"
            )

        self.conn.commit()

    def upsert_host(self, host: Host) -> Host:
        """
        Record a host heartbeat.

        The first call creates the host; later calls refresh its attributes
        and updated_at while keeping created_at.
        """
        now = datetime.now()
        created_at = host.created_at or now
        updated_at = host.updated_at or now

        try:
            with self._lock:
                self.conn.execute("""
                    INSERT INTO hosts (uuid, system, os_version, hostname, uptime,
                                       sync_interval, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(uuid) DO UPDATE SET
                        system = excluded.system,
                        os_version = excluded.os_version,
                        hostname = excluded.hostname,
                        uptime = excluded.uptime,
                        sync_interval = excluded.sync_interval,
                        updated_at = excluded.updated_at
                """, (
                    host.uuid, host.system, host.os_version, host.hostname, host.uptime,
                    host.sync_interval, _to_db_time(created_at), _to_db_time(updated_at),
                ))
                self.conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to upsert host {host.uuid}: {e}")
            self.conn.rollback()
            raise StorageError(f"Failed to upsert host {host.uuid}: {e}") from e

        return self.get_host(host.uuid)

    def insert_sample(self, table: str, sample: Any) -> int:
        """
        Append one sample row.

        Returns:
            The new row id
        """
        table = resolve_table(table)
        data = fields_of(sample)
        columns = sample_columns(table)
        values = []
        for column in columns:
            value = data.get(column)
            if column == 'created_at':
                value = _to_db_time(value)
            values.append(value)

        try:
            with self._lock:
                cursor = self.conn.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    values
                )
                self.conn.commit()
                return cursor.lastrowid
        except sqlite3.Error as e:
            logger.error(f"Failed to insert sample into {table}: {e}")
            self.conn.rollback()
            raise StorageError(f"Failed to insert sample into {table}: {e}") from e

    def get_hosts(self) -> List[Host]:
        """Get every known host"""
        try:
            with self._lock:
                rows = self.conn.execute("SELECT * FROM hosts ORDER BY uuid").fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to list hosts: {e}")
            raise StorageError(f"Failed to list hosts: {e}") from e

        return [self._row_to_host(row) for row in rows]

    def get_host(self, uuid: str) -> Optional[Host]:
        """Get a host by uuid"""
        try:
            with self._lock:
                row = self.conn.execute("SELECT * FROM hosts WHERE uuid = ?", (uuid,)).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to get host {uuid}: {e}")
            raise StorageError(f"Failed to get host {uuid}: {e}") from e

        return self._row_to_host(row) if row else None

    def get_recent_samples(self, table: str, host_uuid: str,
                           window_seconds: int = 0) -> List[Any]:
        """Get the latest capture, or every row within window_seconds of it"""
        table = resolve_table(table)
        sample_type = SAMPLE_TYPES[table]

        try:
            with self._lock:
                latest = self.conn.execute(
                    f"SELECT MAX(created_at) FROM {table} WHERE host_uuid = ?",
                    (host_uuid,)
                ).fetchone()[0]

                if latest is None:
                    return []

                cutoff = _from_db_time(latest) - timedelta(seconds=max(window_seconds, 0))
                rows = self.conn.execute(f"""
                    SELECT * FROM {table}
                    WHERE host_uuid = ? AND created_at >= ?
                    ORDER BY created_at ASC, id ASC
                """, (host_uuid, _to_db_time(cutoff))).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read {table} samples for {host_uuid}: {e}")
            raise StorageError(f"Failed to read {table} samples for {host_uuid}: {e}") from e

        samples = []
        for row in rows:
            data = dict(row)
            data['created_at'] = _from_db_time(data['created_at'])
            samples.append(sample_type(**data))
        return samples

    def _row_to_host(self, row) -> Host:
        data = dict(row)
        data['created_at'] = _from_db_time(data['created_at'])
        data['updated_at'] = _from_db_time(data['updated_at'])
        return Host(**data)

    def close(self) -> None:
        """Close database connection"""
        if self.conn:
            try:
                self.conn.close()
                logger.debug("Closed SQLite sample store connection")
            except sqlite3.Error as e:
                logger.error(f"Error closing SQLite sample store: {e}")
