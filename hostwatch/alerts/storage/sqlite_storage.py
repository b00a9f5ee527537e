"""
SQLite storage backend for incidents and alert rules.
"""

import sqlite3
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple
from pathlib import Path

from hostwatch.alerts.storage.base_storage import BaseStorage, Incident, IncidentStatus
from hostwatch.errors import DuplicateOpenIncident, StorageError

logger = logging.getLogger(__name__)

UPDATABLE_COLUMNS = ('result', 'updated_at', 'resolved_at', 'status', 'severity', 'hostname')

RULE_COLUMNS = (
    'id', 'active', 'name', 'table', 'lookup', 'timing', 'warn', 'crit',
    'direction', 'info', 'host_uuid', 'cid', 'hostname', 'where_clause',
)


class SQLiteStorage(BaseStorage):
    """SQLite implementation of incident and rule storage"""

    def __init__(self, config: Dict):
        """
        Initialize SQLite storage.

        Args:
            config: Storage configuration dict with 'sqlite_path' key
        """
        self.db_path = config.get('sqlite_path', './data/incidents.db')
        self.retention_days = config.get('retention_days', 30)

        # Ensure directory exists
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # One connection shared by every host worker
        self._lock = threading.RLock()
        self.conn = None
        self._init_db()

        logger.info(f"Initialized SQLite storage at {self.db_path}")

    def _init_db(self):
        """Create database tables and indexes"""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self.conn.execute("PRAGMA journal_mode=WAL")

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS incidents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                result TEXT NOT NULL DEFAULT '',
                started_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                resolved_at TIMESTAMP,
                host_uuid VARCHAR(255) NOT NULL,
                hostname VARCHAR(255) NOT NULL DEFAULT '',
                status INTEGER NOT NULL,
                severity INTEGER NOT NULL,
                alerts_id INTEGER NOT NULL,
                cid VARCHAR(255) NOT NULL
            )
        """)

        # At most one open incident per rule and host
        self.conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_incidents_open
            ON incidents(alerts_id, host_uuid) WHERE resolved_at IS NULL
        """)
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_incidents_host ON incidents(host_uuid, updated_at)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_incidents_started_at ON incidents(started_at)"
        )

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY,
                active INTEGER NOT NULL DEFAULT 1,
                name VARCHAR(255) NOT NULL,
                "table" VARCHAR(64) NOT NULL,
                lookup TEXT NOT NULL,
                timing INTEGER NOT NULL,
                warn REAL NOT NULL,
                crit REAL NOT NULL,
                direction VARCHAR(16),
                info TEXT,
                host_uuid VARCHAR(255) NOT NULL,
                cid VARCHAR(255) NOT NULL,
                hostname VARCHAR(255) NOT NULL DEFAULT '',
                where_clause TEXT,
                UNIQUE (host_uuid, name)
            )
        """)

        # Template rules already bound to a host, kept after the rule is deleted
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS rule_installs (
                host_uuid VARCHAR(255) NOT NULL,
                name VARCHAR(255) NOT NULL,
                PRIMARY KEY (host_uuid, name)
            )
        """)

        self.conn.commit()

    def save_incident(self, incident: Incident) -> Incident:
        """Insert a new incident"""
        data = incident.to_dict()

        with self._lock:
            try:
                cursor = self.conn.execute("""
                    INSERT INTO incidents (
                        result, started_at, updated_at, resolved_at, host_uuid,
                        hostname, status, severity, alerts_id, cid
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    data['result'],
                    data['started_at'],
                    data['updated_at'],
                    data['resolved_at'],
                    data['host_uuid'],
                    data['hostname'],
                    data['status'],
                    data['severity'],
                    data['alerts_id'],
                    data['cid'],
                ))
                self.conn.commit()
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                raise DuplicateOpenIncident(
                    f"Open incident already exists for rule {incident.alerts_id} on {incident.host_uuid}"
                ) from e
            except sqlite3.Error as e:
                logger.error(f"Failed to save incident for rule {incident.alerts_id}: {e}")
                self.conn.rollback()
                raise StorageError(f"Failed to save incident: {e}") from e

        incident.id = cursor.lastrowid
        logger.debug(f"Saved incident {incident.id} (rule {incident.alerts_id}, host {incident.host_uuid})")
        return incident

    def _fetch_one(self, query: str, params) -> Optional[Incident]:
        try:
            with self._lock:
                row = self.conn.execute(query, params).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to read incident: {e}")
            raise StorageError(f"Failed to read incident: {e}") from e
        return Incident.from_dict(dict(row)) if row else None

    def _fetch_all(self, query: str, params) -> List[Incident]:
        try:
            with self._lock:
                rows = self.conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read incidents: {e}")
            raise StorageError(f"Failed to read incidents: {e}") from e
        return [Incident.from_dict(dict(row)) for row in rows]

    def get_incident(self, incident_id: int) -> Optional[Incident]:
        """Retrieve incident by id"""
        return self._fetch_one("SELECT * FROM incidents WHERE id = ?", (incident_id,))

    def get_open_incident(self, alerts_id: int, host_uuid: str) -> Optional[Incident]:
        """Get the open incident of a rule on a host"""
        return self._fetch_one("""
            SELECT * FROM incidents
            WHERE alerts_id = ? AND host_uuid = ? AND resolved_at IS NULL
        """, (alerts_id, host_uuid))

    def get_open_incidents(self, host_uuid: Optional[str] = None) -> List[Incident]:
        """Get all open incidents"""
        if host_uuid is None:
            return self._fetch_all("""
                SELECT * FROM incidents
                WHERE resolved_at IS NULL
                ORDER BY started_at DESC
            """, ())
        return self._fetch_all("""
            SELECT * FROM incidents
            WHERE resolved_at IS NULL AND host_uuid = ?
            ORDER BY started_at DESC
        """, (host_uuid,))

    def update_incident(self, incident_id: int, changes: Dict[str, Any],
                        open_only: bool = False) -> Optional[Incident]:
        """Update incident fields"""
        unknown = set(changes) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update incident columns: {sorted(unknown)}")
        if not changes:
            return self.get_incident(incident_id)

        columns = []
        values = []
        for column, value in changes.items():
            if isinstance(value, datetime):
                value = value.isoformat(timespec='microseconds')
            columns.append(f"{column} = ?")
            values.append(value)
        values.append(incident_id)

        query = f"UPDATE incidents SET {', '.join(columns)} WHERE id = ?"
        if open_only:
            query += " AND resolved_at IS NULL"

        with self._lock:
            try:
                cursor = self.conn.execute(query, values)
                self.conn.commit()
            except sqlite3.Error as e:
                logger.error(f"Failed to update incident {incident_id}: {e}")
                self.conn.rollback()
                raise StorageError(f"Failed to update incident {incident_id}: {e}") from e

            if cursor.rowcount == 0:
                logger.debug(f"Incident {incident_id} not updated: missing or already resolved")
                return None

            logger.debug(f"Updated incident {incident_id}: {sorted(changes)}")
            return self.get_incident(incident_id)

    def get_incidents_by_host(self, host_uuid: str, size: int = 50, page: int = 0) -> List[Incident]:
        """Page through a host's incidents"""
        return self._fetch_all("""
            SELECT * FROM incidents
            WHERE host_uuid = ?
            ORDER BY updated_at DESC, id DESC
            LIMIT ? OFFSET ?
        """, (host_uuid, size, page * size))

    def count_incidents(self, host_uuid: str) -> int:
        """Count a host's incidents"""
        try:
            with self._lock:
                row = self.conn.execute(
                    "SELECT COUNT(*) FROM incidents WHERE host_uuid = ?", (host_uuid,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to count incidents for {host_uuid}: {e}")
            raise StorageError(f"Failed to count incidents: {e}") from e
        return row[0]

    def cleanup_old_incidents(self, days: int) -> int:
        """Delete resolved incidents older than specified days"""
        try:
            cutoff_date = datetime.now() - timedelta(days=days)

            with self._lock:
                cursor = self.conn.execute("""
                    DELETE FROM incidents
                    WHERE resolved_at IS NOT NULL
                    AND resolved_at < ?
                    AND status = ?
                """, (cutoff_date.isoformat(timespec='microseconds'), IncidentStatus.RESOLVED))

                deleted_count = cursor.rowcount
                self.conn.commit()

            if deleted_count > 0:
                logger.info(f"Cleaned up {deleted_count} old incidents (>{days} days)")

            return deleted_count

        except sqlite3.Error as e:
            logger.error(f"Failed to cleanup old incidents: {e}")
            self.conn.rollback()
            return 0

    def _execute_write(self, query: str, params, action: str) -> int:
        with self._lock:
            try:
                cursor = self.conn.execute(query, params)
                self.conn.commit()
            except sqlite3.Error as e:
                logger.error(f"Failed to {action}: {e}")
                self.conn.rollback()
                raise StorageError(f"Failed to {action}: {e}") from e
        return cursor.rowcount

    def save_rule(self, rule: Dict[str, Any]) -> None:
        """Insert or replace an alert rule row"""
        row = dict(rule)
        row['active'] = 1 if row.get('active', True) else 0
        placeholders = ', '.join('?' for _ in RULE_COLUMNS)
        columns = ', '.join(f'"{column}"' for column in RULE_COLUMNS)

        self._execute_write(
            f"INSERT OR REPLACE INTO alerts ({columns}) VALUES ({placeholders})",
            tuple(row.get(column) for column in RULE_COLUMNS),
            f"save alert rule {row.get('id')}",
        )
        logger.debug(f"Saved alert rule {row.get('id')} ({row.get('name')})")

    def delete_rule(self, rule_id: int) -> bool:
        """Delete an alert rule row"""
        deleted = self._execute_write(
            "DELETE FROM alerts WHERE id = ?", (rule_id,), f"delete alert rule {rule_id}"
        )
        return deleted > 0

    def get_rules(self) -> List[Dict[str, Any]]:
        """Every stored alert rule, by id"""
        try:
            with self._lock:
                rows = self.conn.execute("SELECT * FROM alerts ORDER BY id").fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read alert rules: {e}")
            raise StorageError(f"Failed to read alert rules: {e}") from e

        rules = []
        for row in rows:
            data = dict(row)
            data['active'] = bool(data['active'])
            rules.append(data)
        return rules

    def record_rule_install(self, host_uuid: str, name: str) -> None:
        """Remember that a template rule was bound to a host"""
        self._execute_write(
            "INSERT OR IGNORE INTO rule_installs (host_uuid, name) VALUES (?, ?)",
            (host_uuid, name),
            f"record install of {name} on {host_uuid}",
        )

    def get_rule_installs(self) -> Set[Tuple[str, str]]:
        """(host_uuid, name) pairs of every template rule ever installed"""
        try:
            with self._lock:
                rows = self.conn.execute("SELECT host_uuid, name FROM rule_installs").fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read rule installs: {e}")
            raise StorageError(f"Failed to read rule installs: {e}") from e
        return {(row['host_uuid'], row['name']) for row in rows}

    def close(self) -> None:
        """Close database connection"""
        if self.conn:
            try:
                self.conn.close()
                logger.debug("Closed SQLite connection")
            except sqlite3.Error as e:
                logger.error(f"Error closing SQLite connection: {e}")
