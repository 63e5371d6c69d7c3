"""SQLite store for alert rules, alerts, alert history, and the metric sources the engine reads."""
import json
import sqlite3
import logging
import threading
from pathlib import Path

from models.alerts import AlertRule, Alert, AlertHistoryEntry
from models.enums import OPEN_STATUSES
from utils.formatters import utcnow, to_iso, from_iso

logger = logging.getLogger("alertengine.db")

RULE_COLUMNS = (
    "id", "name", "enabled", "metric_source", "metric_name", "threshold_value",
    "threshold_operator", "threshold_unit", "evaluation_window_minutes", "cooldown_minutes",
    "consecutive_failures_required", "max_alerts_per_hour", "severity", "team_id", "description",
)


class Database:
    def __init__(self, db_path="data/alerts.db"):
        self.db_path = db_path
        self.conn = None
        # One connection shared by the engine's worker threads
        self._lock = threading.RLock()

    def connect(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS alert_rules (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                metric_source TEXT NOT NULL,
                metric_name TEXT NOT NULL,
                threshold_value REAL NOT NULL,
                threshold_operator TEXT NOT NULL,
                threshold_unit TEXT,
                evaluation_window_minutes INTEGER NOT NULL DEFAULT 5,
                cooldown_minutes INTEGER NOT NULL DEFAULT 15,
                consecutive_failures_required INTEGER NOT NULL DEFAULT 1,
                max_alerts_per_hour INTEGER NOT NULL DEFAULT 10,
                severity TEXT NOT NULL,
                team_id TEXT NOT NULL,
                description TEXT DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_rule_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                severity TEXT NOT NULL,
                metric_name TEXT,
                metric_value REAL,
                threshold_value REAL,
                threshold_operator TEXT,
                context TEXT DEFAULT '{}',
                team_id TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                created_at TEXT NOT NULL,
                updated_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_alerts_rule_created
                ON alerts(alert_rule_id, created_at);

            CREATE TABLE IF NOT EXISTS alert_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                event_description TEXT,
                new_status TEXT,
                metadata TEXT DEFAULT '{}',
                created_at TEXT NOT NULL,
                FOREIGN KEY (alert_id) REFERENCES alerts(id)
            );

            CREATE TABLE IF NOT EXISTS rule_failure_counters (
                rule_id TEXT PRIMARY KEY,
                count INTEGER NOT NULL DEFAULT 0,
                last_failure_at TEXT
            );

            CREATE TABLE IF NOT EXISTS embedding_performance_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                team_id TEXT,
                status TEXT NOT NULL,
                total_duration_ms REAL,
                api_calls_made INTEGER DEFAULT 0,
                api_tokens_used INTEGER DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_embedding_team_created
                ON embedding_performance_metrics(team_id, created_at);

            CREATE TABLE IF NOT EXISTS performance_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                metric_name TEXT NOT NULL,
                metric_type TEXT,
                metric_value REAL NOT NULL,
                metric_unit TEXT,
                context TEXT DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_performance_name_created
                ON performance_metrics(metric_name, created_at);

            CREATE TABLE IF NOT EXISTS alert_notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id INTEGER,
                channel TEXT,
                delivery_status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                sent_at TEXT,
                delivered_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_notifications_created
                ON alert_notifications(created_at);
        """)
        self.conn.commit()

    def ping(self):
        """Trivial query used for reachability checks. Raises if the store is unusable."""
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) AS cnt FROM alert_rules").fetchone()
            return row["cnt"]

    # --- Alert Rules ---

    def save_alert_rule(self, rule: AlertRule):
        now = to_iso(utcnow())
        values = [getattr(rule, c) for c in RULE_COLUMNS]
        values[RULE_COLUMNS.index("enabled")] = int(rule.enabled)
        updates = ", ".join(f"{c} = excluded.{c}" for c in RULE_COLUMNS if c != "id")
        with self._lock:
            self.conn.execute(f"""
                INSERT INTO alert_rules ({", ".join(RULE_COLUMNS)}, created_at, updated_at)
                VALUES ({", ".join("?" for _ in RULE_COLUMNS)}, ?, ?)
                ON CONFLICT(id) DO UPDATE SET {updates}, updated_at = excluded.updated_at
            """, (*values, now, now))
            self.conn.commit()
        logger.debug(f"Saved alert rule {rule.id}")

    def get_alert_rules(self, team_id=None):
        query = "SELECT * FROM alert_rules WHERE 1=1"
        params = []
        if team_id:
            query += " AND team_id = ?"
            params.append(team_id)
        query += " ORDER BY name ASC"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [AlertRule.from_dict(dict(r)) for r in rows]

    def list_enabled_alert_rules(self, team_id=None):
        return [r for r in self.get_alert_rules(team_id) if r.enabled]

    def get_alert_rule(self, rule_id):
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM alert_rules WHERE id = ?", (rule_id,)
            ).fetchone()
        return AlertRule.from_dict(dict(row)) if row else None

    # --- Alerts ---

    def _insert_alert_row(self, fields):
        created_at = to_iso(fields.get("created_at") or utcnow())
        columns = [
            "alert_rule_id", "title", "description", "severity", "metric_name",
            "metric_value", "threshold_value", "threshold_operator", "team_id",
        ]
        values = [fields.get(c) for c in columns]
        columns += ["context", "created_at"]
        values += [json.dumps(fields.get("context") or {}), created_at]
        if fields.get("status"):
            columns.append("status")
            values.append(fields["status"])
        cur = self.conn.execute(
            f"INSERT INTO alerts ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            values,
        )
        return cur.lastrowid

    def insert_alert(self, fields):
        """Insert an alert row. Status is left to the column default unless given."""
        with self._lock:
            with self.conn:
                alert_id = self._insert_alert_row(fields)
            return self.get_alert(alert_id)

    def create_alert(self, fields, history, since, max_per_hour):
        """Insert an alert and its "created" history entry in one transaction.

        The open-alert and hourly-limit checks run inside the same transaction,
        so two concurrent callers for one rule cannot both insert. Returns
        (alert, None) on success, or (None, "open_alert" | "rate_limited").
        """
        rule_id = fields["alert_rule_id"]
        with self._lock:
            with self.conn:
                open_count = self.conn.execute(
                    f"SELECT COUNT(*) FROM alerts WHERE alert_rule_id = ? "
                    f"AND status IN ({', '.join('?' for _ in OPEN_STATUSES)})",
                    (rule_id, *OPEN_STATUSES),
                ).fetchone()[0]
                if open_count:
                    return None, "open_alert"
                recent = self.conn.execute(
                    "SELECT COUNT(*) FROM alerts WHERE alert_rule_id = ? AND created_at >= ?",
                    (rule_id, to_iso(since)),
                ).fetchone()[0]
                if recent >= max_per_hour:
                    return None, "rate_limited"
                alert_id = self._insert_alert_row(fields)
                self._insert_history_row({**history, "alert_id": alert_id})
            return self.get_alert(alert_id), None

    def get_alert(self, alert_id):
        with self._lock:
            row = self.conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        return self._row_to_alert(row) if row else None

    def query_alerts(self, alert_rule_id=None, status=None, date_from=None, team_id=None, limit=None):
        """Alerts matching every given filter, newest first. `status` may be a string or a list."""
        query = "SELECT * FROM alerts WHERE 1=1"
        params = []
        if alert_rule_id is not None:
            query += " AND alert_rule_id = ?"
            params.append(alert_rule_id)
        if status:
            statuses = [status] if isinstance(status, str) else list(status)
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        if date_from is not None:
            query += " AND created_at >= ?"
            params.append(to_iso(date_from))
        if team_id:
            query += " AND team_id = ?"
            params.append(team_id)
        query += " ORDER BY created_at DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_alert(r) for r in rows]

    def get_last_alert_time(self, rule_id):
        with self._lock:
            row = self.conn.execute("""
                SELECT created_at FROM alerts
                WHERE alert_rule_id = ? ORDER BY created_at DESC LIMIT 1
            """, (rule_id,)).fetchone()
        if row:
            return from_iso(row["created_at"])
        return None

    def update_alert_status(self, alert_id, status, at=None):
        """Change an alert's status and append a status_changed history entry."""
        at = at or utcnow()
        with self._lock:
            with self.conn:
                cur = self.conn.execute(
                    "UPDATE alerts SET status = ?, updated_at = ? WHERE id = ?",
                    (status, to_iso(at), alert_id),
                )
                if cur.rowcount == 0:
                    return False
                self._insert_history_row({
                    "alert_id": alert_id,
                    "event_type": "status_changed",
                    "event_description": f"Alert marked {status}",
                    "new_status": status,
                    "created_at": at,
                })
        return True

    def _row_to_alert(self, row):
        d = dict(row)
        d["context"] = json.loads(d.get("context") or "{}")
        d["created_at"] = from_iso(d["created_at"])
        d.pop("updated_at", None)
        return Alert(**d)

    # --- Alert History ---

    def _insert_history_row(self, fields):
        cur = self.conn.execute("""
            INSERT INTO alert_history
            (alert_id, event_type, event_description, new_status, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            fields["alert_id"], fields.get("event_type", "created"),
            fields.get("event_description", ""), fields.get("new_status"),
            json.dumps(fields.get("metadata") or {}),
            to_iso(fields.get("created_at") or utcnow()),
        ))
        return cur.lastrowid

    def get_alert_history(self, alert_id):
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM alert_history WHERE alert_id = ? ORDER BY id ASC", (alert_id,)
            ).fetchall()
        entries = []
        for r in rows:
            d = dict(r)
            d["metadata"] = json.loads(d.get("metadata") or "{}")
            d["created_at"] = from_iso(d["created_at"])
            entries.append(AlertHistoryEntry(**d))
        return entries

    # --- Consecutive failure counters ---

    def get_failure_count(self, rule_id):
        with self._lock:
            row = self.conn.execute(
                "SELECT count FROM rule_failure_counters WHERE rule_id = ?", (rule_id,)
            ).fetchone()
        return row["count"] if row else 0

    def increment_failure_count(self, rule_id, at=None):
        """Record one more consecutive breach and return the new count."""
        with self._lock:
            self.conn.execute("""
                INSERT INTO rule_failure_counters (rule_id, count, last_failure_at)
                VALUES (?, 1, ?)
                ON CONFLICT(rule_id) DO UPDATE SET
                    count = count + 1, last_failure_at = excluded.last_failure_at
            """, (rule_id, to_iso(at or utcnow())))
            self.conn.commit()
            return self.get_failure_count(rule_id)

    def clear_failure_count(self, rule_id):
        with self._lock:
            self.conn.execute("DELETE FROM rule_failure_counters WHERE rule_id = ?", (rule_id,))
            self.conn.commit()

    # --- Embedding pipeline metrics ---

    def record_embedding_metric(self, team_id, status, total_duration_ms=None,
                                api_calls_made=0, api_tokens_used=0, created_at=None):
        with self._lock:
            self.conn.execute("""
                INSERT INTO embedding_performance_metrics
                (team_id, status, total_duration_ms, api_calls_made, api_tokens_used, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (team_id, status, total_duration_ms, api_calls_made, api_tokens_used,
                  to_iso(created_at or utcnow())))
            self.conn.commit()

    def get_embedding_metrics(self, since, team_id=None):
        query = "SELECT * FROM embedding_performance_metrics WHERE created_at >= ?"
        params = [to_iso(since)]
        if team_id is not None:
            query += " AND team_id = ?"
            params.append(team_id)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [dict(r) for r in rows]

    def get_latest_embedding_metric_time(self):
        with self._lock:
            row = self.conn.execute(
                "SELECT MAX(created_at) AS latest FROM embedding_performance_metrics"
            ).fetchone()
        return from_iso(row["latest"]) if row and row["latest"] else None

    # --- Generic performance metrics ---

    def save_performance_metrics(self, rows):
        with self._lock:
            self.conn.executemany("""
                INSERT INTO performance_metrics
                (metric_name, metric_type, metric_value, metric_unit, context, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [(r["metric_name"], r.get("metric_type"), r["metric_value"], r.get("metric_unit"),
                   json.dumps(r.get("context") or {}), to_iso(r.get("created_at") or utcnow()))
                  for r in rows])
            self.conn.commit()
        logger.debug(f"Saved {len(rows)} performance metrics")

    def get_latest_performance_metric(self, metric_name, since):
        with self._lock:
            row = self.conn.execute("""
                SELECT metric_value FROM performance_metrics
                WHERE metric_name = ? AND created_at >= ?
                ORDER BY created_at DESC, id DESC LIMIT 1
            """, (metric_name, to_iso(since))).fetchone()
        return row["metric_value"] if row else None

    # --- Notification deliveries ---

    def record_notification(self, delivery_status, alert_id=None, channel="email",
                            created_at=None, sent_at=None, delivered_at=None):
        with self._lock:
            self.conn.execute("""
                INSERT INTO alert_notifications
                (alert_id, channel, delivery_status, created_at, sent_at, delivered_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (alert_id, channel, delivery_status, to_iso(created_at or utcnow()),
                  to_iso(sent_at), to_iso(delivered_at)))
            self.conn.commit()

    def get_notification_deliveries(self, since, team_id=None):
        """Deliveries in the window; with a team, only those for that team's alerts."""
        query = """
            SELECT n.* FROM alert_notifications n
            LEFT JOIN alerts a ON a.id = n.alert_id
            WHERE n.created_at >= ?
        """
        params = [to_iso(since)]
        if team_id is not None:
            query += " AND a.team_id = ?"
            params.append(team_id)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [dict(r) for r in rows]
