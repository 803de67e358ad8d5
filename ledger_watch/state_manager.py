"""State manager for tracked accounts and the diagnostic log."""
import sqlite3
import os
import json
import logging

from .errors import PersistenceFailure
from .models import utcnow

logger = logging.getLogger(__name__)


class StateManager:
    """Persists the set of tracked account ids and append-only diagnostic records."""

    def __init__(self, db_path):
        """Initialize the state manager with the path to the SQLite database."""
        self.db_path = db_path
        self._ensure_db_directory()
        self._init_db()

    def _ensure_db_directory(self):
        """Ensure the directory for the database file exists."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)
            logger.info("Created directory for database: %s", db_dir)

    def _init_db(self):
        """Initialize the database if it doesn't exist."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            # Only account ids survive a restart
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS tracked_accounts (
                    account_id TEXT PRIMARY KEY
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS poll_passes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    change_detected INTEGER NOT NULL,
                    record TEXT NOT NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS deliveries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    error TEXT
                )
            ''')
            conn.commit()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error("Error initializing database: %s", e)
            raise PersistenceFailure(f"Cannot initialize {self.db_path}: {e}") from e
        finally:
            conn.close()

    def load_tracked_accounts(self):
        """Return the persisted set of tracked account ids."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT account_id FROM tracked_accounts")
            return {row[0] for row in cursor.fetchall()}
        except Exception as e:
            logger.error("Error loading tracked accounts: %s", e)
            return set()
        finally:
            conn.close()

    def save_tracked_accounts(self, account_ids):
        """Replace the persisted id set. Returns False if the write failed."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM tracked_accounts")
            cursor.executemany(
                "INSERT INTO tracked_accounts (account_id) VALUES (?)",
                [(account_id,) for account_id in sorted(account_ids)]
            )
            conn.commit()
            logger.debug("Saved %d tracked accounts", len(account_ids))
            return True
        except Exception as e:
            logger.error("Error saving tracked accounts: %s", e)
            conn.rollback()
            return False
        finally:
            conn.close()

    def record_pass(self, summary):
        """Append a polling pass summary to the diagnostic log."""
        conn = sqlite3.connect(self.db_path)
        try:
            record = summary.to_dict()
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO poll_passes (created_at, change_detected, record) VALUES (?, ?, ?)",
                (record["timestamp"], int(summary.has_changes), json.dumps(record))
            )
            conn.commit()
            logger.debug("Recorded polling pass with %d checks", summary.check_count)
        except Exception as e:
            logger.error("Error recording polling pass: %s", e)
            conn.rollback()
        finally:
            conn.close()

    def record_delivery(self, account_id, result):
        """Append a delivery outcome to the diagnostic log."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute(
                """INSERT INTO deliveries
                (created_at, account_id, channel, recipient, success, error)
                VALUES (?, ?, ?, ?, ?, ?)""",
                (utcnow().isoformat(), account_id, result.channel,
                 result.recipient, int(result.success), result.error)
            )
            conn.commit()
        except Exception as e:
            logger.error("Error recording delivery: %s", e)
            conn.rollback()
        finally:
            conn.close()

    def recent_passes(self, limit=10):
        """Return the most recent pass records, newest first."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT record FROM poll_passes ORDER BY id DESC LIMIT ?", (limit,))
            return [json.loads(row[0]) for row in cursor.fetchall()]
        except Exception as e:
            logger.error("Error reading polling passes: %s", e)
            return []
        finally:
            conn.close()

    def recent_deliveries(self, limit=20):
        """Return the most recent delivery records, newest first."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute(
                """SELECT account_id, channel, recipient, success, error, created_at
                FROM deliveries ORDER BY id DESC LIMIT ?""",
                (limit,)
            )
            deliveries = []
            for row in cursor.fetchall():
                deliveries.append({
                    'account_id': row[0],
                    'channel': row[1],
                    'recipient': row[2],
                    'success': bool(row[3]),
                    'error': row[4],
                    'created_at': row[5]
                })
            return deliveries
        except Exception as e:
            logger.error("Error reading deliveries: %s", e)
            return []
        finally:
            conn.close()
