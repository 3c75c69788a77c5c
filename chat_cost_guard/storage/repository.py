"""
Repository pattern for data access.

Stores one usage record per user as a JSON document that is rewritten
in full on every change.
"""

import json
import sqlite3
from datetime import datetime
from typing import List, Optional

from ..core.errors import PersistenceFailed
from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageRecord


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_record table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file

    Raises:
        PersistenceFailed: If the database cannot be opened or written
    """
    try:
        conn = get_connection(db_path)
    except (sqlite3.Error, OSError) as e:
        raise PersistenceFailed(f"Cannot open usage database {db_path}: {e}") from e
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                user_id TEXT PRIMARY KEY,
                record TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    except sqlite3.Error as e:
        raise PersistenceFailed(f"Cannot create usage schema in {db_path}: {e}") from e
    finally:
        conn.close()


class UsageRepository:
    """Repository for loading and saving per-user usage records.

    Every read or write failure is raised as PersistenceFailed so that no
    usage is silently lost.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository and make sure the schema exists.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)

    def load(self, user_id: str) -> Optional[UsageRecord]:
        """Load the record of a user.

        Args:
            user_id: User identifier

        Returns:
            The validated record, or None if the user has none yet

        Raises:
            PersistenceFailed: If reading fails or the stored document is invalid
        """
        try:
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(
                    "SELECT record FROM usage_record WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailed(f"Cannot read usage record of user {user_id}: {e}") from e

        if row is None:
            return None

        try:
            return UsageRecord.from_dict(user_id, json.loads(row[0]))
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too
            raise PersistenceFailed(f"Corrupt usage record for user {user_id}: {e}") from e

    def save(self, record: UsageRecord) -> None:
        """Rewrite the whole record of a user atomically.

        Args:
            record: Record to persist

        Raises:
            PersistenceFailed: If writing fails
        """
        document = json.dumps(record.to_dict(), indent=2, sort_keys=True)
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO usage_record (user_id, record, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    (record.user_id, document, datetime.now().isoformat()),
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailed(f"Cannot write usage record of user {record.user_id}: {e}") from e

    def list_user_ids(self) -> List[str]:
        """Return the IDs of all users with a stored record."""
        try:
            conn = get_connection(self.db_path)
            try:
                rows = conn.execute(
                    "SELECT user_id FROM usage_record ORDER BY user_id"
                ).fetchall()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailed(f"Cannot list usage records: {e}") from e
        return [row[0] for row in rows]


# Global repository instance
_default_repository: Optional[UsageRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> UsageRepository:
    """Get a repository instance.

    This function provides a singleton instance of the UsageRepository.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of UsageRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = UsageRepository(db_path)
    return _default_repository
