"""Ordered SQLite store for the shared users list."""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

from .errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

SCHEMA = """
-- One row per list item, display order given by position
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    position INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_position ON users(position, updated_at);

-- Next id to hand out; ids are never reused
CREATE TABLE IF NOT EXISTS id_counter (
    singleton INTEGER PRIMARY KEY CHECK (singleton = 0),
    next_id INTEGER NOT NULL
);

INSERT OR IGNORE INTO id_counter (singleton, next_id) VALUES (0, 0);
"""

# Ties on position go to the most recently touched row
ORDER_BY = "ORDER BY position ASC, updated_at DESC, id ASC"


@dataclass
class ListItem:
    """A single entry of the shared list."""

    id: int
    name: str
    position: int
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "position": self.position,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ListItem":
        """Create from dictionary."""
        return cls(
            id=int(data["id"]),
            name=data["name"],
            position=int(data.get("position", 0)),
            updated_at=(
                datetime.fromisoformat(data["updated_at"])
                if data.get("updated_at")
                else datetime.now()
            ),
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ListItem":
        return cls(
            id=row["id"],
            name=row["name"],
            position=row["position"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class OrderedStore:
    """SQLite-backed ordered list with id-based mutations.

    Every mutation runs in its own immediate transaction, so a failure
    leaves the table untouched. All sqlite3 errors surface as StorageError.
    """

    def __init__(
        self,
        db_path: str | Path,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            timeout: Seconds to wait on a locked database before failing.
            clock: Source of updated_at timestamps.
        """
        self.db_path = Path(db_path).expanduser()
        self.timeout = timeout
        self._clock = clock
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(
                str(self.db_path), timeout=self.timeout, check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn = None
            raise StorageError(f"Failed to open store at {self.db_path}: {e}") from e

        logger.info(f"OrderedStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("OrderedStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT."""
        conn = self._ensure_connected()
        try:
            with conn:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def _now(self) -> str:
        return self._clock().isoformat(timespec="microseconds")

    # ==================== Reads ====================

    def list_items(self) -> list[ListItem]:
        """Return every item in display order."""
        conn = self._ensure_connected()
        try:
            rows = conn.execute(
                f"SELECT id, name, position, updated_at FROM users {ORDER_BY}"
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

        return [ListItem.from_row(row) for row in rows]

    def get(self, item_id: int) -> ListItem | None:
        conn = self._ensure_connected()
        try:
            row = conn.execute(
                "SELECT id, name, position, updated_at FROM users WHERE id = ?",
                (item_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

        return ListItem.from_row(row) if row else None

    def count(self) -> int:
        conn = self._ensure_connected()
        try:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    # ==================== Mutations ====================

    def insert(self, name: str) -> ListItem:
        """Append an item after the current highest position.

        Args:
            name: Display name of the new item.

        Returns:
            The stored ListItem with its server-assigned id.
        """
        with self._transaction() as conn:
            item_id = conn.execute(
                "SELECT next_id FROM id_counter WHERE singleton = 0"
            ).fetchone()[0]
            position = conn.execute(
                "SELECT COALESCE(MAX(position) + 1, 0) FROM users"
            ).fetchone()[0]
            updated_at = self._now()

            conn.execute(
                "INSERT INTO users (id, name, position, updated_at) VALUES (?, ?, ?, ?)",
                (item_id, name, position, updated_at),
            )
            conn.execute(
                "UPDATE id_counter SET next_id = ? WHERE singleton = 0",
                (item_id + 1,),
            )

        logger.debug(f"Inserted item {item_id} at position {position}")
        return ListItem(
            id=item_id,
            name=name,
            position=position,
            updated_at=datetime.fromisoformat(updated_at),
        )

    def delete(self, item_id: int) -> ListItem:
        """Delete an item by id and close the gap it leaves.

        Raises:
            NotFoundError: If no item has this id.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, name, position, updated_at FROM users WHERE id = ?",
                (item_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(item_id)

            conn.execute("DELETE FROM users WHERE id = ?", (item_id,))
            conn.execute(
                "UPDATE users SET position = position - 1 WHERE position > ?",
                (row["position"],),
            )

        logger.debug(f"Deleted item {item_id} from position {row['position']}")
        return ListItem.from_row(row)

    def reposition(
        self, item_id: int, dest_index: int, strategy: str = "overwrite"
    ) -> ListItem:
        """Move an item to a new display index.

        With "overwrite" only the moved row changes: its position becomes
        dest_index + 1 and its updated_at is stamped, so the read order's
        updated_at tie-break places it ahead of any row already there.
        Concurrent overwrites can leave duplicate or missing positions.

        With "rerank" every position is rewritten densely, the moved row
        landing at dest_index.

        Raises:
            NotFoundError: If no item has this id.
        """
        updated_at = self._now()

        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM users WHERE id = ?", (item_id,)
            ).fetchone()
            if exists is None:
                raise NotFoundError(item_id)

            if strategy == "rerank":
                ids = [
                    row["id"]
                    for row in conn.execute(f"SELECT id FROM users {ORDER_BY}")
                ]
                ids.remove(item_id)
                ids.insert(max(0, min(dest_index, len(ids))), item_id)
                conn.executemany(
                    "UPDATE users SET position = ? WHERE id = ?",
                    [(position, row_id) for position, row_id in enumerate(ids)],
                )
                conn.execute(
                    "UPDATE users SET updated_at = ? WHERE id = ?",
                    (updated_at, item_id),
                )
            else:
                conn.execute(
                    "UPDATE users SET position = ?, updated_at = ? WHERE id = ?",
                    (dest_index + 1, updated_at, item_id),
                )

            row = conn.execute(
                "SELECT id, name, position, updated_at FROM users WHERE id = ?",
                (item_id,),
            ).fetchone()

        logger.debug(f"Moved item {item_id} to position {row['position']} ({strategy})")
        return ListItem.from_row(row)

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with item count and position density.
        """
        conn = self._ensure_connected()
        try:
            count, distinct, max_position = conn.execute(
                "SELECT COUNT(*), COUNT(DISTINCT position), MAX(position) FROM users"
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

        return {
            "item_count": count,
            # False once concurrent overwrites leave duplicates or gaps
            "positions_dense": distinct == count
            and (max_position is None or max_position == count - 1),
        }
