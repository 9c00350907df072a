# /commengage/content_store.py
"""
Mutable record store for community posts and help requests.

The CRUD layer owns these records. The engine only reads them and annotates
them with version-tracked summary/embedding markers. Writes that change the
indexed document bump `version`; deletes leave a tombstone that the next full
refresh reclaims.
"""
from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from .config import CONTENT_DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations
from .models import ContentItem, ContentKind, utcnow_iso
from .observability import get_logger

logger = get_logger(__name__)


class ContentStore(Protocol):
    def get(self, item_id: str) -> ContentItem | None:
        ...

    def list_items(self, *, include_deleted: bool = False, category: str | None = None) -> list[ContentItem]:
        ...

    def set_summary(self, item_id: str, summary: str, version: int) -> bool:
        ...

    def mark_embedded(self, item_id: str, version: int) -> bool:
        ...

    def purge_tombstones(self) -> list[str]:
        ...


_SELECT_COLUMNS = (
    "item_id, kind, title, body, location, category, is_resolved, volunteers_json, version, deleted, "
    "summary, summary_of_version, embedded_version, created_at, updated_at"
)


class SqliteContentStore:
    """SQLite-backed content records with version and tombstone bookkeeping."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else CONTENT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error:
            pass
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("content store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def _ensure_schema(self):
        def _ensure_embedding_columns(conn: sqlite3.Connection):
            columns = {
                row["name"]
                for row in conn.execute("PRAGMA table_info(content_items)").fetchall()
            }
            if "embedded_version" not in columns:
                conn.execute("ALTER TABLE content_items ADD COLUMN embedded_version INTEGER NOT NULL DEFAULT 0")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_content_deleted ON content_items(deleted)")

        migrations = [
            SqliteMigration(
                version=1,
                name="create_content_items_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS content_items (
                        item_id TEXT PRIMARY KEY,
                        kind TEXT NOT NULL CHECK(kind IN ('post', 'help_request')),
                        title TEXT NOT NULL DEFAULT '',
                        body TEXT NOT NULL,
                        location TEXT NOT NULL DEFAULT '',
                        is_resolved INTEGER NOT NULL DEFAULT 0,
                        volunteers_json TEXT NOT NULL DEFAULT '[]',
                        version INTEGER NOT NULL DEFAULT 1,
                        deleted INTEGER NOT NULL DEFAULT 0,
                        summary TEXT,
                        summary_of_version INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_content_kind ON content_items(kind)",
                ),
            ),
            SqliteMigration(
                version=2,
                name="ensure_embedding_columns",
                runner=_ensure_embedding_columns,
            ),
            SqliteMigration(
                version=3,
                name="add_post_category",
                statements=(
                    "ALTER TABLE content_items ADD COLUMN category TEXT NOT NULL DEFAULT ''",
                    "CREATE INDEX IF NOT EXISTS idx_content_category ON content_items(category)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(
                conn,
                component="content_store",
                migrations=migrations,
            )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> ContentItem:
        try:
            volunteers = tuple(str(v) for v in json.loads(row["volunteers_json"] or "[]"))
        except (TypeError, json.JSONDecodeError):
            volunteers = ()
        return ContentItem(
            id=str(row["item_id"]),
            kind=ContentKind(row["kind"]),
            title=row["title"] or "",
            text=row["body"] or "",
            location=row["location"] or "",
            category=row["category"] or "",
            is_resolved=bool(row["is_resolved"]),
            volunteers=volunteers,
            version=int(row["version"]),
            deleted=bool(row["deleted"]),
            summary=row["summary"],
            summary_of_version=int(row["summary_of_version"] or 0),
            embedded_version=int(row["embedded_version"] or 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch(self, conn: sqlite3.Connection, item_id: str) -> ContentItem | None:
        row = conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM content_items WHERE item_id = ?",
            (str(item_id),),
        ).fetchone()
        return self._row_to_item(row) if row else None

    def create(
        self,
        kind: ContentKind | str,
        text: str,
        *,
        title: str = "",
        location: str = "",
        category: str = "",
        item_id: str | None = None,
    ) -> ContentItem:
        body = str(text or "").strip()
        if not body:
            raise ValueError("content text must not be empty")
        content_kind = ContentKind(kind)
        post_category = str(category or "").strip()
        if post_category and content_kind is not ContentKind.POST:
            raise ValueError("only posts have a category")
        new_id = str(item_id or uuid.uuid4().hex)
        now = utcnow_iso()
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO content_items (item_id, kind, title, body, location, category, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (new_id, content_kind.value, str(title or "").strip(), body, str(location or "").strip(), post_category, now, now),
            )
            item = self._fetch(conn, new_id)
        logger.info("content_created", item_id=new_id, kind=content_kind.value)
        return item

    def get(self, item_id: str) -> ContentItem | None:
        with self._connection() as conn:
            return self._fetch(conn, item_id)

    def list_items(self, *, include_deleted: bool = False, category: str | None = None) -> list[ContentItem]:
        clauses: list[str] = []
        params: list[Any] = []
        if not include_deleted:
            clauses.append("deleted = 0")
        if category:
            clauses.append("category = ?")
            params.append(str(category).strip())
        sql = f"SELECT {_SELECT_COLUMNS} FROM content_items"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, item_id ASC"
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_item(row) for row in rows]

    def edit(
        self,
        item_id: str,
        *,
        title: str | None = None,
        text: str | None = None,
        location: str | None = None,
        category: str | None = None,
        is_resolved: bool | None = None,
    ) -> ContentItem | None:
        """Applies field changes; bumps `version` only if an indexed field actually changed."""
        with self._connection() as conn:
            current = self._fetch(conn, item_id)
            if current is None or current.deleted:
                return None

            updates: dict[str, Any] = {}
            if title is not None and title.strip() != current.title:
                updates["title"] = title.strip()
            if text is not None and text.strip() and text.strip() != current.text:
                updates["body"] = text.strip()
            if location is not None and location.strip() != current.location:
                updates["location"] = location.strip()
            if category is not None and category.strip() != current.category:
                if current.kind is not ContentKind.POST:
                    raise ValueError("only posts have a category")
                updates["category"] = category.strip()
            if is_resolved is not None and bool(is_resolved) != current.is_resolved:
                updates["is_resolved"] = int(bool(is_resolved))
            if not updates:
                return current

            assignments = ", ".join(f"{column} = ?" for column in updates)
            conn.execute(
                f"UPDATE content_items SET {assignments}, version = version + 1, updated_at = ? WHERE item_id = ?",
                (*updates.values(), utcnow_iso(), str(item_id)),
            )
            item = self._fetch(conn, item_id)
        logger.info("content_edited", item_id=item.id, version=item.version, fields=sorted(updates))
        return item

    def add_volunteer(self, item_id: str, volunteer_id: str) -> ContentItem | None:
        """Adds a volunteer to a help request. Re-volunteering is a no-op."""
        with self._connection() as conn:
            current = self._fetch(conn, item_id)
            if current is None or current.deleted:
                return None
            if current.kind is not ContentKind.HELP_REQUEST:
                raise ValueError("only help requests accept volunteers")
            volunteer = str(volunteer_id or "").strip()
            if not volunteer:
                raise ValueError("volunteer id must not be empty")
            if volunteer in current.volunteers:
                return current
            volunteers = [*current.volunteers, volunteer]
            conn.execute(
                """
                UPDATE content_items
                SET volunteers_json = ?, version = version + 1, updated_at = ?
                WHERE item_id = ?
                """,
                (json.dumps(volunteers, ensure_ascii=True), utcnow_iso(), str(item_id)),
            )
            item = self._fetch(conn, item_id)
        logger.info("volunteer_added", item_id=item.id, version=item.version, volunteers=len(item.volunteers))
        return item

    def delete(self, item_id: str) -> bool:
        """Tombstones a record. Returns False if it is missing or already deleted."""
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE content_items SET deleted = 1, updated_at = ? WHERE item_id = ? AND deleted = 0",
                (utcnow_iso(), str(item_id)),
            )
            changed = cursor.rowcount > 0
        if changed:
            logger.info("content_tombstoned", item_id=str(item_id))
        return changed

    def set_summary(self, item_id: str, summary: str, version: int) -> bool:
        """Stores a summary only if the record is still at `version`."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE content_items
                SET summary = ?, summary_of_version = ?
                WHERE item_id = ? AND version = ? AND deleted = 0
                """,
                (summary, int(version), str(item_id), int(version)),
            )
            return cursor.rowcount > 0

    def mark_embedded(self, item_id: str, version: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE content_items
                SET embedded_version = ?
                WHERE item_id = ? AND version = ? AND deleted = 0
                """,
                (int(version), str(item_id), int(version)),
            )
            return cursor.rowcount > 0

    def purge_tombstones(self) -> list[str]:
        """Physically removes tombstoned records and returns their ids."""
        with self._connection() as conn:
            rows = conn.execute("SELECT item_id FROM content_items WHERE deleted = 1").fetchall()
            purged = [str(row["item_id"]) for row in rows]
            if purged:
                conn.execute("DELETE FROM content_items WHERE deleted = 1")
        if purged:
            logger.info("tombstones_purged", count=len(purged))
        return purged
