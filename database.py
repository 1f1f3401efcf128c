"""Database operations for the Courier push service.

This module provides SQLite-based storage for news items, their
reading-window membership and push state, and the operator-managed
records (channels, templates, tasks, settings) the triggers read.

Database Schema:
    news table:
        - id (TEXT, PK): Item identifier assigned upstream
        - title, summary, content, url, source, category, image_url, author
        - trans_title, trans_summary (TEXT): Translated fields
        - published_at, created_at (TEXT): ISO-8601 timestamps

    reading_window table:
        - id (INTEGER, PK): Entry identifier
        - item_id (TEXT, UNIQUE): News item in the window
        - category (TEXT): Category copied at entry time
        - added_at (TEXT): When the item entered the window
        - pushed (INTEGER): 0 = awaiting a batch, 1 = delivered
        - pushed_at (TEXT): When the delivering batch was marked

    channels / templates / tasks tables:
        Operator records, validated by catalog.py before they land here.

    settings table:
        Key/value pairs; holds the auto-push configuration.

Push State Guarantees:
    - mark_pushed is all-or-nothing across the ids it is given
    - an entry can only move from pushed=0 to pushed=1 once, so two
      overlapping mark_pushed calls can never both claim the same entry
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from models.channel import Channel, channel_adapter
from models.news import NewsItem, ReadingEntry
from models.task import AutoPushConfig, ScheduledTask
from models.template import Template

logger = logging.getLogger(__name__)

# Settings keys for the auto-push singleton
AUTO_PUSH_KEYS = {
    "enabled": "auto_push_enabled",
    "threshold": "auto_push_threshold",
    "channel_id": "auto_push_channel_id",
    "template_id": "auto_push_template_id",
}


class StoreError(Exception):
    """Raised when a store mutation cannot be applied as a whole."""
    pass


def _ts(value: datetime | None) -> str | None:
    """Serialize a datetime as ISO-8601 UTC (naive values are taken as UTC).

    Window ordering compares these strings, so every stored value shares
    the +00:00 offset.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc).isoformat()
    return value.astimezone(timezone.utc).isoformat()


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """SQLite store for the reading window and the push records.

    Example:
        >>> with Database("courier.db") as db:
        ...     entry_id = db.append_to_window(item)
        ...     entries = db.list_unpushed({"tech"})
        ...     db.mark_pushed([e.entry_id for e in entries], datetime.now(timezone.utc))
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS news (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        summary TEXT,
        content TEXT,
        url TEXT,
        source TEXT,
        category TEXT,
        image_url TEXT,
        author TEXT,
        trans_title TEXT,
        trans_summary TEXT,
        published_at TEXT,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS reading_window (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        item_id TEXT NOT NULL UNIQUE REFERENCES news(id) ON DELETE CASCADE,
        category TEXT,
        added_at TEXT NOT NULL,
        pushed INTEGER NOT NULL DEFAULT 0,
        pushed_at TEXT
    );

    -- Selection order for batches: unpushed entries, oldest first
    CREATE INDEX IF NOT EXISTS idx_window_pushed_added ON reading_window(pushed, added_at);
    CREATE INDEX IF NOT EXISTS idx_window_category ON reading_window(category);

    CREATE TABLE IF NOT EXISTS channels (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        config TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS templates (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        subject TEXT,
        content TEXT NOT NULL,
        is_default INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        cron_expr TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        template_id TEXT,
        categories TEXT NOT NULL DEFAULT '[]',
        enabled INTEGER NOT NULL DEFAULT 1,
        last_run_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT
    );
    """

    path: Path
    conn: sqlite3.Connection

    def __init__(self, path: Path | str):
        """Open (and create if needed) the database.

        Args:
            path: SQLite file path, or ":memory:" for a throwaway store
        """
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row

        # WAL mode allows concurrent readers during writes
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.executescript(self.SCHEMA)
        self.conn.commit()
        logger.debug("Database initialized | path=%s", path)

    # ------------------------------------------------------------------
    # Reading window
    # ------------------------------------------------------------------

    def append_to_window(self, item: NewsItem, added_at: datetime | None = None) -> int:
        """Store a news item and add it to the reading window.

        Re-appending an item already in the window leaves its entry (and
        push state) untouched and returns the existing entry id.

        Args:
            item: Processed item from the upstream producer
            added_at: Entry time (defaults to now)

        Returns:
            Reading-window entry id
        """
        with self.conn:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO news
                (id, title, summary, content, url, source, category, image_url, author,
                 trans_title, trans_summary, published_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id, item.title, item.summary, item.content, item.url,
                    item.source, item.category, item.image_url, item.author,
                    item.trans_title, item.trans_summary,
                    _ts(item.published_at), _ts(item.created_at),
                ),
            )
            self.conn.execute(
                """
                INSERT OR IGNORE INTO reading_window (item_id, category, added_at)
                VALUES (?, ?, ?)
                """,
                (item.id, item.category, _ts(added_at or _now())),
            )
            row = self.conn.execute(
                "SELECT id FROM reading_window WHERE item_id = ?", (item.id,)
            ).fetchone()

        logger.debug("Window append | item=%s entry=%d", item.id, row["id"])
        return row["id"]

    @staticmethod
    def _category_clause(categories: Iterable[str] | None) -> tuple[str, list[Any]]:
        cats = sorted(set(categories or ()))
        if not cats:
            return "", []
        placeholders = ",".join("?" * len(cats))
        return f" AND w.category IN ({placeholders})", cats

    def list_unpushed(
        self,
        categories: Iterable[str] | None = None,
        limit: int = 0,
    ) -> list[ReadingEntry]:
        """List unpushed entries, oldest first.

        Args:
            categories: Category filter; None or empty selects every category
            limit: Maximum entries to return (0 = no limit)

        Returns:
            Entries with their joined NewsItem
        """
        clause, args = self._category_clause(categories)
        query = f"""
            SELECT w.id AS entry_id, w.item_id, w.category AS entry_category, w.added_at,
                   w.pushed, w.pushed_at, n.*
            FROM reading_window w
            JOIN news n ON n.id = w.item_id
            WHERE w.pushed = 0{clause}
            ORDER BY w.added_at ASC, w.id ASC
        """
        if limit > 0:
            query += " LIMIT ?"
            args.append(limit)
        cursor = self.conn.execute(query, args)
        return [self._entry_from_row(row) for row in cursor.fetchall()]

    def count_unpushed(self, categories: Iterable[str] | None = None) -> int:
        """Count entries still awaiting a batch."""
        clause, args = self._category_clause(categories)
        row = self.conn.execute(
            f"SELECT COUNT(*) AS n FROM reading_window w WHERE w.pushed = 0{clause}",
            args,
        ).fetchone()
        return row["n"]

    def mark_pushed(self, entry_ids: Iterable[int], pushed_at: datetime) -> None:
        """Mark a delivered batch as pushed, atomically.

        Either every listed entry moves from unpushed to pushed, or none
        does. An id that is unknown, removed, or already pushed fails the
        whole call.

        Args:
            entry_ids: Entries selected for the delivered batch
            pushed_at: Delivery time

        Raises:
            StoreError: If any entry could not be transitioned
        """
        ids = sorted(set(entry_ids))
        if not ids:
            return

        placeholders = ",".join("?" * len(ids))
        try:
            with self.conn:
                cursor = self.conn.execute(
                    f"""
                    UPDATE reading_window SET pushed = 1, pushed_at = ?
                    WHERE pushed = 0 AND id IN ({placeholders})
                    """,
                    [_ts(pushed_at), *ids],
                )
                if cursor.rowcount != len(ids):
                    raise StoreError(
                        f"mark_pushed transitioned {cursor.rowcount} of {len(ids)} entries"
                    )
        except sqlite3.Error as e:
            raise StoreError(f"mark_pushed failed: {e}") from e

        logger.debug("Entries marked pushed | count=%d", len(ids))

    def clear_pushed(self) -> int:
        """Remove every pushed entry from the window.

        Returns:
            Number of entries removed
        """
        with self.conn:
            cursor = self.conn.execute("DELETE FROM reading_window WHERE pushed = 1")
        if cursor.rowcount:
            logger.info("Pushed entries cleared | count=%d", cursor.rowcount)
        return cursor.rowcount

    def remove(self, entry_id: int) -> bool:
        """Remove one entry from the window, pushed or not.

        Returns:
            True if the entry existed
        """
        with self.conn:
            cursor = self.conn.execute("DELETE FROM reading_window WHERE id = ?", (entry_id,))
        return cursor.rowcount > 0

    def get_entry(self, entry_id: int) -> ReadingEntry | None:
        row = self.conn.execute(
            """
            SELECT w.id AS entry_id, w.item_id, w.category AS entry_category, w.added_at,
                   w.pushed, w.pushed_at, n.*
            FROM reading_window w JOIN news n ON n.id = w.item_id
            WHERE w.id = ?
            """,
            (entry_id,),
        ).fetchone()
        return self._entry_from_row(row) if row else None

    def list_window(
        self,
        category: str | None = None,
        pushed: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ReadingEntry]:
        """List window entries, newest first, for the reading view.

        Args:
            category: Restrict to one category
            pushed: True/False to filter on push state, None for both
            limit: Page size
            offset: Page offset
        """
        query = """
            SELECT w.id AS entry_id, w.item_id, w.category AS entry_category, w.added_at,
                   w.pushed, w.pushed_at, n.*
            FROM reading_window w JOIN news n ON n.id = w.item_id
            WHERE 1 = 1
        """
        args: list[Any] = []
        if category:
            query += " AND w.category = ?"
            args.append(category)
        if pushed is not None:
            query += " AND w.pushed = ?"
            args.append(int(pushed))
        query += " ORDER BY w.added_at DESC, w.id DESC LIMIT ? OFFSET ?"
        args.extend([limit, offset])
        cursor = self.conn.execute(query, args)
        return [self._entry_from_row(row) for row in cursor.fetchall()]

    def window_counts(self) -> dict[str, int]:
        """Totals for the reading-window badges."""
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN pushed = 0 THEN 1 ELSE 0 END), 0) AS unpushed
            FROM reading_window
            """
        ).fetchone()
        return {"total": row["total"], "unpushed": row["unpushed"]}

    @staticmethod
    def _entry_from_row(row: sqlite3.Row) -> ReadingEntry:
        item = NewsItem(
            id=row["id"],
            title=row["title"],
            summary=row["summary"] or "",
            content=row["content"] or "",
            url=row["url"] or "",
            source=row["source"] or "",
            category=row["category"] or "",
            image_url=row["image_url"] or "",
            author=row["author"] or "",
            trans_title=row["trans_title"] or "",
            trans_summary=row["trans_summary"] or "",
            published_at=_dt(row["published_at"]),
            created_at=_dt(row["created_at"]),
        )
        return ReadingEntry(
            entry_id=row["entry_id"],
            item_id=row["item_id"],
            category=row["entry_category"] or "",
            added_at=_dt(row["added_at"]),
            pushed=bool(row["pushed"]),
            pushed_at=_dt(row["pushed_at"]),
            item=item,
        )

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def save_channel(self, channel: Channel) -> None:
        """Insert or update a channel (already validated)."""
        now = _ts(_now())
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO channels (id, name, type, config, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name, type = excluded.type, config = excluded.config,
                    enabled = excluded.enabled, updated_at = excluded.updated_at
                """,
                (
                    channel.id, channel.name, channel.type,
                    channel.config.model_dump_json(), int(channel.enabled), now, now,
                ),
            )
        logger.info("Channel saved | id=%s type=%s", channel.id, channel.type)

    def get_channel(self, channel_id: str) -> Channel | None:
        """Load a channel by id.

        Raises:
            pydantic.ValidationError: If the stored configuration no longer
                satisfies its type (edited outside the catalog)
        """
        row = self.conn.execute("SELECT * FROM channels WHERE id = ?", (channel_id,)).fetchone()
        return self._channel_from_row(row) if row else None

    def list_channels(self) -> list[Channel]:
        cursor = self.conn.execute("SELECT * FROM channels ORDER BY created_at DESC")
        return [self._channel_from_row(row) for row in cursor.fetchall()]

    def delete_channel(self, channel_id: str) -> bool:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM channels WHERE id = ?", (channel_id,))
        return cursor.rowcount > 0

    @staticmethod
    def _channel_from_row(row: sqlite3.Row) -> Channel:
        return channel_adapter.validate_python({
            "id": row["id"],
            "name": row["name"],
            "type": row["type"],
            "enabled": bool(row["enabled"]),
            "config": json.loads(row["config"]),
        })

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def save_template(self, template: Template) -> None:
        """Insert or update a template; a new default demotes the old one."""
        now = _ts(_now())
        with self.conn:
            if template.is_default:
                self.conn.execute(
                    "UPDATE templates SET is_default = 0 WHERE id != ?", (template.id,)
                )
            self.conn.execute(
                """
                INSERT INTO templates (id, name, subject, content, is_default, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name, subject = excluded.subject, content = excluded.content,
                    is_default = excluded.is_default, updated_at = excluded.updated_at
                """,
                (
                    template.id, template.name, template.subject, template.content,
                    int(template.is_default), now, now,
                ),
            )
        logger.info("Template saved | id=%s default=%s", template.id, template.is_default)

    def get_template(self, template_id: str) -> Template | None:
        row = self.conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,)).fetchone()
        return self._template_from_row(row) if row else None

    def get_default_template(self) -> Template | None:
        row = self.conn.execute(
            "SELECT * FROM templates WHERE is_default = 1 ORDER BY updated_at DESC LIMIT 1"
        ).fetchone()
        return self._template_from_row(row) if row else None

    def list_templates(self) -> list[Template]:
        cursor = self.conn.execute("SELECT * FROM templates ORDER BY created_at DESC")
        return [self._template_from_row(row) for row in cursor.fetchall()]

    def delete_template(self, template_id: str) -> bool:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM templates WHERE id = ?", (template_id,))
        return cursor.rowcount > 0

    @staticmethod
    def _template_from_row(row: sqlite3.Row) -> Template:
        return Template(
            id=row["id"],
            name=row["name"],
            subject=row["subject"] or "",
            content=row["content"],
            is_default=bool(row["is_default"]),
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def save_task(self, task: ScheduledTask) -> None:
        """Insert or update a task (last_run_at is only moved by touch_task)."""
        now = _ts(_now())
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO tasks
                (id, name, cron_expr, channel_id, template_id, categories, enabled,
                 last_run_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name, cron_expr = excluded.cron_expr,
                    channel_id = excluded.channel_id, template_id = excluded.template_id,
                    categories = excluded.categories, enabled = excluded.enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    task.id, task.name, task.cron_expr, task.channel_id, task.template_id,
                    json.dumps(task.categories), int(task.enabled),
                    _ts(task.last_run_at), now, now,
                ),
            )
        logger.info("Task saved | id=%s cron='%s'", task.id, task.cron_expr)

    def get_task(self, task_id: str) -> ScheduledTask | None:
        row = self.conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._task_from_row(row) if row else None

    def list_tasks(self, enabled_only: bool = False) -> list[ScheduledTask]:
        query = "SELECT * FROM tasks"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY created_at ASC"
        cursor = self.conn.execute(query)
        return [self._task_from_row(row) for row in cursor.fetchall()]

    def delete_task(self, task_id: str) -> bool:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return cursor.rowcount > 0

    def touch_task(self, task_id: str, ran_at: datetime) -> None:
        """Advance a task's last_run_at after an execution attempt."""
        with self.conn:
            self.conn.execute(
                "UPDATE tasks SET last_run_at = ? WHERE id = ?", (_ts(ran_at), task_id)
            )

    @staticmethod
    def _task_from_row(row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            id=row["id"],
            name=row["name"],
            cron_expr=row["cron_expr"],
            channel_id=row["channel_id"],
            template_id=row["template_id"],
            categories=json.loads(row["categories"] or "[]"),
            enabled=bool(row["enabled"]),
            last_run_at=_dt(row["last_run_at"]),
        )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def load_auto_push(self) -> AutoPushConfig:
        """Read the auto-push singleton (defaults when never saved)."""
        cursor = self.conn.execute(
            f"SELECT key, value FROM settings WHERE key IN ({','.join('?' * len(AUTO_PUSH_KEYS))})",
            list(AUTO_PUSH_KEYS.values()),
        )
        raw = {row["key"]: row["value"] for row in cursor.fetchall()}

        threshold = raw.get(AUTO_PUSH_KEYS["threshold"])
        try:
            threshold_value = max(1, int(threshold)) if threshold else 6
        except ValueError:
            logger.warning("Invalid stored auto-push threshold | value=%s", threshold)
            threshold_value = 6

        return AutoPushConfig(
            enabled=raw.get(AUTO_PUSH_KEYS["enabled"]) == "1",
            threshold=threshold_value,
            channel_id=raw.get(AUTO_PUSH_KEYS["channel_id"]) or "",
            template_id=raw.get(AUTO_PUSH_KEYS["template_id"]) or None,
        )

    def save_auto_push(self, config: AutoPushConfig) -> None:
        values = {
            "enabled": "1" if config.enabled else "0",
            "threshold": str(config.threshold),
            "channel_id": config.channel_id,
            "template_id": config.template_id or "",
        }
        with self.conn:
            self.conn.executemany(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                [(AUTO_PUSH_KEYS[k], v) for k, v in values.items()],
            )
        logger.info(
            "Auto-push saved | enabled=%s threshold=%d channel=%s",
            config.enabled, config.threshold, config.channel_id,
        )

    # ------------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        """Get database statistics."""
        counts = self.window_counts()
        for table in ("news", "channels", "templates", "tasks"):
            row = self.conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
            counts[table] = row["n"]
        return counts

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
