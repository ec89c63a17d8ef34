"""SQLite 状态持久化

三张表：destinations（投递目标）、books（下载队列）、assignments（多对多关联）。
每条语句单独提交，管理命令可与运行中的周期并发读写（WAL 模式）。
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterable

import aiosqlite

from .models import Book, BookStatus, Destination, FeedItem

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS destinations (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    name          TEXT NOT NULL,
    feed_key      TEXT NOT NULL UNIQUE,
    download_path TEXT NOT NULL,
    email         TEXT
);

CREATE TABLE IF NOT EXISTS books (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    feed_book_id  TEXT UNIQUE,
    isbn          TEXT,
    title         TEXT,
    author        TEXT,
    status        TEXT NOT NULL DEFAULT 'pending',
    attempts      INTEGER NOT NULL DEFAULT 0,
    file_path     TEXT,
    added_at      TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    downloaded_at TEXT
);

CREATE TABLE IF NOT EXISTS assignments (
    destination_id INTEGER NOT NULL,
    book_id        INTEGER NOT NULL,
    is_notified    INTEGER NOT NULL DEFAULT 0,
    is_delivered   INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (destination_id, book_id),
    FOREIGN KEY (destination_id) REFERENCES destinations(id),
    FOREIGN KEY (book_id) REFERENCES books(id)
);

CREATE INDEX IF NOT EXISTS idx_books_status ON books(status);
"""

# 旧库升级：表名 -> [(列名, 列定义)]
_MIGRATIONS: dict[str, list[tuple[str, str]]] = {
    "destinations": [("email", "TEXT")],
    "books": [("downloaded_at", "TEXT")],
    "assignments": [
        ("is_notified", "INTEGER NOT NULL DEFAULT 0"),
        ("is_delivered", "INTEGER NOT NULL DEFAULT 0"),
    ],
}


def _now() -> str:
    """本地时间戳，按进程时区的自然日分桶"""
    return datetime.now().isoformat(timespec="seconds")


def _today() -> str:
    return date.today().isoformat()


class StateDB:
    """异步 SQLite 状态管理"""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_SCHEMA)
        await self._migrate()
        await self._db.commit()
        logger.debug("数据库已打开: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> StateDB:
        await self.open()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("数据库未打开，请先调用 open()")
        return self._db

    async def _migrate(self) -> None:
        """为旧库补齐新增列"""
        for table, columns in _MIGRATIONS.items():
            cursor = await self.db.execute(f"PRAGMA table_info({table})")
            existing = {row["name"] for row in await cursor.fetchall()}
            for name, ddl in columns:
                if name in existing:
                    continue
                await self.db.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")
                logger.info("数据库迁移: %s 表新增列 %s", table, name)
                if (table, name) == ("books", "downloaded_at"):
                    # 历史数据只能用 updated_at 近似
                    await self.db.execute(
                        "UPDATE books SET downloaded_at = updated_at "
                        "WHERE status = 'downloaded' AND downloaded_at IS NULL"
                    )
                elif (table, name) == ("assignments", "is_delivered"):
                    await self.db.execute(
                        "UPDATE assignments SET is_delivered = 1 WHERE book_id IN "
                        "(SELECT id FROM books WHERE status = 'downloaded')"
                    )

    # ────────────── 书籍 ──────────────

    async def upsert_book(self, item: FeedItem) -> tuple[int, bool]:
        """按 feed_book_id 插入或更新书籍，新值为空时保留旧值

        Returns:
            (book_id, 是否新建)
        """
        cursor = await self.db.execute(
            "SELECT id FROM books WHERE feed_book_id = ?", (item.feed_book_id,)
        )
        existed = await cursor.fetchone() is not None

        now = _now()
        await self.db.execute(
            """
            INSERT INTO books (feed_book_id, isbn, title, author, added_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(feed_book_id) DO UPDATE SET
                isbn = COALESCE(excluded.isbn, books.isbn),
                title = COALESCE(excluded.title, books.title),
                author = COALESCE(excluded.author, books.author),
                updated_at = excluded.updated_at
            """,
            (item.feed_book_id, item.isbn, item.title, item.author, now, now),
        )
        await self.db.commit()

        cursor = await self.db.execute(
            "SELECT id FROM books WHERE feed_book_id = ?", (item.feed_book_id,)
        )
        row = await cursor.fetchone()
        return row["id"], not existed

    async def get_book(self, book_id: int) -> Book | None:
        cursor = await self.db.execute("SELECT * FROM books WHERE id = ?", (book_id,))
        row = await cursor.fetchone()
        return self._row_to_book(row) if row else None

    async def get_book_by_feed_id(self, feed_book_id: str) -> Book | None:
        cursor = await self.db.execute(
            "SELECT * FROM books WHERE feed_book_id = ?", (feed_book_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_book(row) if row else None

    async def next_pending(
        self, max_attempts: int, exclude: Iterable[int] = ()
    ) -> Book | None:
        """尝试次数最少的待处理书籍，排除 exclude 中的 id"""
        excluded = list(exclude)
        sql = "SELECT * FROM books WHERE status = ? AND attempts < ?"
        params: list = [BookStatus.PENDING.value, max_attempts]
        if excluded:
            sql += f" AND id NOT IN ({','.join('?' * len(excluded))})"
            params.extend(excluded)
        sql += " ORDER BY attempts ASC, id ASC LIMIT 1"

        cursor = await self.db.execute(sql, params)
        row = await cursor.fetchone()
        return self._row_to_book(row) if row else None

    async def increment_attempts(self, book_id: int, max_attempts: int) -> int:
        """原子地将尝试次数 +1（不超过上限），返回新的次数"""
        await self.db.execute(
            "UPDATE books SET attempts = attempts + 1, updated_at = ? "
            "WHERE id = ? AND attempts < ?",
            (_now(), book_id, max_attempts),
        )
        await self.db.commit()
        cursor = await self.db.execute("SELECT attempts FROM books WHERE id = ?", (book_id,))
        row = await cursor.fetchone()
        return row["attempts"]

    async def mark_downloaded(self, book_id: int, filename: str) -> None:
        now = _now()
        await self.db.execute(
            "UPDATE books SET status = ?, file_path = ?, downloaded_at = ?, updated_at = ? "
            "WHERE id = ?",
            (BookStatus.DOWNLOADED.value, filename, now, now, book_id),
        )
        await self.db.commit()

    async def mark_failed(self, book_id: int) -> None:
        await self.db.execute(
            "UPDATE books SET status = ?, updated_at = ? WHERE id = ?",
            (BookStatus.FAILED.value, _now(), book_id),
        )
        await self.db.commit()

    # ────────────── 限额统计 ──────────────

    async def count_downloads_today(self) -> int:
        """今天（本地时区）成功下载的书籍数"""
        cursor = await self.db.execute(
            "SELECT COUNT(*) AS cnt FROM books "
            "WHERE status = ? AND date(downloaded_at) = ?",
            (BookStatus.DOWNLOADED.value, _today()),
        )
        row = await cursor.fetchone()
        return row["cnt"]

    async def count_destination_downloads_today(self, destination_id: int) -> int:
        """今天投递给某个目的地的书籍数"""
        cursor = await self.db.execute(
            """
            SELECT COUNT(*) AS cnt FROM books
            JOIN assignments ON books.id = assignments.book_id
            WHERE books.status = ? AND date(books.downloaded_at) = ?
              AND assignments.destination_id = ? AND assignments.is_delivered = 1
            """,
            (BookStatus.DOWNLOADED.value, _today(), destination_id),
        )
        row = await cursor.fetchone()
        return row["cnt"]

    async def count_pending(self, max_attempts: int) -> int:
        cursor = await self.db.execute(
            "SELECT COUNT(*) AS cnt FROM books WHERE status = ? AND attempts < ?",
            (BookStatus.PENDING.value, max_attempts),
        )
        row = await cursor.fetchone()
        return row["cnt"]

    async def stats(self) -> dict[str, int]:
        """统计各状态数量"""
        cursor = await self.db.execute(
            "SELECT status, COUNT(*) AS cnt FROM books GROUP BY status"
        )
        rows = await cursor.fetchall()
        return {row["status"]: row["cnt"] for row in rows}

    # ────────────── 目的地与关联 ──────────────

    async def link(self, destination_id: int, book_id: int) -> None:
        await self.db.execute(
            "INSERT OR IGNORE INTO assignments (destination_id, book_id) VALUES (?, ?)",
            (destination_id, book_id),
        )
        await self.db.commit()

    async def destinations_for_book(self, book_id: int) -> list[Destination]:
        cursor = await self.db.execute(
            """
            SELECT destinations.* FROM destinations
            JOIN assignments ON destinations.id = assignments.destination_id
            WHERE assignments.book_id = ?
            ORDER BY destinations.id
            """,
            (book_id,),
        )
        return [self._row_to_destination(r) for r in await cursor.fetchall()]

    async def mark_delivered(self, destination_id: int, book_id: int) -> None:
        await self.db.execute(
            "UPDATE assignments SET is_delivered = 1 WHERE destination_id = ? AND book_id = ?",
            (destination_id, book_id),
        )
        await self.db.commit()

    async def mark_notified(self, destination_id: int, book_ids: Iterable[int]) -> None:
        ids = list(book_ids)
        if not ids:
            return
        await self.db.execute(
            f"UPDATE assignments SET is_notified = 1 "
            f"WHERE destination_id = ? AND book_id IN ({','.join('?' * len(ids))})",
            (destination_id, *ids),
        )
        await self.db.commit()

    async def list_destinations(self) -> list[Destination]:
        cursor = await self.db.execute("SELECT * FROM destinations ORDER BY id")
        return [self._row_to_destination(r) for r in await cursor.fetchall()]

    async def get_destination(self, feed_key: str) -> Destination | None:
        cursor = await self.db.execute(
            "SELECT * FROM destinations WHERE feed_key = ?", (feed_key,)
        )
        row = await cursor.fetchone()
        return self._row_to_destination(row) if row else None

    async def add_destination(
        self, name: str, feed_key: str, download_path: str, email: str | None = None
    ) -> Destination:
        """新增目的地，feed_key 重复时抛出 sqlite3.IntegrityError"""
        cursor = await self.db.execute(
            "INSERT INTO destinations (name, feed_key, download_path, email) VALUES (?, ?, ?, ?)",
            (name, feed_key, download_path, email),
        )
        await self.db.commit()
        return Destination(
            id=cursor.lastrowid, name=name, feed_key=feed_key,
            download_path=download_path, email=email,
        )

    async def update_destination(self, feed_key: str, **fields) -> bool:
        """更新目的地字段（name / download_path / email），返回是否命中"""
        allowed = {"name", "download_path", "email"}
        updates = {k: v for k, v in fields.items() if k in allowed}
        if not updates:
            return False
        assignments = ", ".join(f"{k} = ?" for k in updates)
        cursor = await self.db.execute(
            f"UPDATE destinations SET {assignments} WHERE feed_key = ?",
            (*updates.values(), feed_key),
        )
        await self.db.commit()
        return cursor.rowcount > 0

    # ────────────── 管理操作 ──────────────

    async def reset_failed(self) -> int:
        """将所有失败记录重置为 pending 并清零尝试次数，返回影响行数"""
        cursor = await self.db.execute(
            "UPDATE books SET status = ?, attempts = 0, updated_at = ? WHERE status = ?",
            (BookStatus.PENDING.value, _now(), BookStatus.FAILED.value),
        )
        await self.db.commit()
        return cursor.rowcount

    async def reset_limits(self) -> int:
        """把今天的下载时间挪到昨天，清空当日限额"""
        yesterday = (date.today() - timedelta(days=1)).isoformat() + "T00:00:00"
        cursor = await self.db.execute(
            "UPDATE books SET downloaded_at = ? WHERE status = ? AND date(downloaded_at) = ?",
            (yesterday, BookStatus.DOWNLOADED.value, _today()),
        )
        await self.db.commit()
        return cursor.rowcount

    async def reset(self, include_destinations: bool = False) -> tuple[int, int]:
        """清空书籍与关联（可选清空目的地），返回 (书籍数, 目的地数)"""
        cursor = await self.db.execute("SELECT COUNT(*) AS cnt FROM books")
        books = (await cursor.fetchone())["cnt"]
        cursor = await self.db.execute("SELECT COUNT(*) AS cnt FROM destinations")
        destinations = (await cursor.fetchone())["cnt"]

        await self.db.execute("DELETE FROM assignments")
        await self.db.execute("DELETE FROM books")
        if include_destinations:
            await self.db.execute("DELETE FROM destinations")
        await self.db.commit()
        return books, destinations

    @staticmethod
    def _row_to_book(row: aiosqlite.Row) -> Book:
        return Book(
            id=row["id"],
            feed_book_id=row["feed_book_id"],
            title=row["title"],
            author=row["author"],
            isbn=row["isbn"],
            status=BookStatus(row["status"]),
            attempts=row["attempts"],
            file_path=row["file_path"],
            added_at=row["added_at"],
            updated_at=row["updated_at"],
            downloaded_at=row["downloaded_at"],
        )

    @staticmethod
    def _row_to_destination(row: aiosqlite.Row) -> Destination:
        return Destination(
            id=row["id"],
            name=row["name"],
            feed_key=row["feed_key"],
            download_path=row["download_path"],
            email=row["email"],
        )
