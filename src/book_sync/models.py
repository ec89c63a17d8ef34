"""数据模型定义"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path


class BookStatus(enum.Enum):
    """书籍状态"""
    PENDING = "pending"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


@dataclass
class Book:
    """队列中的书籍（对应 books 表一行）"""
    id: int
    feed_book_id: str
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    status: BookStatus = BookStatus.PENDING
    attempts: int = 0
    file_path: str | None = None
    added_at: str = ""
    updated_at: str = ""
    downloaded_at: str | None = None

    @property
    def display(self) -> str:
        return f'"{self.title}" by {self.author or "?"}'


@dataclass
class Destination:
    """投递目标（用户）"""
    id: int
    name: str
    feed_key: str
    download_path: str
    email: str | None = None


@dataclass(frozen=True)
class FeedItem:
    """RSS 书单中解析出的一条记录"""
    feed_book_id: str
    title: str | None = None
    author: str | None = None
    isbn: str | None = None


@dataclass(frozen=True)
class SearchCandidate:
    """搜索结果列表中的一条候选"""
    title: str
    author: str
    md5: str


@dataclass
class DownloadResult:
    """下载结果：临时目录中的文件"""
    path: Path
    extension: str
    size: int


@dataclass
class CycleReport:
    """一次队列处理的统计结果"""
    succeeded: int = 0
    failed: int = 0
    skipped_limit: int = 0
    # destination_id -> (destination, 本轮投递的书)
    delivered: dict[int, tuple[Destination, list[Book]]] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    def add_delivery(self, destination: Destination, book: Book) -> None:
        entry = self.delivered.setdefault(destination.id, (destination, []))
        entry[1].append(book)
