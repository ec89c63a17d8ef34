"""RSS 书单同步

每个目的地对应一个 RSS 书单，条目以 book_id 为去重键写入 books 表并建立关联。
单个目的地同步失败只记录日志，不影响其他目的地。
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET

import httpx

from .config import Config
from .models import Destination, FeedItem
from .state import StateDB

logger = logging.getLogger(__name__)

_DC_CREATOR = "{http://purl.org/dc/elements/1.1/}creator"
_ISBN13 = re.compile(r"isbn13:\s*(\d{13})")


def _text(item: ET.Element, tag: str) -> str | None:
    el = item.find(tag)
    if el is None or el.text is None:
        return None
    value = el.text.strip()
    return value or None


def parse_feed(xml_text: str) -> tuple[list[FeedItem], int]:
    """解析 RSS，返回 (条目列表, 因缺少 book_id 跳过的条目数)"""
    root = ET.fromstring(xml_text)
    items, skipped = [], 0
    for item in root.iter("item"):
        title = _text(item, "title")
        book_id = _text(item, "book_id")
        if not book_id:
            logger.warning("跳过缺少 book_id 的条目: %r", title or "unknown")
            skipped += 1
            continue

        isbn = _text(item, "isbn")
        if not isbn:
            match = _ISBN13.search(_text(item, "description") or "")
            if match:
                isbn = match.group(1)

        author = _text(item, "author_name") or _text(item, _DC_CREATOR)
        items.append(FeedItem(feed_book_id=book_id, title=title, author=author, isbn=isbn))
    return items, skipped


class FeedSync:
    """把各目的地的 RSS 书单同步进队列"""

    def __init__(
        self,
        config: Config,
        state: StateDB,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.state = state
        self._client = client or httpx.AsyncClient(timeout=60, follow_redirects=True)

    async def aclose(self) -> None:
        await self._client.aclose()

    def feed_url(self, destination: Destination) -> str:
        return self.config.feed_url_template.format(feed_key=destination.feed_key)

    async def fetch_items(self, destination: Destination) -> tuple[list[FeedItem], int]:
        resp = await self._client.get(self.feed_url(destination))
        resp.raise_for_status()
        return parse_feed(resp.text)

    async def sync(self) -> int:
        """同步全部目的地，返回新增书籍数"""
        destinations = await self.state.list_destinations()
        if not destinations:
            logger.warning("尚未配置任何目的地，请先运行 add-user")
            return 0

        logger.info(
            "同步 %d 个目的地的书单: %s",
            len(destinations), ", ".join(d.name for d in destinations),
        )
        total_new = 0
        for destination in destinations:
            try:
                total_new += await self._sync_destination(destination)
            except Exception as e:
                logger.error("同步 %s 的书单失败: %s", destination.name, e)
        return total_new

    async def _sync_destination(self, destination: Destination) -> int:
        items, skipped = await self.fetch_items(destination)
        logger.info("%s 的书单返回 %d 条", destination.name, len(items) + skipped)

        new = existing = 0
        for item in items:
            book_id, created = await self.state.upsert_book(item)
            await self.state.link(destination.id, book_id)
            if created:
                new += 1
                logger.info(
                    '新书入队: "%s" by %s (book_id: %s)',
                    item.title, item.author or "?", item.feed_book_id,
                )
            else:
                existing += 1

        logger.info(
            "%s: 新增 %d, 已存在 %d, 跳过 %d", destination.name, new, existing, skipped
        )
        return new
