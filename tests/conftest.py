"""共享 fixtures"""

from __future__ import annotations

import pytest
import pytest_asyncio

from book_sync.config import Config
from book_sync.models import FeedItem
from book_sync.state import StateDB


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.delenv("BOOK_SYNC_API_KEY", raising=False)
    return Config(
        project_root=tmp_path,
        queue_cooldown_ms=0,
        mirror_domains=["annas-archive.li", "annas-archive.gl"],
    )


@pytest_asyncio.fixture
async def state(config):
    db = StateDB(config.db_path)
    await db.open()
    yield db
    await db.close()


async def add_book(state: StateDB, feed_id: str, title: str | None, author: str | None) -> int:
    book_id, _ = await state.upsert_book(
        FeedItem(feed_book_id=feed_id, title=title, author=author)
    )
    return book_id


def search_page(*rows: tuple[str, str, str | None]) -> str:
    """构造搜索结果页 HTML，rows 为 (书名, 作者, md5)"""
    parts = []
    for title, author, md5 in rows:
        md5_link = f'<a href="/md5/{md5}" class="js-vim-focus">{title}</a>' if md5 else (
            f'<a class="js-vim-focus">{title}</a>'
        )
        parts.append(
            "<div>"
            f"{md5_link}"
            f'<a href="/search?q={author}"><span class="icon-[mdi--user-edit] mr-1"></span>{author}</a>'
            "</div>"
        )
    return (
        "<html><body><div class='js-aarecord-list-outer'>"
        + "".join(parts)
        + "</div></body></html>"
    )
