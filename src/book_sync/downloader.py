"""下载子系统：按下载地址形态选择直连或浏览器路径"""

from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

import httpx

from .config import Config
from .errors import DownloadError, DownloadTooSmallError
from .models import Book, DownloadResult
from .utils import book_filename, format_size, mask_secret

if TYPE_CHECKING:
    from .browser import BrowserDownloader

logger = logging.getLogger(__name__)

# 下载块大小
CHUNK_SIZE = 64 * 1024  # 64KB

# 小于此大小的文件视为错误页面
MIN_FILE_SIZE = 1024

DEFAULT_EXTENSION = ".epub"

CONTENT_TYPE_EXTENSIONS = {
    "application/epub+zip": ".epub",
    "application/epub": ".epub",
    "application/pdf": ".pdf",
    "application/x-mobipocket-ebook": ".mobi",
    "application/vnd.amazon.ebook": ".azw3",
    "application/x-cbz": ".cbz",
    "application/x-cbr": ".cbr",
    "application/zip": ".zip",
}

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

_DISPOSITION_FILENAME = re.compile(r"""filename[^;=\n]*=((['"]).*?\2|[^;\n]*)""")


def detect_extension(headers: httpx.Headers | dict, url: str) -> str:
    """确定文件扩展名

    优先级：Content-Disposition 文件名 > Content-Type 映射 > URL 路径 > 默认 .epub
    """
    disposition = headers.get("content-disposition")
    if disposition:
        match = _DISPOSITION_FILENAME.search(disposition)
        if match:
            filename = match.group(1).strip().strip("'\"")
            if filename.lower().startswith("utf-8''"):
                filename = unquote(filename[len("utf-8''"):])
            ext = os.path.splitext(filename)[1]
            if ext:
                return ext.lower()

    content_type = headers.get("content-type")
    if content_type:
        for mime, ext in CONTENT_TYPE_EXTENSIONS.items():
            if mime in content_type:
                return ext

    ext = os.path.splitext(urlparse(url).path)[1]
    if ext and len(ext) <= 6:
        return ext.lower()

    return DEFAULT_EXTENSION


def verify_download(path: Path) -> int:
    """完整性检查：过小的文件读取内容用于诊断后删除并报错

    Returns:
        文件大小（字节）
    """
    size = path.stat().st_size
    if size < MIN_FILE_SIZE:
        snippet = path.read_text(encoding="utf-8", errors="replace")[:300]
        path.unlink(missing_ok=True)
        raise DownloadTooSmallError(size, snippet)
    return size


class Downloader:
    """下载入口：受保护地址走浏览器，其余走 HTTP 直连"""

    def __init__(
        self,
        config: Config,
        browser: BrowserDownloader | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.browser = browser
        self._client = client

    def is_protected(self, url: str) -> bool:
        """镜像站上的快速下载地址受反爬保护，必须由浏览器完成"""
        parsed = urlparse(url)
        return (
            parsed.hostname in self.config.mirror_domains
            and parsed.path.startswith("/fast_download/")
        )

    async def fetch(self, url: str, book: Book) -> DownloadResult:
        """下载到临时目录，返回文件信息"""
        self.config.tmp_path.mkdir(parents=True, exist_ok=True)
        if self.is_protected(url):
            if self.browser is None:
                raise DownloadError("受保护的下载地址需要浏览器，但浏览器下载未启用")
            logger.info("受保护地址，使用浏览器下载")
            return await self.browser.download(url, book)
        return await self.download_direct(url, book)

    async def download_direct(self, url: str, book: Book) -> DownloadResult:
        """流式 HTTP 下载"""
        logger.info(
            "开始直连下载 (超时 %ds): %s",
            self.config.download_timeout, mask_secret(url, self.config.api_key),
        )
        start = time.monotonic()
        stem = book_filename(book.author, book.title)

        client = self._client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.download_timeout, connect=30),
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
        try:
            async with client.stream("GET", url, follow_redirects=True) as response:
                if response.status_code >= 400:
                    raise DownloadError(f"下载返回 HTTP {response.status_code}")

                logger.debug(
                    "响应: status=%d, content-type=%s, content-length=%s, content-disposition=%s",
                    response.status_code,
                    response.headers.get("content-type", "unknown"),
                    response.headers.get("content-length", "unknown"),
                    response.headers.get("content-disposition", "none"),
                )
                extension = detect_extension(response.headers, str(response.url))
                dest = self.config.tmp_path / f"{stem}{extension}"
                part_file = dest.with_name(dest.name + ".part")

                try:
                    with open(part_file, "wb") as f:
                        async for chunk in response.aiter_bytes(CHUNK_SIZE):
                            f.write(chunk)
                except BaseException:
                    part_file.unlink(missing_ok=True)
                    raise
        except httpx.HTTPError as e:
            raise DownloadError(f"下载请求失败: {e!r}") from e
        finally:
            if self._client is None:
                await client.aclose()

        part_file.replace(dest)
        size = verify_download(dest)
        logger.info(
            "下载完成: %s (%s, %.1fs)",
            dest.name, format_size(size), time.monotonic() - start,
        )
        return DownloadResult(path=dest, extension=extension, size=size)
