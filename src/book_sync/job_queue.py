"""下载队列管理

每轮按尝试次数从少到多逐本处理待下载书籍：搜索 → 下载 → 分发到各目的地。
限额：
- 全局每日上限：每处理一本前重新统计，达到即停止
- 目的地每日上限：轮次开始时算出"已达上限"集合，每次成功后刷新；
  书籍的所有目的地都达上限时本轮跳过（不计尝试），避免堵住后面的书
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path

from .config import Config
from .downloader import Downloader
from .errors import BookNotFoundError, EmptyQueryError
from .matching import build_query
from .models import Book, BookStatus, CycleReport, Destination, DownloadResult
from .search import CatalogSearcher
from .state import StateDB
from .utils import book_filename, fix_ownership

logger = logging.getLogger(__name__)


class QueueManager:
    """书籍生命周期（状态、尝试次数、限额）与单轮处理循环"""

    def __init__(
        self,
        config: Config,
        state: StateDB,
        searcher: CatalogSearcher,
        downloader: Downloader,
    ) -> None:
        self.config = config
        self.state = state
        self.searcher = searcher
        self.downloader = downloader

    # ────────────── 生命周期 ──────────────

    async def select_next(self, exclude: set[int]) -> Book | None:
        return await self.state.next_pending(self.config.max_attempts, exclude)

    async def record_attempt_start(self, book: Book) -> int:
        """开始工作前先计数，进程中途崩溃也会消耗一次机会"""
        book.attempts = await self.state.increment_attempts(book.id, self.config.max_attempts)
        return book.attempts

    async def record_success(self, book: Book, filename: str) -> None:
        await self.state.mark_downloaded(book.id, filename)
        book.status = BookStatus.DOWNLOADED
        book.file_path = filename

    async def record_failure(self, book: Book) -> None:
        """用尽尝试次数则永久失败，否则留待下一轮"""
        if book.attempts >= self.config.max_attempts:
            logger.warning(
                "已尝试 %d 次，永久失败: %s", self.config.max_attempts, book.display
            )
            await self.state.mark_failed(book.id)
            book.status = BookStatus.FAILED
        else:
            logger.info(
                "稍后重试 %s（剩余 %d 次）",
                book.display, self.config.max_attempts - book.attempts,
            )

    # ────────────── 处理循环 ──────────────

    async def run(self) -> CycleReport:
        """处理队列直到达到全局上限或没有可处理的书"""
        report = CycleReport()
        daily_cap = self.config.max_downloads_per_day

        pending = await self.state.count_pending(self.config.max_attempts)
        failed = (await self.state.stats()).get(BookStatus.FAILED.value, 0)
        today = await self.state.count_downloads_today()
        logger.info(
            "队列: %d 本待处理, %d 本永久失败, 今日已下载 %d/%d",
            pending, failed, today, daily_cap,
        )

        rate_limited = await self._rate_limited_destinations()
        skipped: set[int] = set()

        while True:
            today = await self.state.count_downloads_today()
            if today >= daily_cap:
                logger.info("已达每日下载上限 (%d/%d)，停止处理", today, daily_cap)
                break

            book = await self.select_next(skipped)
            if book is None:
                break

            destinations = await self.state.destinations_for_book(book.id)
            eligible = [d for d in destinations if d.id not in rate_limited]
            if not eligible:
                skipped.add(book.id)
                report.skipped_limit += 1
                continue

            await self._process(book, eligible, rate_limited, report)
            await asyncio.sleep(self.config.queue_cooldown)

        if report.processed == 0 and report.skipped_limit == 0:
            logger.info("队列为空，无需处理")
        else:
            logger.info(
                "队列处理完成: 成功 %d, 失败 %d, 因限额跳过 %d",
                report.succeeded, report.failed, report.skipped_limit,
            )
        return report

    async def _process(
        self,
        book: Book,
        eligible: list[Destination],
        rate_limited: set[int],
        report: CycleReport,
    ) -> None:
        """处理单本书；任何异常都只记为一次失败"""
        query = build_query(book.title, book.author)
        attempt = await self.record_attempt_start(book)
        logger.info(
            "处理 %s (搜索词: %r, 第 %d/%d 次, id=%d)",
            book.display, query, attempt, self.config.max_attempts, book.id,
        )
        start = time.monotonic()

        try:
            if not query:
                raise EmptyQueryError("没有可用于搜索的书名或作者")

            reference = await self.searcher.search(query, book.title, book.author)
            if reference is None:
                raise BookNotFoundError("所有镜像均未找到该书")

            result = await self.downloader.fetch(reference, book)
            filename, delivered = await self._fan_out(book, result, eligible)
            await self.record_success(book, filename)
        except Exception as e:
            logger.error(
                "失败: %s (第 %d/%d 次, %.1fs): %s",
                book.display, attempt, self.config.max_attempts,
                time.monotonic() - start, e,
            )
            await self.record_failure(book)
            report.failed += 1
            return

        logger.info("成功: %s (%.1fs)", book.display, time.monotonic() - start)
        report.succeeded += 1
        for destination in delivered:
            report.add_delivery(destination, book)
        await self._refresh_limits(delivered, rate_limited)

    async def _fan_out(
        self,
        book: Book,
        result: DownloadResult,
        destinations: list[Destination],
    ) -> tuple[str, list[Destination]]:
        """复制到各目的地目录，单个目的地失败不影响其他目的地

        Returns:
            (文件名, 成功投递的目的地)
        """
        filename = book_filename(book.author, book.title) + result.extension
        logger.info("分发 %r 到 %d 个目的地", filename, len(destinations))

        delivered = []
        for destination in destinations:
            dest_dir = Path(destination.download_path)
            dest = dest_dir / filename
            try:
                dest_dir.mkdir(parents=True, exist_ok=True)
                if dest.resolve() != result.path.resolve():
                    shutil.copyfile(result.path, dest)
                fix_ownership(dest, self.config.puid, self.config.pgid)
            except OSError as e:
                logger.error("复制到 %s 失败 (%s): %s", destination.name, dest_dir, e)
                continue
            await self.state.mark_delivered(destination.id, book.id)
            delivered.append(destination)
            logger.info("已保存: %s (%s)", dest, destination.name)

        try:
            result.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("删除临时文件失败 %s: %s", result.path, e)

        return filename, delivered

    async def _rate_limited_destinations(self) -> set[int]:
        limit = self.config.max_downloads_per_destination_per_day
        limited = set()
        for destination in await self.state.list_destinations():
            count = await self.state.count_destination_downloads_today(destination.id)
            if count >= limit:
                limited.add(destination.id)
                logger.info(
                    '目的地 "%s" 已达每日上限 (%d/%d)，跳过其书籍',
                    destination.name, count, limit,
                )
        return limited

    async def _refresh_limits(
        self, destinations: list[Destination], rate_limited: set[int]
    ) -> None:
        """成功后刷新：目的地可能刚好在本轮达到上限"""
        limit = self.config.max_downloads_per_destination_per_day
        for destination in destinations:
            if destination.id in rate_limited:
                continue
            count = await self.state.count_destination_downloads_today(destination.id)
            if count >= limit:
                rate_limited.add(destination.id)
                logger.info(
                    '目的地 "%s" 刚达到每日上限 (%d/%d)', destination.name, count, limit
                )
