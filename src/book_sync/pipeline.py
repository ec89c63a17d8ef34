"""流水线驱动：单飞执行一轮 同步书单 → 处理队列 → 发送通知

触发源（定时器、SIGUSR1 手动触发、启动触发）都写入同一个触发队列，
驱动从队列中取出触发并调用 try_start()；已有一轮在运行时新的触发直接忽略。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time

from .browser import BrowserDownloader
from .config import Config
from .downloader import Downloader
from .feed import FeedSync
from .job_queue import QueueManager
from .models import CycleReport
from .notify import Notifier
from .proxy import SolverClient
from .search import CatalogSearcher
from .state import StateDB

logger = logging.getLogger(__name__)


class PipelineDriver:
    """持有"是否正在运行"状态，保证同一时刻最多一轮"""

    def __init__(
        self,
        config: Config,
        feed: FeedSync,
        queue: QueueManager,
        notifier: Notifier,
    ) -> None:
        self.config = config
        self.feed = feed
        self.queue = queue
        self.notifier = notifier
        self._running = False
        self._current: asyncio.Task | None = None
        self._triggers: asyncio.Queue[str] = asyncio.Queue()

    @property
    def running(self) -> bool:
        return self._running

    def try_start(self, trigger: str) -> bool:
        """非阻塞地启动一轮；已在运行则忽略并返回 False"""
        if self._running:
            logger.warning("上一轮仍在运行，忽略触发: %s", trigger)
            return False
        self._running = True
        self._current = asyncio.create_task(self._run_cycle(trigger), name=f"cycle-{trigger}")
        return True

    async def run_once(self, trigger: str = "manual") -> bool:
        """启动一轮并等待结束，返回是否真的执行了"""
        if not self.try_start(trigger):
            return False
        await self.wait()
        return True

    async def wait(self) -> None:
        """等待当前一轮结束"""
        if self._current is not None:
            await self._current

    def trigger(self, source: str) -> None:
        """记录一次触发，由 serve() 循环统一处理"""
        self._triggers.put_nowait(source)

    async def _run_cycle(self, trigger: str) -> CycleReport | None:
        start = time.monotonic()
        logger.info("========== 开始一轮 (触发: %s) ==========", trigger)
        report = None
        try:
            await self.feed.sync()
            report = await self.queue.run()
            await self.notifier.notify(report)
        except Exception:
            logger.exception("本轮异常结束 (触发: %s)", trigger)
        finally:
            self._running = False
            logger.info("========== 本轮结束 (%.1fs) ==========", time.monotonic() - start)
        return report

    async def _timer(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.trigger("schedule")

    async def serve(
        self,
        solver: SolverClient | None = None,
        stop: asyncio.Event | None = None,
    ) -> None:
        """常驻运行：启动触发 + 定时触发 + SIGUSR1 手动触发，直到 stop 被置位"""
        stop = stop or asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGUSR1, self._on_signal)
        timer = asyncio.create_task(self._timer(self.config.schedule_interval), name="timer")
        stop_wait = asyncio.create_task(stop.wait())
        logger.info(
            "服务已启动，每 %ds 运行一轮；发送 SIGUSR1 可立即触发",
            self.config.schedule_interval,
        )

        try:
            await asyncio.sleep(self.config.startup_delay)
            if solver is not None:
                await solver.wait_until_ready(
                    self.config.solver_ready_retries, self.config.solver_ready_interval
                )
            self.trigger("startup")

            while not stop.is_set():
                next_trigger = asyncio.create_task(self._triggers.get())
                done, _ = await asyncio.wait(
                    {next_trigger, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if next_trigger in done:
                    self.try_start(next_trigger.result())
                else:
                    next_trigger.cancel()
        finally:
            timer.cancel()
            stop_wait.cancel()
            loop.remove_signal_handler(signal.SIGUSR1)
            await self.wait()

    async def aclose(self) -> None:
        await self.feed.aclose()

    def _on_signal(self) -> None:
        logger.info("收到 SIGUSR1，触发手动运行")
        self.trigger("manual")


def create_driver(
    config: Config,
    state: StateDB,
    solver: SolverClient,
) -> PipelineDriver:
    """按配置组装各组件"""
    searcher = CatalogSearcher(config, solver)
    downloader = Downloader(config, browser=BrowserDownloader(config))
    queue = QueueManager(config, state, searcher, downloader)
    return PipelineDriver(config, FeedSync(config, state), queue, Notifier(config, state))
