"""浏览器下载（受反爬保护的快速下载地址）

源站把挑战通过后的 clearance 令牌绑定到求解方的网络指纹上，普通 HTTP 客户端
无法复用代理求解出的会话，必须由同一个浏览器完成整个流程：

1. 启动独立的无头 Chromium（隐藏自动化特征）
2. 打开源站首页，轮询页面标题直到挑战页消失
3. 打开账户页，用 API 密钥登录，通过跳转后的路径确认登录成功
4. 开启下载事件，把浏览器下载保存到私有临时目录，并记录目录快照
5. 打开下载地址（导航报错不致命，下载通过 download 事件接收）
6. 轮询目录差异，直到新文件下载完成且大小稳定
7. 把文件移到共享临时目录；无论成败都关闭浏览器
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import time
from pathlib import Path
from typing import Awaitable, Callable, Protocol
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Download, Page, async_playwright

from .config import Config
from .downloader import DEFAULT_EXTENSION, USER_AGENT, verify_download
from .errors import (
    ChallengeError,
    DownloadError,
    DownloadStalledError,
    DownloadTimeoutError,
    LoginError,
)
from .models import Book, DownloadResult
from .utils import book_filename, format_size, mask_secret, poll_until, sanitize_filename

logger = logging.getLogger(__name__)

# 挑战页标题特征（小写匹配）
CHALLENGE_TITLES = (
    "ddos-guard",
    "just a moment",
    "checking your browser",
    "attention required",
)

# 浏览器下载中的临时文件后缀
PARTIAL_SUFFIXES = (".crdownload", ".part", ".tmp")

LOGIN_PATH = "/account/"

CHALLENGE_POLL_INTERVAL = 3.0
DOWNLOAD_POLL_INTERVAL = 3.0
STABLE_CHECK_INTERVAL = 2.0
# 检测器超时比整体超时提前的秒数，留给页面诊断
DIAGNOSTICS_MARGIN = 5.0

_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
]

# 隐藏自动化特征：webdriver 标志、插件列表、语言列表、通知权限查询
_STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) => (
  parameters.name === 'notifications'
    ? Promise.resolve({ state: Notification.permission })
    : originalQuery(parameters)
);
"""

Diagnostics = Callable[[], Awaitable[str]]


def is_challenge_title(title: str) -> bool:
    lowered = title.lower()
    return any(marker in lowered for marker in CHALLENGE_TITLES)


class DownloadCompletionDetector(Protocol):
    """下载完成检测：等待浏览器把文件完整写入磁盘"""

    def snapshot(self) -> None:
        ...

    async def wait(self, diagnostics: Diagnostics) -> Path:
        ...


# (download_dir, progress_timeout=..., timeout=...) -> 检测器
DetectorFactory = Callable[..., DownloadCompletionDetector]


class DirectoryDiffDetector:
    """基于目录差异 + 大小稳定性的下载完成检测

    - 快照之后新出现、带下载中后缀的文件视为"下载中"
    - 新出现的完整文件，需间隔 stable_interval 两次检查大小不变才接受
      （防止先落下一个小的跳转页、随后才开始真正的大文件）
    - progress_timeout 内没有任何新文件则报"无进展"
    """

    def __init__(
        self,
        directory: Path,
        poll_interval: float = DOWNLOAD_POLL_INTERVAL,
        stable_interval: float = STABLE_CHECK_INTERVAL,
        progress_timeout: float = 90,
        timeout: float = 300,
    ) -> None:
        self.directory = directory
        self.poll_interval = poll_interval
        self.stable_interval = stable_interval
        self.progress_timeout = progress_timeout
        self.timeout = timeout
        self._baseline: set[str] = set()

    def snapshot(self) -> None:
        self._baseline = {p.name for p in self.directory.iterdir()}

    def _new_files(self) -> tuple[list[Path], list[Path]]:
        """返回 (下载中, 已完成) 两组新文件"""
        in_progress, complete = [], []
        for p in self.directory.iterdir():
            if p.name in self._baseline or not p.is_file():
                continue
            if p.name.endswith(PARTIAL_SUFFIXES):
                in_progress.append(p)
            else:
                complete.append(p)
        return in_progress, complete

    async def wait(self, diagnostics: Diagnostics) -> Path:
        start = time.monotonic()
        progressed = False

        async def check() -> Path | None:
            nonlocal progressed
            in_progress, complete = self._new_files()

            if not in_progress and not complete:
                if not progressed and time.monotonic() - start > self.progress_timeout:
                    raise DownloadStalledError(
                        f"{self.progress_timeout:.0f}s 内下载无进展: {await diagnostics()}"
                    )
                return None

            if not progressed:
                logger.info("检测到下载开始")
                progressed = True

            if in_progress or not complete:
                logger.debug("下载中: %s", ", ".join(p.name for p in in_progress))
                return None

            candidate = max(complete, key=lambda p: p.stat().st_size)
            size = candidate.stat().st_size
            await asyncio.sleep(self.stable_interval)
            if not candidate.exists() or candidate.stat().st_size != size:
                return None
            if self._new_files()[0]:
                # 稳定期间又开始了新的下载，继续等待
                return None
            return candidate

        result = await poll_until(check, self.poll_interval, self.timeout)
        if result is None:
            raise DownloadTimeoutError(
                f"浏览器下载超时 ({self.timeout:.0f}s): {await diagnostics()}"
            )
        return result


class BrowserDownloader:
    """每次下载独占一个浏览器实例，用完即关"""

    def __init__(
        self,
        config: Config,
        playwright_factory=async_playwright,
        detector_factory: DetectorFactory = DirectoryDiffDetector,
    ) -> None:
        self.config = config
        self._playwright_factory = playwright_factory
        self._detector_factory = detector_factory

    async def download(self, url: str, book: Book) -> DownloadResult:
        """通过浏览器下载，整体受 browser_download_timeout 约束"""
        timeout = self.config.browser_download_timeout
        deadline = time.monotonic() + timeout
        try:
            return await asyncio.wait_for(self._download(url, book, deadline), timeout=timeout)
        except asyncio.TimeoutError:
            raise DownloadTimeoutError(f"浏览器下载整体超时 ({timeout}s)") from None

    async def _download(self, url: str, book: Book, deadline: float) -> DownloadResult:
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        self.config.tmp_path.mkdir(parents=True, exist_ok=True)
        download_dir = Path(tempfile.mkdtemp(prefix="browser-", dir=self.config.tmp_path))
        saves: list[asyncio.Task] = []

        try:
            async with self._playwright_factory() as pw:
                browser = await pw.chromium.launch(
                    headless=self.config.headless,
                    executable_path=self.config.browser_executable or None,
                    args=_LAUNCH_ARGS,
                )
                logger.debug("浏览器已启动 (headless=%s)", self.config.headless)
                try:
                    context = await browser.new_context(
                        user_agent=USER_AGENT,
                        locale="en-US",
                        extra_http_headers={"Accept-Language": "en-US,en;q=0.9"},
                        viewport={"width": 1920, "height": 1080},
                        accept_downloads=True,
                    )
                    await context.add_init_script(_STEALTH_SCRIPT)
                    page = await context.new_page()

                    await self._open_origin(page, origin)
                    await self._login(page, origin)

                    # 检测器必须先于外层超时结束，才能带上页面诊断信息
                    remaining = deadline - time.monotonic() - DIAGNOSTICS_MARGIN
                    detector = self._detector_factory(
                        download_dir,
                        progress_timeout=min(self.config.progress_timeout, max(remaining, 0)),
                        timeout=max(remaining, 0),
                    )
                    detector.snapshot()
                    page.on(
                        "download",
                        lambda d: saves.append(
                            asyncio.create_task(self._save_download(d, download_dir))
                        ),
                    )

                    logger.info("打开下载地址: %s", mask_secret(url, self.config.api_key))
                    try:
                        await page.goto(
                            url, wait_until="domcontentloaded",
                            timeout=self.config.login_timeout * 1000,
                        )
                    except PlaywrightError as e:
                        # 触发下载的跳转会让 goto 报错，下载本身通过 download 事件接收
                        logger.debug("导航返回错误（可忽略）: %s", e)

                    downloaded = await detector.wait(lambda: self._diagnostics(page))
                    return self._finalize(downloaded, book)
                finally:
                    for task in saves:
                        task.cancel()
                    await asyncio.gather(*saves, return_exceptions=True)
                    await browser.close()
                    logger.debug("浏览器已关闭")
        finally:
            shutil.rmtree(download_dir, ignore_errors=True)

    async def _open_origin(self, page: Page, origin: str) -> None:
        logger.info("打开源站首页: %s", origin)
        try:
            await page.goto(
                origin + "/", wait_until="domcontentloaded",
                timeout=self.config.challenge_timeout * 1000,
            )
        except PlaywrightError as e:
            raise ChallengeError(f"打开源站首页失败: {e}") from e
        await self._wait_for_challenge(page)

    async def _wait_for_challenge(self, page: Page) -> None:
        """轮询页面标题，直到不再是挑战页"""

        async def check() -> str | None:
            try:
                title = await page.title()
            except PlaywrightError:
                # 挑战页跳转期间执行上下文会被销毁
                return None
            if is_challenge_title(title):
                logger.debug("挑战页仍在: %r", title)
                return None
            return title

        title = await poll_until(
            check, CHALLENGE_POLL_INTERVAL, self.config.challenge_timeout
        )
        if title is None:
            raise ChallengeError(
                f"{self.config.challenge_timeout}s 内未通过挑战页: {page.url}"
            )
        logger.debug("挑战已通过，页面标题: %r", title)

    async def _login(self, page: Page, origin: str) -> None:
        """用 API 密钥登录账户"""
        if not self.config.api_key:
            raise LoginError("未配置 API 密钥，无法登录")

        timeout_ms = self.config.login_timeout * 1000
        logger.info("登录账户: %s%s", origin, LOGIN_PATH)
        try:
            await page.goto(origin + LOGIN_PATH, wait_until="domcontentloaded", timeout=timeout_ms)
            await self._wait_for_challenge(page)
            await page.locator('input[name="key"]').first.fill(
                self.config.api_key, timeout=timeout_ms
            )
            async with page.expect_navigation(wait_until="domcontentloaded", timeout=timeout_ms):
                await page.locator('button[type="submit"]').first.click(timeout=timeout_ms)
        except PlaywrightError as e:
            raise LoginError(f"登录过程出错: {e}") from e

        path = urlparse(page.url).path
        if not path.startswith("/account") or "login" in path:
            raise LoginError(f"登录失败，提交后停留在: {path}")
        logger.info("登录成功")

    @staticmethod
    async def _save_download(download: Download, directory: Path) -> None:
        """把浏览器下载保存到私有目录，写完前保持 .part 后缀"""
        name = sanitize_filename(download.suggested_filename or "") or f"download{DEFAULT_EXTENSION}"
        target = directory / name
        part = target.with_name(target.name + ".part")
        logger.debug("浏览器开始下载: %s", name)
        try:
            await download.save_as(part)
        except PlaywrightError as e:
            logger.warning("保存浏览器下载失败: %s", e)
            part.unlink(missing_ok=True)
            return
        part.rename(target)

    @staticmethod
    async def _diagnostics(page: Page) -> str:
        try:
            title = await page.title()
            body = await page.inner_text("body", timeout=5000)
        except PlaywrightError as e:
            return f"url={page.url}, 无法读取页面: {e}"
        snippet = " ".join(body.split())[:500]
        return f"url={page.url}, title={title!r}, text={snippet!r}"

    def _finalize(self, downloaded: Path, book: Book) -> DownloadResult:
        """移动到共享临时目录并做完整性检查"""
        extension = downloaded.suffix.lower()
        if not extension or len(extension) > 6:
            extension = DEFAULT_EXTENSION
        dest = self.config.tmp_path / f"{book_filename(book.author, book.title)}{extension}"
        shutil.move(str(downloaded), dest)
        try:
            size = verify_download(dest)
        except DownloadError:
            logger.warning("浏览器下载结果未通过完整性检查: %s", downloaded.name)
            raise
        logger.info("浏览器下载完成: %s (%s)", dest.name, format_size(size))
        return DownloadResult(path=dest, extension=extension, size=size)
