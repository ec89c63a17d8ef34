"""浏览器下载测试（用假的 Playwright 对象，不启动真实浏览器）"""

from __future__ import annotations

import asyncio
import functools
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from playwright.async_api import Error as PlaywrightError

from book_sync import browser as browser_module
from book_sync.browser import BrowserDownloader, DirectoryDiffDetector, is_challenge_title
from book_sync.errors import (
    ChallengeError,
    DownloadStalledError,
    DownloadTimeoutError,
    DownloadTooSmallError,
    LoginError,
)
from book_sync.models import Book

BOOK = Book(id=1, feed_book_id="42", title="Dune", author="Frank Herbert")
URL = "https://annas-archive.li/fast_download/abc/0/0?key=k"


async def no_diagnostics() -> str:
    return "diag"


def fast_detector(directory: Path) -> DirectoryDiffDetector:
    return DirectoryDiffDetector(
        directory, poll_interval=0.01, stable_interval=0.02, progress_timeout=1, timeout=2
    )


def test_is_challenge_title():
    assert is_challenge_title("DDoS-Guard")
    assert is_challenge_title("Just a moment...")
    assert is_challenge_title("Attention Required! | Cloudflare")
    assert not is_challenge_title("Anna's Archive")


class TestDirectoryDiffDetector:
    @pytest.mark.asyncio
    async def test_ignores_existing_files(self, tmp_path):
        (tmp_path / "old.epub").write_bytes(b"o" * 9000)
        detector = fast_detector(tmp_path)
        detector.snapshot()
        (tmp_path / "new.epub").write_bytes(b"n" * 2000)

        assert (await detector.wait(no_diagnostics)).name == "new.epub"

    @pytest.mark.asyncio
    async def test_waits_for_partial_file(self, tmp_path):
        detector = fast_detector(tmp_path)
        detector.snapshot()
        partial = tmp_path / "book.epub.crdownload"
        partial.write_bytes(b"x" * 100)

        async def finish():
            await asyncio.sleep(0.1)
            partial.write_bytes(b"x" * 5000)
            partial.rename(tmp_path / "book.epub")

        task = asyncio.create_task(finish())
        result = await detector.wait(no_diagnostics)
        await task
        assert result.name == "book.epub"
        assert result.stat().st_size == 5000

    @pytest.mark.asyncio
    async def test_picks_largest_new_file(self, tmp_path):
        detector = fast_detector(tmp_path)
        detector.snapshot()
        (tmp_path / "redirect.html").write_bytes(b"r" * 300)
        (tmp_path / "book.pdf").write_bytes(b"b" * 8000)

        assert (await detector.wait(no_diagnostics)).name == "book.pdf"

    @pytest.mark.asyncio
    async def test_stalled(self, tmp_path):
        detector = DirectoryDiffDetector(
            tmp_path, poll_interval=0.01, stable_interval=0.01,
            progress_timeout=0.05, timeout=2,
        )
        detector.snapshot()
        with pytest.raises(DownloadStalledError, match="diag"):
            await detector.wait(no_diagnostics)

    @pytest.mark.asyncio
    async def test_timeout_while_partial(self, tmp_path):
        detector = DirectoryDiffDetector(
            tmp_path, poll_interval=0.01, stable_interval=0.01,
            progress_timeout=0.05, timeout=0.1,
        )
        detector.snapshot()
        (tmp_path / "book.epub.part").write_bytes(b"x")
        with pytest.raises(DownloadTimeoutError):
            await detector.wait(no_diagnostics)


# ────────────── 假的 Playwright 对象 ──────────────


class FakeLocator:
    def __init__(self, page: FakePage, selector: str) -> None:
        self.page = page
        self.selector = selector

    @property
    def first(self) -> FakeLocator:
        return self

    async def fill(self, value, timeout=None):
        self.page.filled[self.selector] = value

    async def click(self, timeout=None):
        self.page.url = self.page.origin + self.page.after_login_path


class FakeDownload:
    def __init__(self, payload: bytes, suggested_filename: str = "abc.epub",
                 hang: bool = False) -> None:
        self.payload = payload
        self.suggested_filename = suggested_filename
        self.hang = hang
        self.saved_to: Path | None = None

    async def save_as(self, path):
        self.saved_to = Path(path)
        if self.hang:
            Path(path).write_bytes(self.payload[:10])
            await asyncio.Event().wait()
        Path(path).write_bytes(self.payload)


class FakeContext:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.init_scripts = []

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def new_page(self):
        return self.page


class FakePage:
    def __init__(self, titles=("Anna's Archive",), payload=b"E" * 5000,
                 after_login_path="/account/", download: FakeDownload | None = None,
                 title_delay: float = 0):
        self.origin = "https://annas-archive.li"
        self.url = "about:blank"
        self.titles = list(titles)
        self.after_login_path = after_login_path
        self.download = download or FakeDownload(payload)
        self.title_delay = title_delay
        self.handlers = {}
        self.filled = {}
        self.visited = []

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    async def goto(self, url, **kwargs):
        self.visited.append(url)
        self.url = url
        if "/fast_download/" in url:
            for handler in self.handlers.get("download", []):
                handler(self.download)
            raise PlaywrightError("net::ERR_ABORTED")

    async def title(self):
        if self.title_delay:
            await asyncio.sleep(self.title_delay)
        return self.titles.pop(0) if len(self.titles) > 1 else self.titles[0]

    def locator(self, selector):
        return FakeLocator(self, selector)

    @asynccontextmanager
    async def expect_navigation(self, **kwargs):
        yield

    async def inner_text(self, selector, timeout=None):
        return "body text"


class FakeBrowser:
    def __init__(self, page: FakePage) -> None:
        self.context = FakeContext(page)
        self.context_kwargs = None
        self.closed = False

    async def new_context(self, **kwargs):
        self.context_kwargs = kwargs
        return self.context

    async def close(self):
        self.closed = True


class FakeChromium:
    def __init__(self, browser: FakeBrowser) -> None:
        self.browser = browser
        self.launch_kwargs = None

    async def launch(self, **kwargs):
        self.launch_kwargs = kwargs
        return self.browser


class FakePlaywright:
    def __init__(self, page: FakePage) -> None:
        self.browser = FakeBrowser(page)
        self.chromium = FakeChromium(self.browser)

    def __call__(self):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None


@pytest.fixture
def fast_browser(monkeypatch):
    monkeypatch.setattr(browser_module, "CHALLENGE_POLL_INTERVAL", 0.01)


def make_downloader(config, pw: FakePlaywright) -> BrowserDownloader:
    return BrowserDownloader(
        config,
        playwright_factory=pw,
        detector_factory=functools.partial(
            DirectoryDiffDetector, poll_interval=0.01, stable_interval=0.02
        ),
    )


def browser_dirs(config) -> list[Path]:
    return list(config.tmp_path.glob("browser-*"))


@pytest.mark.asyncio
async def test_download_success(config, fast_browser):
    config.api_key = "k"
    page = FakePage(titles=("DDoS-Guard", "Anna's Archive"))
    pw = FakePlaywright(page)

    result = await make_downloader(config, pw).download(URL, BOOK)

    assert result.path == config.tmp_path / "Frank Herbert - Dune.epub"
    assert result.size == 5000
    assert result.extension == ".epub"
    assert page.filled['input[name="key"]'] == "k"
    assert page.visited[:2] == [
        "https://annas-archive.li/", "https://annas-archive.li/account/",
    ]
    assert pw.chromium.launch_kwargs["headless"] is True
    assert pw.browser.closed
    assert browser_dirs(config) == []


@pytest.mark.asyncio
async def test_download_event_saved_into_private_dir(config, fast_browser):
    config.api_key = "k"
    download = FakeDownload(b"P" * 6000, suggested_filename="Dune: Book 1.pdf")
    pw = FakePlaywright(FakePage(download=download))

    result = await make_downloader(config, pw).download(URL, BOOK)

    assert pw.browser.context_kwargs["accept_downloads"] is True
    assert download.saved_to.name == "Dune Book 1.pdf.part"
    assert download.saved_to.parent.name.startswith("browser-")
    assert result.path == config.tmp_path / "Frank Herbert - Dune.pdf"
    assert result.size == 6000


@pytest.mark.asyncio
async def test_timeout_reports_page_diagnostics(config, fast_browser):
    config.api_key = "k"
    config.browser_download_timeout = browser_module.DIAGNOSTICS_MARGIN + 1
    page = FakePage(download=FakeDownload(b"S" * 5000, hang=True))
    pw = FakePlaywright(page)
    page.title_delay = 0.4

    with pytest.raises(DownloadTimeoutError) as exc_info:
        await make_downloader(config, pw).download(URL, BOOK)

    assert "url=https://annas-archive.li/fast_download/" in str(exc_info.value)
    assert "body text" in str(exc_info.value)
    assert pw.browser.closed
    assert browser_dirs(config) == []


@pytest.mark.asyncio
async def test_challenge_never_clears(config, fast_browser):
    config.api_key = "k"
    config.challenge_timeout = 0
    pw = FakePlaywright(FakePage(titles=("Just a moment...",)))

    with pytest.raises(ChallengeError):
        await make_downloader(config, pw).download(URL, BOOK)
    assert pw.browser.closed
    assert browser_dirs(config) == []


@pytest.mark.asyncio
async def test_login_bounced(config, fast_browser):
    config.api_key = "k"
    pw = FakePlaywright(FakePage(after_login_path="/account/login"))

    with pytest.raises(LoginError):
        await make_downloader(config, pw).download(URL, BOOK)
    assert pw.browser.closed


@pytest.mark.asyncio
async def test_login_requires_key(config, fast_browser):
    pw = FakePlaywright(FakePage())
    with pytest.raises(LoginError):
        await make_downloader(config, pw).download(URL, BOOK)
    assert pw.browser.closed


@pytest.mark.asyncio
async def test_error_page_rejected(config, fast_browser):
    config.api_key = "k"
    pw = FakePlaywright(FakePage(payload=b"<html>limit reached</html>"))

    with pytest.raises(DownloadTooSmallError):
        await make_downloader(config, pw).download(URL, BOOK)
    assert pw.browser.closed
    assert not (config.tmp_path / "Frank Herbert - Dune.epub").exists()
