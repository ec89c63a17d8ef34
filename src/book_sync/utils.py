"""工具模块：日志配置、轮询、文件名清理、统计表格"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

console = Console()

T = TypeVar("T")

# 文件名最大长度（字符）
MAX_FILENAME_LENGTH = 200


def setup_logging(log_dir: Path, verbose: bool = False) -> None:
    """配置日志：同时输出到控制台和文件"""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "book-sync.log"

    level = logging.DEBUG if verbose else logging.INFO

    # Rich 控制台处理器
    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(level)

    # 文件处理器
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )

    # 根日志器
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(rich_handler)
    root.addHandler(file_handler)

    # 抑制第三方库的 DEBUG 日志
    for name in ("httpx", "httpcore", "playwright", "asyncio", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def poll_until(
    check: Callable[[], Awaitable[T | None]],
    interval: float,
    timeout: float,
) -> T | None:
    """固定间隔轮询，直到 check 返回非 None 或超时

    check 可以抛异常提前终止轮询（异常原样向上传播）。

    Returns:
        check 的首个非 None 结果；超时返回 None
    """
    deadline = time.monotonic() + timeout
    while True:
        result = await check()
        if result is not None:
            return result
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        await asyncio.sleep(min(interval, remaining))


def sanitize_filename(name: str) -> str:
    """清理文件名：移除非法字符、合并空白、限制长度"""
    name = re.sub(r'[<>:"/\\|?*\x00-\x1f]', "", name)
    name = re.sub(r"\s+", " ", name).strip()
    return name[:MAX_FILENAME_LENGTH]


def book_filename(author: str | None, title: str | None) -> str:
    """目标文件名主体："<作者> - <书名>"（不含扩展名）"""
    return sanitize_filename(f"{author or 'Unknown'} - {title or 'Unknown'}")


def fix_ownership(path: Path, uid: int | None, gid: int | None) -> None:
    """按配置修改文件属主（NAS 共享目录场景）"""
    if uid is None and gid is None:
        return
    os.chown(path, -1 if uid is None else uid, -1 if gid is None else gid)


def mask_secret(text: str, secret: str) -> str:
    """日志中隐藏密钥"""
    return text.replace(secret, "***") if secret else text


def format_size(size: float) -> str:
    """格式化文件大小"""
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def print_stats_table(stats: dict[str, int], today: int, daily_limit: int) -> None:
    """打印统计表格"""
    table = Table(title="队列统计", show_header=True, header_style="bold magenta")
    table.add_column("状态", style="cyan")
    table.add_column("数量", justify="right", style="green")

    status_labels = {
        "pending": "⏳ 等待中",
        "downloaded": "✅ 已下载",
        "failed": "❌ 失败",
    }

    total = 0
    for status, label in status_labels.items():
        count = stats.get(status, 0)
        total += count
        table.add_row(label, str(count))

    table.add_row("─" * 10, "─" * 6, style="dim")
    table.add_row("📚 总计", str(total), style="bold")
    table.add_row("📅 今日下载", f"{today}/{daily_limit}", style="bold")

    console.print(table)
