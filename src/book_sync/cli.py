"""CLI 命令定义"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sqlite3
import sys

from rich.table import Table

from .config import Config, load_config
from .pipeline import create_driver
from .proxy import SolverClient
from .state import StateDB
from .utils import console, print_stats_table, setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="book-sync",
        description="书单同步下载服务：从 RSS 书单发现书籍，搜索镜像站并下载分发",
    )
    parser.add_argument(
        "--config", "-C", type=str, default=None,
        help="配置文件路径 (默认: config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="启用详细日志",
    )

    sub = parser.add_subparsers(dest="command", help="可用命令")

    # run / once
    for name, help_text in (
        ("run", "常驻运行（启动时一轮 + 定时 + SIGUSR1 手动触发）"),
        ("once", "立即运行一轮后退出"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument(
            "--no-headless", action="store_true",
            help="显示浏览器窗口（调试用）",
        )
        p.add_argument(
            "--browser", type=str, default=None,
            help="Chromium 可执行文件路径",
        )

    # add-user
    add = sub.add_parser("add-user", help="新增目的地")
    add.add_argument("name", help="显示名称")
    add.add_argument("feed_key", help="RSS 书单 ID")
    add.add_argument("path", help="下载目录")
    add.add_argument("--email", default=None, help="通知邮箱")

    # update-user
    upd = sub.add_parser("update-user", help="修改目的地")
    upd.add_argument("feed_key", help="RSS 书单 ID")
    upd.add_argument("--name", default=None, help="新的显示名称")
    upd.add_argument("--path", default=None, help="新的下载目录")
    email = upd.add_mutually_exclusive_group()
    email.add_argument("--email", default=None, help="新的通知邮箱")
    email.add_argument("--clear-email", action="store_true", help="清除通知邮箱")

    # list-users
    sub.add_parser("list-users", help="列出目的地")

    # status
    sub.add_parser("status", help="查看队列统计")

    # retry
    sub.add_parser("retry", help="将所有永久失败的书重新放回队列")

    # reset-limits
    sub.add_parser("reset-limits", help="清空今日下载限额")

    # reset-db
    rst = sub.add_parser("reset-db", help="清空书籍和关联（默认保留目的地）")
    rst.add_argument("--confirm", action="store_true", help="确认清空")
    rst.add_argument("--all", action="store_true", help="同时清空目的地")

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config = load_config(args.config)
    config.ensure_dirs()
    setup_logging(config.log_path, verbose=args.verbose)

    try:
        asyncio.run(_dispatch(args, config))
    except KeyboardInterrupt:
        console.print("\n[yellow]已中断[/yellow]")
        sys.exit(130)
    except Exception as e:
        logger.exception("致命错误")
        console.print(f"[red]错误: {e}[/red]")
        sys.exit(1)


async def _dispatch(args: argparse.Namespace, config: Config) -> None:
    """命令分发"""
    match args.command:
        case "run" | "once":
            await _cmd_pipeline(args, config)
        case "add-user":
            await _cmd_add_user(args, config)
        case "update-user":
            await _cmd_update_user(args, config)
        case "list-users":
            await _cmd_list_users(config)
        case "status":
            await _cmd_status(config)
        case "retry":
            await _cmd_retry(config)
        case "reset-limits":
            await _cmd_reset_limits(config)
        case "reset-db":
            await _cmd_reset_db(args, config)
        case _:
            console.print(f"[red]未知命令: {args.command}[/red]")


def _log_settings(config: Config) -> None:
    key = config.api_key
    logger.info("数据目录: %s", config.data_path)
    logger.info("反爬代理: %s", config.solver_url)
    logger.info("镜像: %s", ", ".join(config.mirror_domains))
    logger.info("API 密钥: %s", f"***{key[-4:]}" if key else "未设置")
    logger.info(
        "重试上限 %d 次, 冷却 %dms, 每日上限 %d（每个目的地 %d）",
        config.max_attempts, config.queue_cooldown_ms,
        config.max_downloads_per_day, config.max_downloads_per_destination_per_day,
    )
    logger.info(
        "邮件: %s",
        f"{config.smtp_host}:{config.smtp_port} (from: {config.smtp_from})"
        if config.smtp_from else "未配置",
    )
    if not key:
        logger.warning("未设置 API 密钥，只能得到详情页地址，下载大概率失败")


async def _cmd_pipeline(args: argparse.Namespace, config: Config) -> None:
    """运行流水线"""
    if args.no_headless:
        config.headless = False
    if args.browser:
        config.browser_executable = args.browser

    _log_settings(config)

    async with StateDB(config.db_path) as state, SolverClient(
        config.solver_url, config.solver_timeout
    ) as solver:
        driver = create_driver(config, state, solver)
        try:
            if args.command == "once":
                await driver.run_once("manual")
                return

            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
            await driver.serve(solver=solver, stop=stop)
        finally:
            await driver.aclose()


async def _cmd_add_user(args: argparse.Namespace, config: Config) -> None:
    async with StateDB(config.db_path) as state:
        try:
            dest = await state.add_destination(args.name, args.feed_key, args.path, args.email)
        except sqlite3.IntegrityError:
            console.print(f"[red]书单 ID 已存在: {args.feed_key}[/red]")
            return
    console.print(f"[green]已添加目的地 #{dest.id}: {dest.name} → {dest.download_path}[/green]")


async def _cmd_update_user(args: argparse.Namespace, config: Config) -> None:
    fields = {}
    if args.name:
        fields["name"] = args.name
    if args.path:
        fields["download_path"] = args.path
    if args.email:
        fields["email"] = args.email
    if args.clear_email:
        fields["email"] = None
    if not fields:
        console.print("[yellow]没有需要修改的字段[/yellow]")
        return

    async with StateDB(config.db_path) as state:
        updated = await state.update_destination(args.feed_key, **fields)
    if updated:
        console.print(f"[green]已更新目的地: {args.feed_key}[/green]")
    else:
        console.print(f"[red]未找到目的地: {args.feed_key}[/red]")


async def _cmd_list_users(config: Config) -> None:
    async with StateDB(config.db_path) as state:
        destinations = await state.list_destinations()
        counts = {
            d.id: await state.count_destination_downloads_today(d.id) for d in destinations
        }

    if not destinations:
        console.print("[yellow]暂无目的地，请使用 add-user 添加[/yellow]")
        return

    table = Table(title=f"目的地 (共 {len(destinations)} 个)", show_header=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("名称", style="cyan")
    table.add_column("书单 ID", style="green")
    table.add_column("下载目录", style="yellow")
    table.add_column("邮箱", style="blue")
    table.add_column("今日", justify="right")
    for d in destinations:
        table.add_row(
            str(d.id), d.name, d.feed_key, d.download_path, d.email or "-",
            f"{counts[d.id]}/{config.max_downloads_per_destination_per_day}",
        )
    console.print(table)


async def _cmd_status(config: Config) -> None:
    """查看队列统计"""
    async with StateDB(config.db_path) as state:
        stats = await state.stats()
        today = await state.count_downloads_today()
    if not stats:
        console.print("[yellow]暂无书籍记录[/yellow]")
        return
    print_stats_table(stats, today, config.max_downloads_per_day)


async def _cmd_retry(config: Config) -> None:
    """重置失败项"""
    async with StateDB(config.db_path) as state:
        count = await state.reset_failed()
    if count:
        console.print(f"[green]已重置 {count} 本书为待下载状态[/green]")
    else:
        console.print("[green]没有失败的书籍[/green]")


async def _cmd_reset_limits(config: Config) -> None:
    async with StateDB(config.db_path) as state:
        count = await state.reset_limits()
    console.print(f"[green]已将 {count} 条今日下载记录挪到昨天，限额已清空[/green]")


async def _cmd_reset_db(args: argparse.Namespace, config: Config) -> None:
    if not (args.confirm or args.all):
        console.print("[yellow]将删除所有书籍、关联和下载记录（默认保留目的地）[/yellow]")
        console.print("  book-sync reset-db --confirm   只清空书籍")
        console.print("  book-sync reset-db --all       同时清空目的地")
        return

    async with StateDB(config.db_path) as state:
        books, destinations = await state.reset(include_destinations=args.all)
    console.print(f"[green]已删除 {books} 本书及全部关联[/green]")
    if args.all:
        console.print(f"[green]已删除 {destinations} 个目的地[/green]")
    else:
        console.print(f"保留 {destinations} 个目的地，下一轮会重新发现书单中的书")
