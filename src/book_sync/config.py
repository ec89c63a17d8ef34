"""配置管理模块"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

# 密钥可通过环境变量提供，避免写进配置文件
API_KEY_ENV = "BOOK_SYNC_API_KEY"


@dataclass
class Config:
    """应用配置，支持 YAML 文件加载和默认值"""

    # 路径配置
    project_root: Path = field(default_factory=lambda: Path.cwd())
    data_dir: str = "data"
    log_dir: str = "logs"
    db_name: str = "books.db"

    # 数据源（每个目的地一个 RSS 书单）
    feed_url_template: str = (
        "https://www.goodreads.com/review/list_rss/{feed_key}?shelf=to-read"
    )

    # 调度
    schedule_interval: int = 3600   # 定时触发间隔（秒）
    startup_delay: float = 5.0      # 启动后首轮延迟（秒）

    # 队列
    queue_cooldown_ms: int = 5000   # 两个队列条目之间的冷却时间（毫秒）
    max_attempts: int = 5

    # 每日限额
    max_downloads_per_day: int = 50
    max_downloads_per_destination_per_day: int = 10

    # 镜像站（按优先级排列）
    mirror_domains: list[str] = field(
        default_factory=lambda: ["annas-archive.li", "annas-archive.gl"]
    )
    search_formats: list[str] = field(default_factory=lambda: ["epub"])
    search_languages: list[str] = field(default_factory=lambda: ["en", "fr", "nl"])
    max_results_to_check: int = 5

    # 快速下载 API 密钥（同时用作浏览器登录凭据）
    api_key: str = ""

    # 反爬代理（FlareSolverr）
    solver_url: str = "http://flaresolverr:8191/v1"
    solver_timeout: int = 120           # 代理内部求解超时（秒）
    solver_ready_retries: int = 30
    solver_ready_interval: float = 5.0

    # 浏览器
    browser_executable: str = ""  # 为空则使用 Playwright 自带 Chromium
    headless: bool = True

    # 超时配置（秒）
    challenge_timeout: int = 60
    login_timeout: int = 30
    download_timeout: int = 300          # 直连下载
    browser_download_timeout: int = 300  # 浏览器下载整体超时
    progress_timeout: int = 90           # 浏览器下载无进展超时

    # 邮件通知
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_from: str = ""

    # 文件属主（NAS 场景），为空则不修改
    puid: int | None = None
    pgid: int | None = None

    @property
    def data_path(self) -> Path:
        p = Path(self.data_dir)
        return p if p.is_absolute() else self.project_root / p

    @property
    def log_path(self) -> Path:
        p = Path(self.log_dir)
        return p if p.is_absolute() else self.project_root / p

    @property
    def db_path(self) -> Path:
        return self.data_path / self.db_name

    @property
    def tmp_path(self) -> Path:
        """下载临时目录，所有下载先落在这里再分发"""
        return self.data_path / "tmp"

    @property
    def queue_cooldown(self) -> float:
        return self.queue_cooldown_ms / 1000

    def ensure_dirs(self) -> None:
        """创建必要的目录"""
        self.data_path.mkdir(parents=True, exist_ok=True)
        self.tmp_path.mkdir(parents=True, exist_ok=True)
        self.log_path.mkdir(parents=True, exist_ok=True)


def load_config(config_path: str | Path | None = None) -> Config:
    """加载配置文件，未指定则使用默认值"""
    if config_path is None:
        # 尝试从项目根目录加载
        candidates = ["config.yaml", "config.yml"]
        for name in candidates:
            p = Path.cwd() / name
            if p.exists():
                config_path = p
                break

    config = Config()
    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            # 过滤掉 Config 不接受的字段
            valid_fields = {f.name for f in Config.__dataclass_fields__.values()}
            filtered = {k: v for k, v in data.items() if k in valid_fields}
            filtered.pop("project_root", None)
            config = Config(project_root=path.parent, **filtered)

    if not config.api_key:
        config.api_key = os.environ.get(API_KEY_ENV, "")

    return config
