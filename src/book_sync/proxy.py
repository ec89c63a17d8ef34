"""反爬代理客户端（FlareSolverr 协议）

代理用真实浏览器渲染目标页面并通过挑战，返回渲染后的 HTML。
请求格式：POST {cmd: "request.get", url, maxTimeout}
响应格式：{status: "ok", message, solution: {url, status, response}}
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import httpx

from .errors import SolverError

logger = logging.getLogger(__name__)

# 在代理自身超时之外留出的余量（秒）
_HTTP_GRACE = 30


@dataclass
class SolvedPage:
    """代理返回的渲染结果"""
    url: str
    html: str


class SolverClient:
    """反爬代理的异步客户端"""

    def __init__(
        self,
        endpoint: str,
        max_timeout: int = 120,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.max_timeout = max_timeout
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(max_timeout + _HTTP_GRACE),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> SolverClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    @property
    def health_url(self) -> str:
        base = self.endpoint.rstrip("/")
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        return base + "/health"

    async def get(self, url: str) -> SolvedPage:
        """通过代理获取页面

        Raises:
            SolverError: 网络错误、HTTP 非 200、或求解状态非 ok
        """
        start = time.monotonic()
        try:
            resp = await self._client.post(
                self.endpoint,
                json={
                    "cmd": "request.get",
                    "url": url,
                    "maxTimeout": self.max_timeout * 1000,
                },
            )
        except httpx.HTTPError as e:
            raise SolverError(f"代理请求失败: {e!r}") from e

        elapsed = time.monotonic() - start

        if resp.status_code != 200:
            raise SolverError(
                f"代理返回 HTTP {resp.status_code} ({elapsed:.1f}s): {resp.text[:500]}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise SolverError(f"代理返回非 JSON 内容 ({elapsed:.1f}s)") from e

        if data.get("status") != "ok":
            raise SolverError(
                f'代理求解状态 "{data.get("status")}" ({elapsed:.1f}s): '
                f'{data.get("message") or "none"}'
            )

        solution = data.get("solution") or {}
        html = solution.get("response") or ""
        logger.debug("代理求解成功 (%.1fs, HTML %d 字符)", elapsed, len(html))
        return SolvedPage(url=solution.get("url") or url, html=html)

    async def wait_until_ready(self, retries: int = 30, interval: float = 5.0) -> bool:
        """启动时等待代理就绪；超过重试次数后放弃等待（不抛异常）"""
        logger.info("等待反爬代理就绪: %s", self.endpoint)
        for attempt in range(1, retries + 1):
            try:
                resp = await self._client.get(self.health_url, timeout=5)
                logger.info("反爬代理已就绪 (第 %d 次, HTTP %d)", attempt, resp.status_code)
                return True
            except httpx.HTTPError as e:
                logger.info("反爬代理尚未就绪 (%d/%d): %s", attempt, retries, e)
                if attempt < retries:
                    await asyncio.sleep(interval)

        logger.warning("反爬代理在 %d 次尝试后仍未就绪，继续运行", retries)
        return False
