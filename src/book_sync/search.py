"""镜像站搜索与结果解析

按优先级逐个镜像通过反爬代理搜索，解析前 N 条结果并做模糊匹配，
返回第一条匹配结果的下载地址。镜像级错误只跳到下一个镜像，不中断搜索。
"""

from __future__ import annotations

import logging
import re
from typing import Protocol
from urllib.parse import quote, urlencode

from bs4 import BeautifulSoup, Tag

from .config import Config
from .errors import ResultsLayoutError, SolverError
from .matching import is_good_match
from .models import SearchCandidate
from .proxy import SolverClient
from .utils import mask_secret

logger = logging.getLogger(__name__)

_MD5_HREF = re.compile(r"/md5/([a-fA-F0-9]+)")


class ResultParser(Protocol):
    """搜索结果页解析器：页面结构变化时只需替换这一层"""

    def parse(self, html: str, limit: int) -> list[SearchCandidate]:
        ...


class AnnasResultParser:
    """Anna's Archive 搜索结果页解析

    结果位于 div.js-aarecord-list-outer 下，每个直接子 div 为一条结果：
    - 书名：a.js-vim-focus
    - 作者：包含 icon-[mdi--user-edit] 图标 span 的 <a>
    - MD5：第一个 href 以 /md5/ 开头的 <a>
    """

    def parse(self, html: str, limit: int) -> list[SearchCandidate]:
        soup = BeautifulSoup(html, "html.parser")
        container = soup.select_one("div.js-aarecord-list-outer")
        if container is None:
            raise ResultsLayoutError(
                "未找到结果容器 div.js-aarecord-list-outer，页面结构可能已变化"
            )

        rows = container.find_all("div", recursive=False)
        if rows:
            logger.info("找到 %d 条结果，检查前 %d 条", len(rows), min(len(rows), limit))

        candidates = []
        for index, row in enumerate(rows[:limit], 1):
            candidate = self._parse_row(row)
            if candidate is None:
                logger.warning("结果 #%d 没有可解析的 MD5 链接，跳过", index)
                continue
            candidates.append(candidate)
        return candidates

    @staticmethod
    def _parse_row(row: Tag) -> SearchCandidate | None:
        link = row.select_one('a[href^="/md5/"]')
        if link is None:
            return None
        match = _MD5_HREF.search(link.get("href", ""))
        if not match:
            return None

        title_el = row.select_one("a.js-vim-focus")
        title = title_el.get_text(strip=True) if title_el else ""

        author = ""
        icon = row.find("span", class_=lambda c: c and "icon-[mdi--user-edit]" in c)
        if icon is not None:
            author_el = icon.find_parent("a")
            if author_el is not None:
                author = author_el.get_text(strip=True)

        return SearchCandidate(title=title, author=author, md5=match.group(1))


class CatalogSearcher:
    """多镜像搜索客户端"""

    def __init__(
        self,
        config: Config,
        solver: SolverClient,
        parser: ResultParser | None = None,
    ) -> None:
        self.config = config
        self.solver = solver
        self.parser = parser or AnnasResultParser()

    def search_url(self, domain: str, query: str) -> str:
        params = [("index", ""), ("page", "1"), ("sort", "")]
        params += [("ext", ext) for ext in self.config.search_formats]
        params += [("lang", lang) for lang in self.config.search_languages]
        params += [("display", ""), ("q", query)]
        return f"https://{domain}/search?{urlencode(params, quote_via=quote)}"

    def reference_url(self, domain: str, md5: str) -> str:
        """有 API 密钥时返回快速下载地址，否则返回详情页"""
        if self.config.api_key:
            return f"https://{domain}/fast_download/{md5}/0/0?key={self.config.api_key}"
        return f"https://{domain}/md5/{md5}"

    async def search(
        self,
        query: str,
        expected_title: str | None,
        expected_author: str | None,
    ) -> str | None:
        """搜索并返回第一条匹配结果的下载地址，全部镜像未命中返回 None"""
        domains = self.config.mirror_domains
        for i, domain in enumerate(domains, 1):
            url = self.search_url(domain, query)
            logger.info("搜索镜像 %d/%d: %s", i, len(domains), domain)
            logger.debug("搜索地址: %s", url)

            try:
                page = await self.solver.get(url)
                candidates = self.parser.parse(page.html, self.config.max_results_to_check)
            except (SolverError, ResultsLayoutError) as e:
                logger.warning("镜像 %s 搜索失败: %s", domain, e)
                continue

            if not candidates:
                logger.info("镜像 %s 无结果: %r", domain, query)
                continue

            for candidate in candidates:
                logger.info(
                    '候选: "%s" by %s (md5: %s)',
                    candidate.title, candidate.author or "?", candidate.md5,
                )
                if is_good_match(
                    expected_title, expected_author, candidate.title, candidate.author
                ):
                    reference = self.reference_url(domain, candidate.md5)
                    logger.info(
                        "匹配成功: %s", mask_secret(reference, self.config.api_key)
                    )
                    return reference

            logger.info(
                '镜像 %s 前 %d 条结果均不匹配 "%s" by %s',
                domain, len(candidates), expected_title, expected_author or "?",
            )

        logger.info("已尝试全部 %d 个镜像，未找到该书", len(domains))
        return None
