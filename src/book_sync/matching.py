"""书名/作者模糊匹配

纯函数，无 I/O。规则：
- 书名：归一化后按词集合计算重合度（较小集合中出现在较大集合里的比例），≥ 70% 通过
- 作者：若有期望作者，其归一化后长度 > 2 的任一词须出现在候选作者中
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

TITLE_THRESHOLD = 0.70

_PARENTHETICAL = re.compile(r"\(.*?\)")
_NOVEL_SUFFIX = re.compile(r":\s*a novel$", re.IGNORECASE)
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize(text: str | None) -> str:
    """小写、去括号注释（如系列信息）、去 ": A Novel"、去标点、合并空白"""
    if not text:
        return ""
    text = text.lower()
    text = _PARENTHETICAL.sub("", text)
    text = _NOVEL_SUFFIX.sub("", text.strip())
    text = _PUNCTUATION.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def _words(text: str | None) -> set[str]:
    return set(normalize(text).split())


def title_score(expected: str | None, candidate: str | None) -> float:
    """词集合重合度，取值 [0, 1]；任一侧为空返回 0"""
    a, b = _words(expected), _words(candidate)
    if not a or not b:
        return 0.0
    smaller, larger = (a, b) if len(a) <= len(b) else (b, a)
    return len(smaller & larger) / len(smaller)


def is_good_match(
    expected_title: str | None,
    expected_author: str | None,
    candidate_title: str | None,
    candidate_author: str | None,
) -> bool:
    """判断搜索结果是否与期望的书名/作者匹配"""
    score = title_score(expected_title, candidate_title)
    logger.debug(
        "书名重合度 %.0f%% (%r vs %r)",
        score * 100, normalize(expected_title), normalize(candidate_title),
    )
    if score < TITLE_THRESHOLD:
        return False

    if not expected_author:
        logger.debug("无期望作者，跳过作者校验")
        return True

    parts = [w for w in normalize(expected_author).split() if len(w) > 2]
    candidate = normalize(candidate_author)
    hit = any(part in candidate for part in parts)
    logger.debug("作者校验 %s vs %r -> %s", parts, candidate, "命中" if hit else "未命中")
    return hit


def build_query(title: str | None, author: str | None) -> str:
    """搜索词：去掉括号注释的书名 + 作者"""
    clean_title = _PARENTHETICAL.sub("", title or "").strip()
    return " ".join(p for p in (clean_title, (author or "").strip()) if p).strip()
