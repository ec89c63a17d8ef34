"""异常定义"""

from __future__ import annotations


class BookSyncError(Exception):
    """所有业务异常的基类"""


class SolverError(BookSyncError):
    """反爬代理请求失败（HTTP 错误或求解状态非 ok）"""


class ResultsLayoutError(BookSyncError):
    """搜索结果容器缺失，页面结构可能已变化"""


class EmptyQueryError(BookSyncError):
    """书籍既无标题也无作者，无法搜索"""


class BookNotFoundError(BookSyncError):
    """所有镜像均未找到匹配结果"""


class DownloadError(BookSyncError):
    """下载失败"""


class DownloadTooSmallError(DownloadError):
    """文件过小，多半是错误页面"""

    def __init__(self, size: int, snippet: str) -> None:
        super().__init__(f"下载文件过小 ({size} 字节)，可能是错误页面: {snippet}")
        self.size = size
        self.snippet = snippet


class ChallengeError(DownloadError):
    """反爬挑战页未能在限定时间内通过"""


class LoginError(DownloadError):
    """登录失败"""


class DownloadStalledError(DownloadError):
    """浏览器下载长时间无进展"""


class DownloadTimeoutError(DownloadError):
    """浏览器下载整体超时"""
