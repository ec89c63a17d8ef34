"""下载完成邮件通知"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
from email.message import EmailMessage

from .config import Config
from .models import Book, CycleReport, Destination
from .state import StateDB

logger = logging.getLogger(__name__)

_BOOK_ROW = """
<tr>
  <td style="padding: 12px 16px; border-bottom: 1px solid #f0f0f0;">
    <strong style="color: #1a1a1a;">{title}</strong><br>
    <span style="color: #666; font-size: 14px;">{author}</span>
  </td>
</tr>"""

_BODY = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="margin: 0; padding: 32px 0; background-color: #f5f5f5; font-family: sans-serif;">
  <table width="560" align="center" cellpadding="0" cellspacing="0"
         style="background-color: #ffffff; border-radius: 12px;">
    <tr><td style="background-color: #2d3748; padding: 28px 32px; text-align: center;">
      <h1 style="color: #ffffff; margin: 0; font-size: 20px;">New books ready!</h1>
    </td></tr>
    <tr><td style="padding: 28px 32px 16px;">
      <p style="color: #333; font-size: 16px; margin: 0;">Hi {name},</p>
      <p style="color: #555; font-size: 15px; margin: 12px 0 0;">{summary}</p>
    </td></tr>
    <tr><td style="padding: 0 32px 24px;">
      <table width="100%" cellpadding="0" cellspacing="0"
             style="background-color: #fafafa; border-radius: 8px; border: 1px solid #eee;">
        {rows}
      </table>
    </td></tr>
    <tr><td style="padding: 16px 32px 28px; text-align: center;">
      <p style="color: #999; font-size: 13px; margin: 0;">Happy reading!</p>
    </td></tr>
  </table>
</body>
</html>"""


def build_subject(books: list[Book]) -> str:
    if len(books) == 1:
        return f'📚 "{books[0].title}" is ready to read'
    return f"📚 {len(books)} new books are ready to read"


def build_email_html(name: str, books: list[Book]) -> str:
    rows = "".join(
        _BOOK_ROW.format(
            title=html.escape(b.title or "Unknown Title"),
            author=html.escape(b.author or "Unknown Author"),
        )
        for b in books
    )
    if len(books) == 1:
        summary = "A new book was downloaded and is ready for you to read."
    else:
        summary = f"{len(books)} new books were downloaded and are ready for you to read."
    return _BODY.format(name=html.escape(name), summary=summary, rows=rows)


class Notifier:
    """每轮结束后给每个收到新书的目的地发一封汇总邮件"""

    def __init__(self, config: Config, state: StateDB) -> None:
        self.config = config
        self.state = state

    async def notify(self, report: CycleReport) -> int:
        """返回成功发送的邮件数"""
        if not report.delivered:
            return 0
        logger.info("向 %d 个目的地发送通知...", len(report.delivered))

        sent = 0
        for destination, books in report.delivered.values():
            if await self._notify_destination(destination, books):
                sent += 1
        return sent

    async def _notify_destination(self, destination: Destination, books: list[Book]) -> bool:
        if not destination.email or not books:
            return False
        if not self.config.smtp_from:
            logger.warning("未配置 smtp_from，跳过 %s 的邮件", destination.name)
            return False

        message = EmailMessage()
        message["From"] = self.config.smtp_from
        message["To"] = destination.email
        message["Subject"] = build_subject(books)
        message.set_content(
            "\n".join(f"- {b.title} ({b.author or 'Unknown Author'})" for b in books)
        )
        message.add_alternative(build_email_html(destination.name, books), subtype="html")

        try:
            await asyncio.to_thread(self._send, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("发送邮件给 %s (%s) 失败: %s", destination.name, destination.email, e)
            return False

        await self.state.mark_notified(destination.id, [b.id for b in books])
        logger.info(
            "已通知 %s (%s): %d 本书", destination.name, destination.email, len(books)
        )
        return True

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as smtp:
            smtp.send_message(message)
