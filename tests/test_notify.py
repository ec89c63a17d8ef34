"""邮件通知测试"""

from __future__ import annotations

import smtplib

import pytest

from book_sync.models import Book, CycleReport
from book_sync.notify import Notifier, build_email_html, build_subject

from conftest import add_book


def make_book(book_id: int, title: str, author: str | None = None) -> Book:
    return Book(id=book_id, feed_book_id=str(book_id), title=title, author=author)


def test_subject_singular_and_plural():
    assert build_subject([make_book(1, "Dune")]) == '📚 "Dune" is ready to read'
    assert build_subject([make_book(1, "Dune"), make_book(2, "Emma")]) == (
        "📚 2 new books are ready to read"
    )


def test_html_is_escaped():
    body = build_email_html("<Alice>", [make_book(1, "Q&A", None)])
    assert "Hi &lt;Alice&gt;" in body
    assert "Q&amp;A" in body
    assert "Unknown Author" in body


async def report_for(state, email: str | None):
    dest = await state.add_destination("Alice", "feed-a", "/books/alice", email)
    book_id = await add_book(state, "1", "Dune", "Frank Herbert")
    await state.link(dest.id, book_id)
    report = CycleReport(succeeded=1)
    report.add_delivery(dest, await state.get_book(book_id))
    return dest, book_id, report


async def is_notified(state, book_id: int) -> bool:
    cursor = await state.db.execute(
        "SELECT is_notified FROM assignments WHERE book_id = ?", (book_id,)
    )
    return bool((await cursor.fetchone())["is_notified"])


@pytest.mark.asyncio
async def test_notify_sends_and_marks(config, state):
    config.smtp_from = "books@example.org"
    _, book_id, report = await report_for(state, "alice@example.org")
    notifier = Notifier(config, state)
    sent = []
    notifier._send = sent.append

    assert await notifier.notify(report) == 1
    assert sent[0]["To"] == "alice@example.org"
    assert sent[0]["Subject"] == '📚 "Dune" is ready to read'
    assert await is_notified(state, book_id)


@pytest.mark.asyncio
async def test_notify_skips_without_email(config, state):
    config.smtp_from = "books@example.org"
    _, book_id, report = await report_for(state, None)

    assert await Notifier(config, state).notify(report) == 0
    assert not await is_notified(state, book_id)


@pytest.mark.asyncio
async def test_notify_skips_without_sender(config, state):
    _, book_id, report = await report_for(state, "alice@example.org")
    assert await Notifier(config, state).notify(report) == 0


@pytest.mark.asyncio
async def test_smtp_failure_is_logged_not_raised(config, state):
    config.smtp_from = "books@example.org"
    _, book_id, report = await report_for(state, "alice@example.org")
    notifier = Notifier(config, state)

    def refuse(message):
        raise smtplib.SMTPServerDisconnected("gone")

    notifier._send = refuse
    assert await notifier.notify(report) == 0
    assert not await is_notified(state, book_id)


@pytest.mark.asyncio
async def test_empty_report(config, state):
    assert await Notifier(config, state).notify(CycleReport()) == 0
