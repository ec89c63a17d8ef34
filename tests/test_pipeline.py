"""流水线驱动测试：单飞、异常隔离、常驻循环"""

from __future__ import annotations

import asyncio

import pytest

from book_sync.models import CycleReport
from book_sync.pipeline import PipelineDriver


class FakeFeed:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0
        self.closed = False

    async def sync(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return 0

    async def aclose(self):
        self.closed = True


class FakeQueue:
    def __init__(self, gate: asyncio.Event | None = None, on_run=None) -> None:
        self.gate = gate
        self.on_run = on_run
        self.calls = 0

    async def run(self):
        self.calls += 1
        if self.on_run is not None:
            self.on_run()
        if self.gate is not None:
            await self.gate.wait()
        return CycleReport(succeeded=1)


class FakeNotifier:
    def __init__(self) -> None:
        self.reports = []

    async def notify(self, report):
        self.reports.append(report)
        return 0


@pytest.mark.asyncio
async def test_run_once_runs_full_cycle(config):
    feed, queue, notifier = FakeFeed(), FakeQueue(), FakeNotifier()
    driver = PipelineDriver(config, feed, queue, notifier)

    assert await driver.run_once()
    assert feed.calls == 1
    assert queue.calls == 1
    assert notifier.reports[0].succeeded == 1
    assert not driver.running


@pytest.mark.asyncio
async def test_concurrent_trigger_ignored(config):
    gate = asyncio.Event()
    queue = FakeQueue(gate=gate)
    driver = PipelineDriver(config, FakeFeed(), queue, FakeNotifier())

    assert driver.try_start("schedule")
    assert driver.running
    assert not driver.try_start("manual")
    assert not await driver.run_once("manual")

    gate.set()
    await driver.wait()
    assert queue.calls == 1
    assert not driver.running


@pytest.mark.asyncio
async def test_cycle_exception_is_contained(config):
    notifier = FakeNotifier()
    driver = PipelineDriver(config, FakeFeed(error=RuntimeError("boom")), FakeQueue(), notifier)

    assert await driver.run_once()
    assert notifier.reports == []
    assert not driver.running

    # 下一次触发可以正常开始
    assert await driver.run_once()


@pytest.mark.asyncio
async def test_serve_runs_startup_cycle_until_stopped(config):
    config.startup_delay = 0
    config.schedule_interval = 3600
    stop = asyncio.Event()
    feed = FakeFeed()
    queue = FakeQueue(on_run=stop.set)
    driver = PipelineDriver(config, feed, queue, FakeNotifier())

    await asyncio.wait_for(driver.serve(stop=stop), timeout=5)

    assert queue.calls == 1
    assert not driver.running

    await driver.aclose()
    assert feed.closed


@pytest.mark.asyncio
async def test_serve_handles_later_triggers(config):
    config.startup_delay = 0
    stop = asyncio.Event()
    queue = FakeQueue()
    driver = PipelineDriver(config, FakeFeed(), queue, FakeNotifier())

    async def until(calls: int) -> None:
        while queue.calls < calls:
            await asyncio.sleep(0.01)
        await driver.wait()

    async def drive():
        await until(1)
        driver.trigger("manual")
        await until(2)
        stop.set()

    stopper = asyncio.create_task(drive())
    await asyncio.wait_for(driver.serve(stop=stop), timeout=5)
    await stopper

    assert queue.calls == 2
