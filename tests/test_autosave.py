import asyncio

from rootstree.services.autosave import AutoSaveScheduler, SchedulerState

DELAY = 0.01


class _FakeSaver:
    def __init__(self, fail_times=0, gated=False):
        self.started = []
        self.finished = []
        self.fail_times = fail_times
        self.gate = asyncio.Event() if gated else None
        self.running = 0
        self.max_running = 0

    async def __call__(self, snapshot):
        self.started.append(snapshot)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.fail_times:
                self.fail_times -= 1
                raise RuntimeError("backend down")
            self.finished.append(snapshot)
            return f"saved {snapshot}"
        finally:
            self.running -= 1


def test_debounce_coalesces_to_latest_snapshot():
    async def scenario():
        saver = _FakeSaver()
        saved = []
        scheduler = AutoSaveScheduler(saver, delay=DELAY, on_saved=lambda snap, result: saved.append(result))
        for snapshot in (1, 2, 3):
            scheduler.schedule(snapshot)
            await asyncio.sleep(0)
        assert scheduler.state is SchedulerState.PENDING
        await asyncio.sleep(DELAY * 5)
        return saver, saved, scheduler

    saver, saved, scheduler = asyncio.run(scenario())
    assert saver.started == [3]
    assert saved == ["saved 3"]
    assert scheduler.state is SchedulerState.IDLE
    assert scheduler.has_pending is False


def test_single_flight_defers_newest_snapshot():
    async def scenario():
        saver = _FakeSaver(gated=True)
        scheduler = AutoSaveScheduler(saver, delay=DELAY)
        scheduler.schedule("a")
        await asyncio.sleep(DELAY * 3)
        assert scheduler.state is SchedulerState.IN_FLIGHT
        scheduler.schedule("b")
        scheduler.schedule("c")
        await asyncio.sleep(DELAY * 3)
        assert saver.started == ["a"]
        saver.gate.set()
        await asyncio.sleep(DELAY * 3)
        await scheduler.wait_idle()
        return saver

    saver = asyncio.run(scenario())
    assert saver.started == ["a", "c"]
    assert saver.finished == ["a", "c"]
    assert saver.max_running == 1


def test_failure_keeps_snapshot_without_retry():
    async def scenario():
        saver = _FakeSaver(fail_times=1)
        errors = []
        scheduler = AutoSaveScheduler(saver, delay=DELAY, on_error=lambda exc, snap: errors.append((str(exc), snap)))
        scheduler.schedule("draft")
        await asyncio.sleep(DELAY * 5)
        state = (scheduler.state, scheduler.pending, list(saver.started))
        await scheduler.flush()
        return saver, errors, state, scheduler

    saver, errors, state, scheduler = asyncio.run(scenario())
    assert errors == [("backend down", "draft")]
    assert state == (SchedulerState.IDLE, "draft", ["draft"])
    assert saver.finished == ["draft"]
    assert scheduler.has_pending is False


def test_guard_refusal_keeps_snapshot():
    async def scenario():
        allowed = {"value": False}
        saver = _FakeSaver()
        scheduler = AutoSaveScheduler(saver, delay=DELAY, guard=lambda: allowed["value"])
        scheduler.schedule("x")
        await asyncio.sleep(DELAY * 5)
        refused = (list(saver.started), scheduler.pending)
        allowed["value"] = True
        scheduler.schedule("y")
        await asyncio.sleep(DELAY * 5)
        return saver, refused

    saver, refused = asyncio.run(scenario())
    assert refused == ([], "x")
    assert saver.started == ["y"]


def test_cancel_discards_in_flight_result():
    async def scenario():
        saver = _FakeSaver(gated=True)
        saved = []
        scheduler = AutoSaveScheduler(saver, delay=DELAY, on_saved=lambda snap, result: saved.append(snap))
        scheduler.schedule("old")
        await asyncio.sleep(DELAY * 3)
        scheduler.cancel()
        saver.gate.set()
        await scheduler.wait_idle()
        return saver, saved, scheduler

    saver, saved, scheduler = asyncio.run(scenario())
    assert saver.finished == ["old"]
    assert saved == []
    assert scheduler.has_pending is False


def test_discard_pending_returns_dropped_snapshot():
    async def scenario():
        saver = _FakeSaver()
        scheduler = AutoSaveScheduler(saver, delay=DELAY)
        scheduler.schedule("draft")
        dropped = scheduler.discard_pending()
        await asyncio.sleep(DELAY * 3)
        return saver, dropped, scheduler

    saver, dropped, scheduler = asyncio.run(scenario())
    assert dropped == "draft"
    assert saver.started == []
    assert scheduler.state is SchedulerState.IDLE
