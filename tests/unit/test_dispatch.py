"""Unit tests for the in-process dispatcher."""

import pytest
from services.commerce_service.dispatch import JOB_SEND_NOTIFICATION, LocalDispatcher


class _Recorder:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    async def __call__(self, ctx, *args):
        self.calls.append((ctx, args))
        if self.fail:
            raise RuntimeError("handler exploded")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_jobs_run_with_empty_ctx_and_dedupe():
    handler = _Recorder()
    dispatcher = LocalDispatcher({"task_echo": handler}, max_workers=2)

    assert await dispatcher.submit("task_echo", "a", 1, dedupe_key="echo:1")
    assert not await dispatcher.submit("task_echo", "a", 1, dedupe_key="echo:1")
    assert await dispatcher.submit("task_echo", "b", 2)
    await dispatcher.close()

    assert sorted(handler.calls, key=lambda call: call[1]) == [({}, ("a", 1)), ({}, ("b", 2))]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unknown_job_is_rejected():
    dispatcher = LocalDispatcher({})

    assert not await dispatcher.submit("task_missing")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_handler_failure_does_not_stop_the_pool():
    failing = _Recorder(fail=True)
    dispatcher = LocalDispatcher({"task_boom": failing}, max_workers=1)

    await dispatcher.submit("task_boom", 1)
    await dispatcher.submit("task_boom", 2)
    await dispatcher.close()

    assert len(failing.calls) == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_full_queue_drops_job():
    handler = _Recorder()
    dispatcher = LocalDispatcher({"task_echo": handler}, max_workers=1, queue_size=1)
    # workers only get to run once the event loop is yielded to
    assert await dispatcher.submit("task_echo", 1)
    assert not await dispatcher.submit("task_echo", 2)
    await dispatcher.close()

    assert handler.calls == [({}, (1,))]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_notify_uses_notification_job_and_prefixed_key():
    handler = _Recorder()
    dispatcher = LocalDispatcher({JOB_SEND_NOTIFICATION: handler})

    await dispatcher.notify("order_created", {"order_number": "ORD-1"}, dedupe_key="order_created:1")
    assert not await dispatcher.notify("order_created", {}, dedupe_key="order_created:1")
    await dispatcher.close()

    assert handler.calls == [({}, ("order_created", {"order_number": "ORD-1"}))]
