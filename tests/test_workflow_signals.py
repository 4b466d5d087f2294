"""
Verity — Signal / Query Plumbing Tests

Tests:
  - @workflow_definition binds kind, schema, signal handlers and the query
  - Signals mutate state synchronously and are logged in order
  - Unknown signals are rejected with the known names
  - Queries return a detached copy
  - wait_condition: immediate, woken by notify, timeout, scaled timers
  - Cancellation interrupts waits outside non-cancellable regions only
  - continue_as_new raises with the carried input
"""

import asyncio
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.activities import ActivityInvoker
from engine.errors import ValidationError
from engine.workflow import (
    ContinueAsNew,
    SignalRecord,
    Workflow,
    WorkflowCancelled,
    WorkflowContext,
    query,
    signal,
    workflow_definition,
)


@workflow_definition("counter")
class CounterWorkflow(Workflow):

    def __init__(self, ctx, input, activities=None):
        super().__init__(ctx, input, activities)
        self.count = 0
        self.items = []

    @signal("bump")
    def on_bump(self, payload):
        self.count += (payload or {}).get("by", 1)
        self.items.append(self.count)

    @signal()
    def reset(self, payload):
        self.count = 0

    @query
    def snapshot(self):
        return {"count": self.count, "items": self.items}

    async def run(self):
        await self.ctx.wait_condition(lambda: self.count >= 3)
        return self.count


def make_ctx(timer_scale=1.0):
    return WorkflowContext("wf-1", "user-1", "counter", ActivityInvoker(), run_id="run-1", timer_scale=timer_scale)


class TestDefinition(unittest.TestCase):

    def test_binding(self):
        self.assertEqual(CounterWorkflow.kind, "counter")
        self.assertEqual(CounterWorkflow.signal_names(), ["bump", "reset"])
        self.assertEqual(CounterWorkflow._query_name, "snapshot")

    def test_exactly_one_query(self):
        with self.assertRaises(TypeError):
            @workflow_definition("broken")
            class NoQuery(Workflow):
                pass

    def test_async_signal_handler_rejected(self):
        with self.assertRaises(TypeError):
            class Bad(Workflow):
                @signal("x")
                async def on_x(self, payload):
                    pass


class TestSignals(unittest.TestCase):

    def setUp(self):
        self.wf = CounterWorkflow(make_ctx(), {})

    def test_applied_in_order(self):
        for seq, by in enumerate((1, 2, 3), start=1):
            self.wf.handle_signal(SignalRecord("bump", {"by": by}, sequence=seq))
        self.assertEqual(self.wf.items, [1, 3, 6])
        self.assertEqual([r.sequence for r in self.wf.signal_log], [1, 2, 3])

    def test_unknown_signal(self):
        with self.assertRaises(ValidationError) as cm:
            self.wf.handle_signal(SignalRecord("nope", {}))
        self.assertEqual(cm.exception.context["known"], ["bump", "reset"])
        self.assertEqual(self.wf.signal_log, [])

    def test_query_is_detached(self):
        self.wf.handle_signal(SignalRecord("bump", {}))
        snap = self.wf.run_query()
        snap["items"].append(99)
        self.assertEqual(self.wf.items, [1])

    def test_record_to_dict(self):
        data = SignalRecord("bump", {"by": 2}, sequence=4).to_dict()
        self.assertEqual(data["payload"], {"by": 2})
        self.assertEqual(data["sequence"], 4)


class TestWaitCondition(unittest.IsolatedAsyncioTestCase):

    async def test_immediately_true(self):
        self.assertTrue(await make_ctx().wait_condition(lambda: True, timeout=0))

    async def test_woken_by_notify(self):
        ctx = make_ctx()
        state = {"ready": False}

        async def deliver():
            await asyncio.sleep(0)
            state["ready"] = True
            ctx.notify()

        asyncio.ensure_future(deliver())
        self.assertTrue(await ctx.wait_condition(lambda: state["ready"], timeout=5))

    async def test_timeout_returns_false(self):
        self.assertFalse(await make_ctx().wait_condition(lambda: False, timeout=0.01))

    async def test_timer_scale_compresses_waits(self):
        ctx = make_ctx(timer_scale=1e-8)
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        self.assertFalse(await ctx.wait_condition(lambda: False, timeout=30 * 86400))
        await ctx.sleep(86400)
        self.assertLess(loop.time() - t0, 1.0)

    async def test_workflow_runs_to_predicate(self):
        wf = CounterWorkflow(make_ctx(), {})
        task = asyncio.ensure_future(wf.run())
        for _ in range(3):
            wf.handle_signal(SignalRecord("bump", {}))
            wf.ctx.notify()
            await asyncio.sleep(0)
        self.assertEqual(await asyncio.wait_for(task, 1), 3)


class TestCancellation(unittest.IsolatedAsyncioTestCase):

    async def test_cancel_interrupts_wait(self):
        ctx = make_ctx()

        async def cancel_soon():
            await asyncio.sleep(0)
            ctx.request_cancel("user asked")

        asyncio.ensure_future(cancel_soon())
        self.assertFalse(await ctx.wait_condition(lambda: False))
        self.assertTrue(ctx.is_cancel_requested)
        with self.assertRaises(WorkflowCancelled) as cm:
            ctx.check_cancelled()
        self.assertEqual(cm.exception.reason, "user asked")

    async def test_first_reason_kept(self):
        ctx = make_ctx()
        ctx.request_cancel("first")
        ctx.request_cancel("second")
        self.assertEqual(ctx.cancel_reason, "first")

    async def test_non_cancellable_region(self):
        ctx = make_ctx()
        ctx.request_cancel()
        async with ctx.non_cancellable():
            ctx.check_cancelled()
            self.assertFalse(await ctx.wait_condition(lambda: False, timeout=0.01))
        with self.assertRaises(WorkflowCancelled):
            ctx.check_cancelled()

    async def test_sleep_ends_on_cancel(self):
        ctx = make_ctx()
        ctx.request_cancel()
        await asyncio.wait_for(ctx.sleep(3600), 1)


class TestContinueAsNew(unittest.TestCase):

    def test_carries_input(self):
        with self.assertRaises(ContinueAsNew) as cm:
            make_ctx().continue_as_new({"subject_id": "user-1", "cycle": 2})
        self.assertEqual(cm.exception.input["cycle"], 2)


if __name__ == "__main__":
    unittest.main()
