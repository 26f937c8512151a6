"""
Unit tests for engine/controller.py

Tests cover:
- compute_targets split and rounding
- fold_batch: attempted vs succeeded, thread records only for seeding kinds
- End-to-end campaign against a fake send function (5/3/2 split)
- Empty thread graph: reply/forward dispatch nothing, overflow tops up
- Resume after a crash mid-stage
- Idempotent completion, stall guard, one-time setup steps, credential pre-flight
- Size target unmet: the run stops without reaching done
"""

import asyncio
import os
import random
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.content_pool import ContentPool
from engine.controller import CampaignController, compute_targets, fold_batch, make_credential_preflight
from engine.dispatcher import Dispatcher
from engine.errors import CampaignExhausted, CampaignStalled
from engine.identities import IdentityDirectory
from engine.models import Identity, MessageKind, SendOutcome, SendRequest
from engine.size_estimator import SizeEstimator
from engine.state_store import CampaignState, Phase
from engine.thread_graph import JsonlThreadBackend, ThreadGraph
from engine.work_generator import WorkGenerator


def run_async(coro):
    """Helper to run async functions in tests"""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FixedEstimator(SizeEstimator):
    """Every message counts as 100 bytes, so byte targets map to send counts."""

    def estimate_request(self, request):
        return 100


class MemoryStore:
    def __init__(self, state=None):
        self.state = state
        self.saves = 0

    def load(self):
        return self.state

    def save(self, state):
        self.state = state
        self.saves += 1


class CrashAfterThirdNewBatch(MemoryStore):
    def save(self, state):
        super().save(state)
        if state.batch_count(MessageKind.NEW) == 3:
            raise RuntimeError("simulated crash")


class FakeSender:
    def __init__(self, fail=lambda request: False):
        self.sent = []
        self.fail = fail

    async def send(self, request):
        self.sent.append(request)
        if self.fail(request):
            return SendOutcome.failed("550 rejected")
        return SendOutcome.ok(f"<{len(self.sent)}@test.com>")


def _identities(n=6):
    return [Identity(i, f"user{i}@test.com", f"User {i}", f"pw{i}") for i in range(n)]


def _controller(store, sender, graph=None, target_bytes=1000, chunk_size=2, identities=None, **kwargs):
    generator = WorkGenerator(
        IdentityDirectory(identities or _identities()),
        ContentPool(),
        chunk_size=chunk_size,
        rng=random.Random(2024),
    )
    return CampaignController(
        store,
        graph if graph is not None else ThreadGraph(),
        generator,
        Dispatcher(sender.send, timeout=5),
        estimator=FixedEstimator(),
        campaign_id="test",
        target_bytes=target_bytes,
        average_message_bytes=100,
        concurrency={kind: 2 for kind in MessageKind},
        send_alerts=False,
        **kwargs,
    )


def _count(sender, kind):
    return sum(1 for r in sender.sent if r.kind == kind)


class TestComputeTargets(unittest.TestCase):

    def test_ten_sends(self):
        self.assertEqual(compute_targets(1000, 100), {"new": 5, "reply": 3, "forward": 2})

    def test_each_kind_within_one_of_ratio(self):
        ratios = {MessageKind.NEW: 0.5, MessageKind.REPLY: 0.3, MessageKind.FORWARD: 0.2}
        targets = compute_targets(1234, 10, ratios)
        total = 124
        for kind, ratio in ratios.items():
            self.assertLess(abs(targets[kind.value] - total * ratio), 1)


class TestFoldBatch(unittest.TestCase):

    def setUp(self):
        ids = _identities(3)
        self.requests = [
            SendRequest(MessageKind.NEW, ids[0], (ids[1], ids[2]), f"s{i}", "body") for i in range(5)
        ]
        self.outcomes = [
            SendOutcome.ok("<a>"),
            SendOutcome.failed("timeout"),
            SendOutcome.ok("<b>"),
            SendOutcome.failed("550"),
            SendOutcome.ok("<c>"),
        ]
        self.state = CampaignState.fresh("t", {"new": 5, "reply": 3, "forward": 2}, 1000)

    def test_partial_failure(self):
        state, records = fold_batch(self.state, MessageKind.NEW, self.requests, self.outcomes, FixedEstimator())
        self.assertEqual(state.attempted(MessageKind.NEW), 5)
        self.assertEqual(state.succeeded(MessageKind.NEW), 3)
        self.assertEqual(state.estimated_bytes, 300)
        self.assertEqual(state.last_error, "550")
        self.assertEqual([r.message_id for r in records], ["<a>", "<b>", "<c>"])
        self.assertTrue(all(r.recipient == "user1@test.com" for r in records))

    def test_forwards_do_not_seed_graph(self):
        _, records = fold_batch(self.state, MessageKind.FORWARD, self.requests, self.outcomes, FixedEstimator())
        self.assertEqual(records, [])

    def test_length_mismatch(self):
        with self.assertRaises(ValueError):
            fold_batch(self.state, MessageKind.NEW, self.requests, self.outcomes[:2], FixedEstimator())


class TestCampaignRun(unittest.TestCase):

    def test_ten_send_campaign(self):
        store, sender = MemoryStore(), FakeSender()
        controller = _controller(store, sender)

        state = run_async(controller.run())

        self.assertEqual(state.phase, Phase.DONE)
        self.assertEqual(_count(sender, MessageKind.NEW), 5)
        self.assertEqual(_count(sender, MessageKind.REPLY), 3)
        self.assertEqual(_count(sender, MessageKind.FORWARD), 2)
        self.assertEqual(_count(sender, MessageKind.OVERFLOW), 0)
        self.assertEqual(state.estimated_bytes, 1000)
        self.assertEqual(store.state, state)

        graph_ids = {r.message_id for r in controller.graph._records}
        for request in sender.sent:
            if request.kind in (MessageKind.REPLY, MessageKind.FORWARD):
                self.assertIn(request.origin_id, graph_ids)

        summary = controller.summary(tz_name="UTC")
        self.assertEqual(summary["kinds"]["reply"], {"target": 3, "attempted": 3, "succeeded": 3})
        self.assertTrue(summary["started_at"].endswith("UTC"))

    def test_empty_graph_skips_reply_and_forward(self):
        fresh = CampaignState.fresh("test", {"new": 5, "reply": 3, "forward": 2}, 1000)
        store, sender = MemoryStore(fresh.with_phase(Phase.REPLY)), FakeSender()

        state = run_async(_controller(store, sender).run())

        self.assertEqual(state.attempted(MessageKind.REPLY), 0)
        self.assertEqual(state.attempted(MessageKind.FORWARD), 0)
        self.assertEqual(state.succeeded(MessageKind.OVERFLOW), 10)
        self.assertEqual(state.phase, Phase.DONE)
        self.assertTrue(all(r.kind == MessageKind.OVERFLOW for r in sender.sent))

    def test_failed_sends_are_made_up(self):
        sender = FakeSender(fail=lambda request: len(sender.sent) % 4 == 0)
        state = run_async(_controller(MemoryStore(), sender).run())
        self.assertEqual(state.succeeded(MessageKind.NEW), 5)
        self.assertGreater(state.attempted(MessageKind.NEW) + state.attempted(MessageKind.REPLY)
                           + state.attempted(MessageKind.FORWARD), 10)
        self.assertEqual(state.phase, Phase.DONE)

    def test_resume_after_crash(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "threads.jsonl")
            crashing = CrashAfterThirdNewBatch()
            first = FakeSender()
            controller = _controller(
                crashing, first, graph=ThreadGraph.open(JsonlThreadBackend(path)),
                target_bytes=10000, chunk_size=5, thread_flush_every=1,
            )
            with self.assertRaises(RuntimeError):
                run_async(controller.run())
            self.assertEqual(len(first.sent), 15)

            store = MemoryStore(crashing.state)
            second = FakeSender()
            graph = ThreadGraph.open(JsonlThreadBackend(path))
            self.assertEqual(len(graph), 15)
            resumed = _controller(store, second, graph=graph, target_bytes=10000, chunk_size=5, thread_flush_every=1)
            state = run_async(resumed.run())

            self.assertEqual(_count(second, MessageKind.NEW), 35)
            self.assertEqual(state.batch_count(MessageKind.NEW), 10)
            self.assertEqual(state.succeeded(MessageKind.NEW), 50)
            self.assertEqual(state.phase, Phase.DONE)

    def test_done_campaign_is_idempotent(self):
        store, sender = MemoryStore(), FakeSender()
        run_async(_controller(store, sender).run())
        sent_before, saves_before = len(sender.sent), store.saves

        again = FakeSender()
        state = run_async(_controller(store, again).run())

        self.assertEqual(state.phase, Phase.DONE)
        self.assertEqual(again.sent, [])
        self.assertEqual(store.saves, saves_before)
        self.assertEqual(len(sender.sent), sent_before)

    def test_stall_guard(self):
        store, sender = MemoryStore(), FakeSender(fail=lambda request: True)
        controller = _controller(store, sender, max_empty_batches=3)

        with self.assertRaises(CampaignStalled) as ctx:
            run_async(controller.run())

        self.assertEqual(ctx.exception.empty_batches, 3)
        self.assertEqual(ctx.exception.last_error, "550 rejected")
        self.assertEqual(store.state.phase, Phase.NEW)
        self.assertEqual(store.state.attempted(MessageKind.NEW), 6)
        self.assertEqual(len(sender.sent), 6)

    def test_overflow_without_work_is_not_done(self):
        fresh = CampaignState.fresh("test", {"new": 5, "reply": 3, "forward": 2}, 1000)
        store, sender = MemoryStore(fresh.with_phase(Phase.OVERFLOW)), FakeSender()
        controller = _controller(store, sender)
        controller.generator.generate = lambda kind, remaining, graph, send_index=0: []

        with self.assertRaises(CampaignExhausted) as ctx:
            run_async(controller.run())

        self.assertEqual(ctx.exception.phase, Phase.OVERFLOW)
        self.assertEqual(ctx.exception.estimated_bytes, 0)
        self.assertEqual(ctx.exception.target_bytes, 1000)
        self.assertEqual(store.state.phase, Phase.OVERFLOW)
        self.assertEqual(sender.sent, [])


class TestSetupSteps(unittest.TestCase):

    def test_step_runs_once(self):
        calls = []

        async def warm_up(state):
            calls.append(state.phase)
            return state

        store = MemoryStore()
        run_async(_controller(store, FakeSender(), setup_steps={"warm_up": warm_up}).run())
        self.assertTrue(store.state.setup_flags["warm_up"])

        store.state = store.state.with_phase(Phase.FORWARD, force=True)
        run_async(_controller(store, FakeSender(), setup_steps={"warm_up": warm_up}).run())

        self.assertEqual(len(calls), 1)
        self.assertEqual(store.state.phase, Phase.DONE)

    def test_credential_preflight_excludes_failures(self):
        identities = _identities(5)
        checked = []

        async def check_login(identity):
            checked.append(identity.address)
            if identity.address == "user3@test.com":
                raise ConnectionError("535 auth failed")
            return True

        preflight = make_credential_preflight(
            identities, check_login, concurrency=2, attempts=3, backoff_seconds=0
        )
        store, sender = MemoryStore(), FakeSender()
        controller = _controller(store, sender, identities=identities, setup_steps={"credentials": preflight})

        state = run_async(controller.run())

        self.assertEqual(state.excluded_identities, ["user3@test.com"])
        self.assertEqual(checked.count("user3@test.com"), 3)
        self.assertEqual(state.phase, Phase.DONE)
        for request in sender.sent:
            self.assertNotEqual(request.sender.address, "user3@test.com")
            self.assertNotIn("user3@test.com", request.recipients)

    def test_preflight_excluding_everyone_is_not_done(self):
        identities = _identities(4)

        async def refuse_login(identity):
            raise ConnectionError("535 auth failed")

        async def accept_login(identity):
            return True

        store, sender = MemoryStore(), FakeSender()
        preflight = make_credential_preflight(identities, refuse_login, concurrency=2, attempts=1, backoff_seconds=0)
        controller = _controller(store, sender, identities=identities, setup_steps={"credentials": preflight})

        with self.assertRaises(CampaignExhausted) as ctx:
            run_async(controller.run())

        self.assertIn("0 usable identities", ctx.exception.reason)
        self.assertNotEqual(store.state.phase, Phase.DONE)
        self.assertEqual(store.state.setup_flags, {})
        self.assertEqual(store.state.excluded_identities, [])
        self.assertEqual(sender.sent, [])

        # Logins work again: the next run repeats the pre-flight and completes
        preflight = make_credential_preflight(identities, accept_login, concurrency=2, attempts=1, backoff_seconds=0)
        state = run_async(_controller(store, sender, identities=identities, setup_steps={"credentials": preflight}).run())

        self.assertEqual(state.phase, Phase.DONE)
        self.assertTrue(state.setup_flags["credentials"])
        self.assertGreaterEqual(state.estimated_bytes, state.target_bytes)


if __name__ == "__main__":
    unittest.main()
