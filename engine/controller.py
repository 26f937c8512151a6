"""
Campaign Controller — the single control coroutine of the campaign.

    idle → new → reply → forward → overflow → done

Per batch: generate → dispatch (K in flight) → fold outcomes into a new
CampaignState → append thread records → checkpoint graph → persist state.
Batch N+1 is only generated once batch N is persisted, so a crash loses or
repeats at most one batch.

Only this coroutine mutates the thread graph and the state; dispatcher
workers never see either.
"""

import logging
import math
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Sequence, Tuple

import pytz

import config
from engine.alerts import alert_campaign_done, alert_campaign_exhausted, alert_campaign_stalled
from engine.dispatcher import Dispatcher, run_jobs
from engine.errors import CampaignExhausted, CampaignStalled
from engine.models import Identity, MessageKind, SendOutcome, SendRequest, ThreadRecord
from engine.size_estimator import SizeEstimator, required_sends
from engine.state_store import CampaignState, Phase
from engine.thread_graph import ThreadGraph
from engine.work_generator import WorkGenerator

logger = logging.getLogger("mailfill.controller")

SetupStep = Callable[[CampaignState], Awaitable[CampaignState]]

STAGE_PHASES = [
    (Phase.NEW, MessageKind.NEW),
    (Phase.REPLY, MessageKind.REPLY),
    (Phase.FORWARD, MessageKind.FORWARD),
    (Phase.OVERFLOW, MessageKind.OVERFLOW),
]

# Kinds whose successful sends can be replied to / forwarded later
THREAD_SEEDING_KINDS = (MessageKind.NEW, MessageKind.REPLY, MessageKind.OVERFLOW)


def compute_targets(
    target_bytes: int,
    average_message_bytes: int,
    ratios: Dict[MessageKind, float] = None,
) -> Dict[str, int]:
    """
    Split the planned send count across kinds, each ceil-rounded on its own
    (totals can exceed the nominal count by one per kind).
    """
    ratios = ratios or {
        MessageKind.NEW: config.NEW_RATIO,
        MessageKind.REPLY: config.REPLY_RATIO,
        MessageKind.FORWARD: config.FORWARD_RATIO,
    }
    total = required_sends(target_bytes, average_message_bytes)
    return {kind.value: math.ceil(total * ratio) for kind, ratio in ratios.items()}


def fold_batch(
    state: CampaignState,
    kind: MessageKind,
    requests: Sequence[SendRequest],
    outcomes: Sequence[SendOutcome],
    estimator: SizeEstimator,
) -> Tuple[CampaignState, List[ThreadRecord]]:
    """
    Pure transition: (state, batch results) → (next state, new thread records).

    Every request counts as attempted; only successes add to the size
    estimate and (for new/reply/overflow) to the thread graph.
    """
    if len(requests) != len(outcomes):
        raise ValueError(f"{len(requests)} requests but {len(outcomes)} outcomes")

    succeeded = 0
    added_bytes = 0
    records = []
    last_error = None
    for request, outcome in zip(requests, outcomes):
        if not outcome.success:
            last_error = outcome.error
            continue
        succeeded += 1
        added_bytes += estimator.estimate_request(request)
        if kind in THREAD_SEEDING_KINDS and request.to:
            first = request.to[0]
            records.append(
                ThreadRecord(
                    message_id=outcome.message_id,
                    subject=request.subject,
                    sender=request.sender.address,
                    sender_name=request.sender.display_name,
                    recipient=first.address,
                    recipient_name=first.display_name,
                )
            )

    next_state = state.with_batch(
        kind,
        attempted=len(requests),
        succeeded=succeeded,
        added_bytes=added_bytes,
        last_error=last_error,
    )
    return next_state, records


def make_credential_preflight(
    identities: Iterable[Identity],
    check_login: Callable[[Identity], Awaitable[bool]],
    concurrency: int = None,
    attempts: int = None,
    backoff_seconds: float = None,
) -> SetupStep:
    """
    One-time setup step: log in once with every identity (3 tries, fixed
    backoff) and exclude those that never succeed.
    """
    identities = list(identities)

    async def credential_preflight(state: CampaignState) -> CampaignState:
        logger.info(f"preflight_start: checking {len(identities)} credentials")
        results = await run_jobs(
            identities,
            check_login,
            concurrency=concurrency,
            attempts=attempts,
            backoff_seconds=backoff_seconds,
        )
        failed = [i.address for i, r in zip(identities, results) if not r.success]
        for identity, result in zip(identities, results):
            if not result.success:
                logger.warning(f"preflight_login_failed: {identity.address} ({result.error})")
        logger.info("preflight_done", extra={"checked": len(identities), "excluded": len(failed)})
        return state.with_excluded(failed)

    return credential_preflight


class CampaignController:
    """
    Orchestrates the campaign from its persisted state.

    Lifecycle:
        controller = CampaignController(store, graph, generator, dispatcher)
        state = await controller.run()   # returns once phase == done
    """

    def __init__(
        self,
        state_store,
        graph: ThreadGraph,
        generator: WorkGenerator,
        dispatcher: Dispatcher,
        estimator: SizeEstimator = None,
        campaign_id: str = None,
        target_bytes: int = None,
        average_message_bytes: int = None,
        concurrency: Dict[MessageKind, int] = None,
        thread_flush_every: int = None,
        max_empty_batches: int = None,
        setup_steps: Dict[str, SetupStep] = None,
        send_alerts: bool = True,
    ):
        self.state_store = state_store
        self.graph = graph
        self.generator = generator
        self.dispatcher = dispatcher
        self.estimator = estimator or SizeEstimator()
        self.campaign_id = campaign_id or config.CAMPAIGN_ID
        self.target_bytes = config.TARGET_BYTES if target_bytes is None else target_bytes
        self.average_message_bytes = average_message_bytes or config.AVERAGE_MESSAGE_BYTES
        self.concurrency = concurrency or {
            MessageKind.NEW: config.NEW_CONCURRENCY,
            MessageKind.REPLY: config.REPLY_CONCURRENCY,
            MessageKind.FORWARD: config.FORWARD_CONCURRENCY,
            MessageKind.OVERFLOW: config.OVERFLOW_CONCURRENCY,
        }
        self.thread_flush_every = max(1, thread_flush_every or config.THREAD_FLUSH_EVERY)
        self.max_empty_batches = max_empty_batches or config.MAX_EMPTY_BATCHES
        self.setup_steps = setup_steps or {}
        self.send_alerts = send_alerts

        self.state: CampaignState = self._load_or_create()
        self._batches_since_flush = 0

    # ── state handling ───────────────────────────────────────────────

    def _load_or_create(self) -> CampaignState:
        state = self.state_store.load()
        if state is not None:
            logger.info(
                "campaign_resumed",
                extra={
                    "campaign_id": state.campaign_id,
                    "phase": state.phase,
                    "estimated_bytes": state.estimated_bytes,
                },
            )
            return state

        targets = compute_targets(self.target_bytes, self.average_message_bytes)
        state = CampaignState.fresh(self.campaign_id, targets, self.target_bytes)
        logger.info(f"campaign_created: {self.campaign_id} targets={targets} bytes={self.target_bytes}")
        return state

    def _commit(self, state: CampaignState, flush_graph: bool = False):
        """Checkpoint the graph (when due) and persist the state, in that order."""
        if flush_graph or self._batches_since_flush >= self.thread_flush_every:
            self.graph.flush()
            self._batches_since_flush = 0
        self.state_store.save(state)
        self.state = state

    # ── main loop ────────────────────────────────────────────────────

    async def run(self) -> CampaignState:
        if self.state.is_done:
            logger.info("campaign_already_done: nothing to do")
            return self.state

        await self._run_setup_steps()
        if self.state.excluded_identities:
            self.generator.exclude(self.state.excluded_identities)
        if len(self.generator.directory) < 2:
            # Exclusions may come from a transient outage: repeat setup next run
            await self._halt_exhausted(
                f"{len(self.generator.directory)} usable identities left after setup",
                self.state.with_setup_reset(),
            )

        if self.state.phase == Phase.IDLE:
            self._commit(self.state.with_phase(Phase.NEW))

        for phase, kind in STAGE_PHASES:
            if Phase.rank(self.state.phase) > Phase.rank(phase):
                continue
            if kind == MessageKind.OVERFLOW and self.state.size_target_met:
                break
            if self.state.phase != phase:
                self._commit(self.state.with_phase(phase))
            await self._run_stage(kind)

        if not self.state.size_target_met:
            await self._halt_exhausted("no overflow work could be generated", self.state)

        self._commit(self.state.with_phase(Phase.DONE), flush_graph=True)
        summary = self.summary()
        logger.info("campaign_done", extra={"summary": summary})
        if self.send_alerts:
            await alert_campaign_done(summary)
        return self.state

    async def _halt_exhausted(self, reason: str, state: CampaignState):
        """Persist `state` with its phase unchanged and stop the run."""
        self._commit(state, flush_graph=True)
        logger.error(
            f"campaign_exhausted: {reason}",
            extra={"phase": state.phase, "estimated_bytes": state.estimated_bytes},
        )
        if self.send_alerts:
            await alert_campaign_exhausted(state.phase, reason, state.estimated_bytes, state.target_bytes)
        raise CampaignExhausted(state.phase, reason, state.estimated_bytes, state.target_bytes)

    async def _run_setup_steps(self):
        for name, step in self.setup_steps.items():
            if self.state.setup_flags.get(name):
                continue
            logger.info(f"setup_step_start: {name}")
            state = await step(self.state)
            self._commit(state.with_setup_flag(name))
            logger.info(f"setup_step_done: {name}")

    def _should_continue(self, kind: MessageKind) -> bool:
        state = self.state
        if state.size_target_met:
            return False
        if kind == MessageKind.OVERFLOW:
            return True
        if state.succeeded(kind) >= state.target(kind):
            return False
        if kind in (MessageKind.REPLY, MessageKind.FORWARD) and len(self.graph) == 0:
            return False
        return True

    def _send_index(self, kind: MessageKind) -> int:
        if kind == MessageKind.OVERFLOW:
            return self.state.attempted(MessageKind.NEW) + self.state.attempted(MessageKind.OVERFLOW)
        return self.state.attempted(kind)

    async def _run_stage(self, kind: MessageKind):
        logger.info(
            f"stage_start: {kind.value} target={self.state.target(kind)} "
            f"sent={self.state.succeeded(kind)} graph={len(self.graph)}"
        )
        while self._should_continue(kind):
            if kind == MessageKind.OVERFLOW:
                remaining = self.generator.chunk_size
            else:
                remaining = self.state.remaining(kind)

            batch = self.generator.generate(kind, remaining, self.graph, send_index=self._send_index(kind))
            if not batch:
                logger.info(f"stage_exhausted: {kind.value}, no work could be generated")
                break

            await self._run_batch(kind, batch)

        self.graph.flush()
        self._batches_since_flush = 0
        logger.info(
            f"stage_end: {kind.value} sent={self.state.succeeded(kind)} "
            f"attempted={self.state.attempted(kind)} estimated={self.state.estimated_bytes}"
        )

    async def _run_batch(self, kind: MessageKind, batch: List[SendRequest]):
        batch_no = self.state.batch_count(kind) + 1
        outcomes = await self.dispatcher.dispatch(batch, self.concurrency.get(kind, 1))

        next_state, records = fold_batch(self.state, kind, batch, outcomes, self.estimator)
        for record in records:
            self.graph.append(record)
        self._batches_since_flush += 1
        self._commit(next_state)

        ok = sum(1 for o in outcomes if o.success)
        failed = len(outcomes) - ok
        sample_error = next((o.error for o in outcomes if not o.success), None)
        logger.info(
            f"batch_folded: {kind.value} #{batch_no} ok={ok} fail={failed} "
            f"sent={next_state.succeeded(kind)}/{next_state.target(kind)} "
            f"estimated={next_state.estimated_bytes}/{next_state.target_bytes}",
            extra={"sample_error": sample_error} if sample_error else None,
        )

        if next_state.consecutive_empty_batches >= self.max_empty_batches:
            self.graph.flush()
            self._batches_since_flush = 0
            if self.send_alerts:
                await alert_campaign_stalled(kind.value, next_state.consecutive_empty_batches, next_state.last_error)
            raise CampaignStalled(self.state.phase, next_state.consecutive_empty_batches, next_state.last_error)

    # ── reporting ────────────────────────────────────────────────────

    def summary(self, tz_name: str = None) -> Dict:
        """Per-kind counts + size estimate: the output contract for reporting."""
        state = self.state
        kinds = {}
        for kind in MessageKind:
            kinds[kind.value] = {
                "target": state.target(kind),
                "attempted": state.attempted(kind),
                "succeeded": state.succeeded(kind),
            }

        started = None
        elapsed = None
        if state.started_at:
            tz = pytz.timezone(tz_name or config.TARGET_TIMEZONE)
            start_utc = pytz.UTC.localize(datetime.strptime(state.started_at.rstrip("Z"), "%Y-%m-%dT%H:%M:%S"))
            started = start_utc.astimezone(tz).strftime("%Y-%m-%d %H:%M:%S %Z")
            elapsed = str(datetime.now(pytz.UTC) - start_utc).split(".")[0]

        return {
            "campaign_id": state.campaign_id,
            "phase": state.phase,
            "kinds": kinds,
            "estimated_bytes": state.estimated_bytes,
            "target_bytes": state.target_bytes,
            "estimated_mb": state.estimated_bytes / (1024 * 1024),
            "target_mb": state.target_bytes / (1024 * 1024),
            "started_at": started,
            "elapsed": elapsed,
        }
