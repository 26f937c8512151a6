"""
Work Generator — builds batches of SendRequests, one strategy per message kind.

    NEW       round-robin sender, 1-5 recipients, optional CC, weighted attachments
    REPLY     sampled thread record, recipient answers the original sender
    FORWARD   sampled thread record, recipient forwards to 1-3 new identities
    OVERFLOW  like NEW, but always carries 1-3 of the largest attachments

The strategy is chosen once per batch. Sampling uses an injectable
random.Random so tests can seed it; nothing relies on exact sequences.
"""

import logging
import random
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import config
from engine.content_pool import ContentPool
from engine.identities import IdentityDirectory
from engine.models import (
    AttachmentRef,
    AttachmentTier,
    Identity,
    MessageKind,
    SendRequest,
    ThreadRecord,
)
from engine.thread_graph import ThreadGraph

logger = logging.getLogger("mailfill.work_generator")

# Cumulative attachment policy: 40% none, 30% small, 20% medium, 10% burst
ATTACHMENT_POLICY = [
    (0.40, "none"),
    (0.70, "small"),
    (0.90, "medium"),
    (1.00, "burst"),
]

MAX_TO = 5
MAX_CC = 4
MAX_FORWARD_TO = 3
MAX_BURST = 3


def _strip_prefix(subject: str, prefix: str) -> str:
    if subject.lower().startswith(prefix.lower()):
        return subject[len(prefix):]
    return subject


def _quote(text: str, max_lines: int = 6) -> str:
    lines = [line for line in text.splitlines() if line.strip()][:max_lines]
    return "\n".join(f"> {line}" for line in lines)


class WorkGenerator:
    """
    Produces at most `chunk_size` requests per call.

    Usage:
        gen = WorkGenerator(directory, content)
        batch = gen.generate(MessageKind.NEW, remaining=120, graph=graph, send_index=40)
    """

    def __init__(
        self,
        directory: IdentityDirectory,
        content: ContentPool,
        chunk_size: int = None,
        rng: random.Random = None,
        inline_image_probability: float = None,
        cc_probability: float = None,
        max_draw_attempts: int = 20,
    ):
        self.directory = directory
        self.content = content
        self.chunk_size = chunk_size or config.CHUNK_SIZE
        self.rng = rng or random.Random()
        self.inline_image_probability = (
            config.INLINE_IMAGE_PROBABILITY if inline_image_probability is None else inline_image_probability
        )
        self.cc_probability = config.CC_PROBABILITY if cc_probability is None else cc_probability
        self.max_draw_attempts = max_draw_attempts

        self._strategies: Dict[MessageKind, Callable] = {
            MessageKind.NEW: self._make_new,
            MessageKind.REPLY: self._make_reply,
            MessageKind.FORWARD: self._make_forward,
            MessageKind.OVERFLOW: self._make_overflow,
        }

    def exclude(self, addresses: Iterable[str]):
        """Stop using these identities as senders or recipients."""
        before = len(self.directory)
        self.directory = self.directory.without(addresses)
        if len(self.directory) != before:
            logger.info(f"generator_identities_excluded: {before - len(self.directory)} dropped, {len(self.directory)} left")

    def generate(
        self,
        kind: MessageKind,
        remaining: int,
        graph: ThreadGraph,
        send_index: int = 0,
    ) -> List[SendRequest]:
        """
        Build up to min(chunk_size, remaining) requests of one kind.

        Returns fewer (possibly zero) when the resource runs out: an empty
        thread graph for REPLY/FORWARD, or no eligible sender after
        `max_draw_attempts` draws.
        """
        count = min(self.chunk_size, max(0, remaining))
        if count == 0:
            return []
        if len(self.directory) < 2:
            logger.warning("generator_no_identities", extra={"kind": kind.value})
            return []
        if kind in (MessageKind.REPLY, MessageKind.FORWARD) and len(graph) == 0:
            logger.info("generator_empty_thread_graph", extra={"kind": kind.value})
            return []

        make = self._strategies[kind]
        batch = []
        for offset in range(count):
            request = make(send_index + offset, graph)
            if request is None:
                logger.warning(
                    "generator_exhausted",
                    extra={"kind": kind.value, "requested": count, "built": len(batch)},
                )
                break
            batch.append(request)
        return batch

    # ── selection helpers ────────────────────────────────────────────

    def _others(self, *exclude: Identity) -> List[Identity]:
        skip = {i.address.lower() for i in exclude}
        return [i for i in self.directory.identities if i.address.lower() not in skip]

    def _pick_recipients(self, sender: Identity, max_to: int) -> Tuple[Identity, ...]:
        others = self._others(sender)
        k = self.rng.randint(1, min(max_to, len(others)))
        return tuple(self.rng.sample(others, k))

    def _pick_cc(self, sender: Identity, to: Tuple[Identity, ...]) -> Tuple[Identity, ...]:
        if self.rng.random() >= self.cc_probability:
            return ()
        pool = self._others(sender, *to)
        if not pool:
            return ()
        k = self.rng.randint(1, min(MAX_CC, len(pool)))
        return tuple(self.rng.sample(pool, k))

    def _pick_attachments(self) -> Tuple[AttachmentRef, ...]:
        roll = self.rng.random()
        choice = next(name for threshold, name in ATTACHMENT_POLICY if roll < threshold)
        if choice == "none":
            return ()
        if choice == "small":
            item = self.content.pick_attachment(AttachmentTier.SMALL, self.rng)
            return (item,) if item else ()
        if choice == "medium":
            item = self.content.pick_attachment(AttachmentTier.MEDIUM, self.rng)
            return (item,) if item else ()
        burst = []
        for _ in range(self.rng.randint(1, MAX_BURST)):
            item = self.content.pick_any(self.rng)
            if item:
                burst.append(item)
        return tuple(burst)

    def _pick_large_attachments(self) -> Tuple[AttachmentRef, ...]:
        largest = self.content.largest()
        if not largest:
            return ()
        k = self.rng.randint(1, MAX_BURST)
        return tuple(self.rng.choice(largest) for _ in range(k))

    def _pick_inline_image(self) -> Optional[AttachmentRef]:
        if self.rng.random() >= self.inline_image_probability:
            return None
        return self.content.pick_image(self.rng)

    def _draw_origin(
        self, graph: ThreadGraph, need_original_sender: bool = False
    ) -> Optional[Tuple[ThreadRecord, Identity]]:
        """Sample a thread record whose recipient can still send. Discard and redraw otherwise."""
        for _ in range(self.max_draw_attempts):
            record = graph.sample(self.rng)
            if record is None:
                return None
            responder = self.directory.get(record.recipient)
            if responder is None or not self.directory.can_send(responder.address):
                continue
            if need_original_sender and self.directory.get(record.sender) is None:
                continue
            return record, responder
        return None

    # ── strategies ───────────────────────────────────────────────────

    def _make_new(self, send_index: int, graph: ThreadGraph) -> SendRequest:
        identities = self.directory.identities
        sender = identities[send_index % len(identities)]
        to = self._pick_recipients(sender, MAX_TO)
        return SendRequest(
            kind=MessageKind.NEW,
            sender=sender,
            to=to,
            cc=self._pick_cc(sender, to),
            subject=self.content.pick_subject(self.rng),
            body=self.content.pick_body(self.rng),
            attachments=self._pick_attachments(),
            inline_image=self._pick_inline_image(),
        )

    def _make_overflow(self, send_index: int, graph: ThreadGraph) -> SendRequest:
        identities = self.directory.identities
        sender = identities[send_index % len(identities)]
        to = self._pick_recipients(sender, MAX_TO)
        return SendRequest(
            kind=MessageKind.OVERFLOW,
            sender=sender,
            to=to,
            subject=self.content.pick_subject(self.rng),
            body=self.content.pick_body(self.rng),
            attachments=self._pick_large_attachments(),
        )

    def _make_reply(self, send_index: int, graph: ThreadGraph) -> Optional[SendRequest]:
        drawn = self._draw_origin(graph, need_original_sender=True)
        if drawn is None:
            return None
        record, responder = drawn
        original_sender = self.directory.get(record.sender)

        excerpt = _quote(self.content.pick_body(self.rng))
        body = (
            f"{self.content.pick_body(self.rng)}\n\n"
            f"-----Original Message-----\n"
            f"From: {record.sender_name} <{record.sender}>\n"
            f"Subject: {record.subject}\n\n"
            f"{excerpt}"
        )
        return SendRequest(
            kind=MessageKind.REPLY,
            sender=responder,
            to=(original_sender,),
            subject="Re: " + _strip_prefix(record.subject, "Re: "),
            body=body,
            in_reply_to=record.message_id,
            references=record.message_id,
            origin_id=record.message_id,
        )

    def _make_forward(self, send_index: int, graph: ThreadGraph) -> Optional[SendRequest]:
        drawn = self._draw_origin(graph)
        if drawn is None:
            return None
        record, forwarder = drawn

        excerpt = _quote(self.content.pick_body(self.rng))
        body = (
            f"FYI, see below.\n\n"
            f"---------- Forwarded message ----------\n"
            f"From: {record.sender_name} <{record.sender}>\n"
            f"Subject: {record.subject}\n\n"
            f"{excerpt}"
        )
        # Forwards are not RFC-threaded: origin_id is bookkeeping only
        return SendRequest(
            kind=MessageKind.FORWARD,
            sender=forwarder,
            to=self._pick_recipients(forwarder, MAX_FORWARD_TO),
            subject="FW: " + record.subject,
            body=body,
            attachments=self._pick_attachments(),
            origin_id=record.message_id,
        )
