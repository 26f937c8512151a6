"""
Size Estimator — heuristic mailbox-side size of one message.

    estimate = duplication * (body bytes + ceil(attachment bytes * inflation) + envelope)

Inflation approximates base64 MIME encoding (~1.33x); duplication counts the
sender's Sent Items copy plus the recipient's Inbox copy. Both are empirical
and configurable, not an exact model of any backend.
"""

import math
from typing import Iterable

import config
from engine.models import AttachmentRef, SendRequest


class SizeEstimator:
    def __init__(
        self,
        inflation: float = None,
        envelope_bytes: int = None,
        duplication: int = None,
    ):
        self.inflation = config.MIME_INFLATION if inflation is None else inflation
        self.envelope_bytes = config.ENVELOPE_BYTES if envelope_bytes is None else envelope_bytes
        self.duplication = config.DUPLICATION_FACTOR if duplication is None else duplication

    def estimate(self, body: str, attachments: Iterable[AttachmentRef] = ()) -> int:
        body_bytes = len((body or "").encode("utf-8"))
        raw = sum(a.size for a in attachments)
        encoded = math.ceil(raw * self.inflation)
        return self.duplication * (body_bytes + encoded + self.envelope_bytes)

    def estimate_request(self, request: SendRequest) -> int:
        attachments = list(request.attachments)
        if request.inline_image is not None:
            attachments.append(request.inline_image)
        return self.estimate(request.body, attachments)


def required_sends(target_bytes: int, average_message_bytes: int) -> int:
    """Number of sends the campaign plans for (ceil)."""
    if average_message_bytes <= 0:
        raise ValueError("average_message_bytes must be positive")
    return max(0, math.ceil(target_bytes / average_message_bytes))
