"""
Content Pool — read-only, random-access collections of message content.

Layout of CONTENT_DIR:
    small/  medium/  large/   attachment files, tier = folder name
    images/                   inline images (png, jpg, gif)
    bodies.txt                body snippets separated by blank lines (optional)
    subjects.txt              one subject per line (optional)

Only file sizes are read at load time. Attachment bytes are read by the send
worker when the message is built.
"""

import logging
import os
import random
from typing import Dict, List, Optional

import config
from engine.errors import CampaignConfigError
from engine.models import AttachmentRef, AttachmentTier

logger = logging.getLogger("mailfill.content_pool")

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif")

DEFAULT_SUBJECTS = [
    "Project update: phase {n}",
    "Invoice #{n} for consultation",
    "Weekly report - week {n}",
    "Meeting notes {n}",
    "Quarterly review Q{q}",
    "Feedback on design #{n}",
    "Deployment status ({n})",
    "Budget draft v{q}",
    "Onboarding checklist",
    "Vendor contract renewal",
]

DEFAULT_BODIES = [
    "Hi,\n\nPlease find the latest figures below. Let me know if anything looks off "
    "before Friday so we can fold it into the summary.\n\nThanks",
    "Hello team,\n\nThe review went well overall. A few action items came up around "
    "scheduling and we will circulate owners by end of day.\n\nRegards",
    "Hi all,\n\nQuick reminder that the deadline moved to next week. The shared folder "
    "has the updated templates.\n\nBest",
    "Good morning,\n\nAttached is the draft we discussed. Comments inline are welcome, "
    "I will consolidate them tomorrow.\n\nCheers",
    "Hello,\n\nFollowing up on our call, here is the outline of the proposal and the "
    "open questions we still need to close.\n\nKind regards",
]


def _read_snippets(path: str, separator_blank_line: bool) -> List[str]:
    if not os.path.isfile(path):
        return []
    with open(path, encoding="utf-8") as f:
        text = f.read()
    if separator_blank_line:
        parts = [p.strip() for p in text.replace("\r\n", "\n").split("\n\n")]
    else:
        parts = [line.strip() for line in text.splitlines()]
    return [p for p in parts if p]


def _scan_folder(folder: str, tier: AttachmentTier, extensions=None) -> List[AttachmentRef]:
    if not os.path.isdir(folder):
        return []
    items = []
    for name in sorted(os.listdir(folder)):
        path = os.path.join(folder, name)
        if not os.path.isfile(path):
            continue
        if extensions and not name.lower().endswith(extensions):
            continue
        items.append(AttachmentRef(path=path, size=os.path.getsize(path), tier=tier))
    return items


class ContentPool:
    """Body templates + tiered attachments, shared read-only by the generator."""

    def __init__(
        self,
        attachments: Dict[AttachmentTier, List[AttachmentRef]] = None,
        images: List[AttachmentRef] = None,
        bodies: List[str] = None,
        subjects: List[str] = None,
    ):
        self.attachments = {tier: list((attachments or {}).get(tier, [])) for tier in AttachmentTier}
        self.images = list(images or [])
        self.bodies = list(bodies or DEFAULT_BODIES)
        self.subjects = list(subjects or DEFAULT_SUBJECTS)

    @classmethod
    def load(cls, content_dir: str = None) -> "ContentPool":
        content_dir = content_dir or config.CONTENT_DIR
        if not content_dir or not os.path.isdir(content_dir):
            raise CampaignConfigError(f"Content pool directory not found: {content_dir}")

        attachments = {
            tier: _scan_folder(os.path.join(content_dir, tier.value), tier)
            for tier in AttachmentTier
        }
        images = _scan_folder(os.path.join(content_dir, "images"), AttachmentTier.SMALL, IMAGE_EXTENSIONS)
        pool = cls(
            attachments=attachments,
            images=images,
            bodies=_read_snippets(os.path.join(content_dir, "bodies.txt"), True),
            subjects=_read_snippets(os.path.join(content_dir, "subjects.txt"), False),
        )
        logger.info(
            "content_pool_loaded",
            extra={
                "small": len(attachments[AttachmentTier.SMALL]),
                "medium": len(attachments[AttachmentTier.MEDIUM]),
                "large": len(attachments[AttachmentTier.LARGE]),
                "images": len(images),
                "bodies": len(pool.bodies),
            },
        )
        return pool

    @property
    def all_attachments(self) -> List[AttachmentRef]:
        items = []
        for tier in AttachmentTier:
            items.extend(self.attachments[tier])
        return items

    def pick_attachment(self, tier: AttachmentTier, rng: random.Random) -> Optional[AttachmentRef]:
        items = self.attachments[tier]
        return rng.choice(items) if items else None

    def pick_any(self, rng: random.Random) -> Optional[AttachmentRef]:
        items = self.all_attachments
        return rng.choice(items) if items else None

    def largest(self, count: int = 10) -> List[AttachmentRef]:
        """The large tier, or the biggest items overall when it is empty."""
        if self.attachments[AttachmentTier.LARGE]:
            return list(self.attachments[AttachmentTier.LARGE])
        return sorted(self.all_attachments, key=lambda a: a.size, reverse=True)[:count]

    def pick_image(self, rng: random.Random) -> Optional[AttachmentRef]:
        return rng.choice(self.images) if self.images else None

    def pick_body(self, rng: random.Random) -> str:
        return rng.choice(self.bodies)

    def pick_subject(self, rng: random.Random) -> str:
        template = rng.choice(self.subjects)
        try:
            return template.format(n=rng.randint(1000, 9999), q=rng.randint(1, 4))
        except (KeyError, IndexError, ValueError):
            # Free-form subject lines from subjects.txt may contain braces
            return template
