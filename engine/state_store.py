"""
State Store — the campaign's durable, versioned progress document.

CampaignState is a value: the controller derives a new state from the old
one after each batch and persists it before generating the next batch. The
whole document is overwritten atomically:

    JsonStateStore   temp file + fsync + os.replace
    MongoStateStore  replace_one(upsert=True) on one document per campaign

Unknown fields are ignored on load, so older readers accept newer documents.
"""

import copy
import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from engine.errors import StateStoreError
from engine.models import MessageKind
from utils.logging_utils import retry_with_backoff

logger = logging.getLogger("mailfill.state_store")

SCHEMA_VERSION = 1


class Phase:
    IDLE = "idle"
    NEW = "new"
    REPLY = "reply"
    FORWARD = "forward"
    OVERFLOW = "overflow"
    DONE = "done"

    ORDER = [IDLE, NEW, REPLY, FORWARD, OVERFLOW, DONE]

    @classmethod
    def rank(cls, phase: str) -> int:
        try:
            return cls.ORDER.index(phase)
        except ValueError:
            raise StateStoreError(f"Unknown campaign phase: {phase!r}")


def _empty_counters() -> Dict[str, Dict[str, int]]:
    return {kind.value: {"attempted": 0, "succeeded": 0} for kind in MessageKind}


def _empty_batches() -> Dict[str, int]:
    return {kind.value: 0 for kind in MessageKind}


def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class CampaignState:
    campaign_id: str = "default"
    schema_version: int = SCHEMA_VERSION
    phase: str = Phase.IDLE
    targets: Dict[str, int] = field(default_factory=dict)
    target_bytes: int = 0
    counters: Dict[str, Dict[str, int]] = field(default_factory=_empty_counters)
    batches: Dict[str, int] = field(default_factory=_empty_batches)
    estimated_bytes: int = 0
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    setup_flags: Dict[str, bool] = field(default_factory=dict)
    excluded_identities: List[str] = field(default_factory=list)
    consecutive_empty_batches: int = 0
    last_error: Optional[str] = None

    # ── reads ────────────────────────────────────────────────────────

    def attempted(self, kind: MessageKind) -> int:
        return self.counters.get(kind.value, {}).get("attempted", 0)

    def succeeded(self, kind: MessageKind) -> int:
        return self.counters.get(kind.value, {}).get("succeeded", 0)

    def target(self, kind: MessageKind) -> int:
        return self.targets.get(kind.value, 0)

    def remaining(self, kind: MessageKind) -> int:
        return max(0, self.target(kind) - self.succeeded(kind))

    def batch_count(self, kind: MessageKind) -> int:
        return self.batches.get(kind.value, 0)

    @property
    def size_target_met(self) -> bool:
        return self.estimated_bytes >= self.target_bytes

    @property
    def is_done(self) -> bool:
        return self.phase == Phase.DONE

    # ── transitions (all return a new state) ─────────────────────────

    def with_phase(self, phase: str, force: bool = False) -> "CampaignState":
        """Advance to `phase`. Going backwards requires force=True (operator override)."""
        if Phase.rank(phase) < Phase.rank(self.phase) and not force:
            raise StateStoreError(f"Phase cannot move backwards ({self.phase} → {phase}) without force")
        return replace(self, phase=phase, updated_at=_utcnow())

    def with_setup_flag(self, name: str) -> "CampaignState":
        flags = dict(self.setup_flags)
        flags[name] = True
        return replace(self, setup_flags=flags, updated_at=_utcnow())

    def with_excluded(self, addresses: List[str]) -> "CampaignState":
        merged = list(self.excluded_identities)
        for address in addresses:
            if address not in merged:
                merged.append(address)
        return replace(self, excluded_identities=merged, updated_at=_utcnow())

    def with_setup_reset(self) -> "CampaignState":
        """Forget setup steps and their exclusions so the next run repeats them."""
        return replace(self, setup_flags={}, excluded_identities=[], updated_at=_utcnow())

    def with_batch(
        self,
        kind: MessageKind,
        attempted: int,
        succeeded: int,
        added_bytes: int,
        last_error: Optional[str] = None,
    ) -> "CampaignState":
        """Fold one batch's totals. Counters and the estimate only grow."""
        if attempted < 0 or succeeded < 0 or added_bytes < 0:
            raise ValueError("batch totals must be non-negative")
        counters = copy.deepcopy(self.counters)
        entry = counters.setdefault(kind.value, {"attempted": 0, "succeeded": 0})
        entry["attempted"] = entry.get("attempted", 0) + attempted
        entry["succeeded"] = entry.get("succeeded", 0) + succeeded
        batches = dict(self.batches)
        batches[kind.value] = batches.get(kind.value, 0) + 1
        empty = self.consecutive_empty_batches + 1 if (attempted and not succeeded) else 0
        return replace(
            self,
            counters=counters,
            batches=batches,
            estimated_bytes=self.estimated_bytes + added_bytes,
            consecutive_empty_batches=empty,
            last_error=last_error if last_error is not None else self.last_error,
            updated_at=_utcnow(),
        )

    # ── (de)serialization ────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CampaignState":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        state = cls(**kwargs)
        Phase.rank(state.phase)
        # Documents written before a kind existed lack its counters
        counters = _empty_counters()
        for kind, entry in (state.counters or {}).items():
            counters[kind] = {"attempted": entry.get("attempted", 0), "succeeded": entry.get("succeeded", 0)}
        batches = _empty_batches()
        batches.update(state.batches or {})
        return replace(state, counters=counters, batches=batches)

    @classmethod
    def fresh(cls, campaign_id: str, targets: Dict[str, int], target_bytes: int) -> "CampaignState":
        now = _utcnow()
        return cls(
            campaign_id=campaign_id,
            targets=dict(targets),
            target_bytes=target_bytes,
            started_at=now,
            updated_at=now,
        )


class JsonStateStore:
    """CampaignState as a JSON file, replaced atomically on every save."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[CampaignState]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Could not read campaign state {self.path}: {e}") from e
        return CampaignState.from_dict(data)

    @retry_with_backoff(max_retries=2, initial_delay=0.2, exceptions=(PermissionError,))
    def _replace(self, tmp_path: str):
        # os.replace can fail transiently on Windows while a reader holds the file
        os.replace(tmp_path, self.path)

    def save(self, state: CampaignState):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            self._replace(tmp_path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StateStoreError(f"Could not write campaign state {self.path}: {e}") from e


class MongoStateStore:
    """CampaignState as one MongoDB document per campaign."""

    def __init__(self, collection, campaign_id: str):
        self.collection = collection
        self.campaign_id = campaign_id

    def load(self) -> Optional[CampaignState]:
        doc = self.collection.find_one({"_id": self.campaign_id})
        if not doc:
            return None
        doc.pop("_id", None)
        return CampaignState.from_dict(doc)

    def save(self, state: CampaignState):
        doc = state.to_dict()
        doc["_id"] = self.campaign_id
        self.collection.replace_one({"_id": self.campaign_id}, doc, upsert=True)
