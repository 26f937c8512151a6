"""
Thread Graph Store — append-only record of successfully sent messages.

Replies and forwards originate from a uniformly sampled record. The in-memory
list is authoritative during the run; new records are buffered and written to
the durable backend on `flush()` (the controller checkpoints every
THREAD_FLUSH_EVERY batches, before persisting CampaignState).

Backends:
    JsonlThreadBackend  — one JSON object per line, appended on each flush
    MongoThreadBackend  — `thread_records` collection, insert_many per flush
"""

import json
import logging
import os
import random
from typing import List, Optional

from engine.errors import StateStoreError
from engine.models import ThreadRecord

logger = logging.getLogger("mailfill.thread_graph")


class JsonlThreadBackend:
    def __init__(self, path: str):
        self.path = path

    def load(self) -> List[ThreadRecord]:
        if not os.path.exists(self.path):
            return []
        records = []
        with open(self.path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(ThreadRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError) as e:
                    # A crash mid-append can leave a torn last line
                    logger.warning(f"thread_record_skipped: {self.path}:{line_no} ({e})")
        return records

    def append(self, records: List[ThreadRecord]):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        try:
            torn = self._ends_mid_line()
            with open(self.path, "a", encoding="utf-8") as f:
                if torn:
                    f.write("\n")
                for record in records:
                    f.write(json.dumps(record.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StateStoreError(f"Could not append thread records to {self.path}: {e}") from e

    def _ends_mid_line(self) -> bool:
        if not os.path.exists(self.path) or os.path.getsize(self.path) == 0:
            return False
        with open(self.path, "rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) != b"\n"


class MongoThreadBackend:
    def __init__(self, collection, campaign_id: str):
        self.collection = collection
        self.campaign_id = campaign_id

    def load(self) -> List[ThreadRecord]:
        cursor = self.collection.find({"campaign_id": self.campaign_id}).sort("seq", 1)
        return [ThreadRecord.from_dict(doc) for doc in cursor]

    def append(self, records: List[ThreadRecord], start_seq: int = 0):
        docs = []
        for offset, record in enumerate(records):
            doc = record.to_dict()
            doc["campaign_id"] = self.campaign_id
            doc["seq"] = start_seq + offset
            docs.append(doc)
        if docs:
            self.collection.insert_many(docs, ordered=True)


class ThreadGraph:
    """
    In-memory thread graph with buffered durable checkpoints.

    Only the control coroutine appends; workers never touch it.
    """

    def __init__(self, backend=None, records: List[ThreadRecord] = None):
        self.backend = backend
        self._records: List[ThreadRecord] = list(records or [])
        self._ids = {r.message_id for r in self._records}
        self._flushed = len(self._records)

    @classmethod
    def open(cls, backend) -> "ThreadGraph":
        records = backend.load()
        logger.info(f"thread_graph_loaded: {len(records)} records")
        return cls(backend=backend, records=records)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def append(self, record: ThreadRecord):
        if record.message_id in self:
            return
        self._records.append(record)
        self._ids.add(record.message_id)

    def sample(self, rng: random.Random) -> Optional[ThreadRecord]:
        if not self._records:
            return None
        return rng.choice(self._records)

    def flush(self) -> int:
        """Write buffered records to the backend. Returns how many were written."""
        pending = self._records[self._flushed:]
        if not pending or self.backend is None:
            return 0
        if isinstance(self.backend, MongoThreadBackend):
            self.backend.append(pending, start_seq=self._flushed)
        else:
            self.backend.append(pending)
        self._flushed = len(self._records)
        logger.debug(f"thread_graph_flushed: {len(pending)} records (total {len(self._records)})")
        return len(pending)
