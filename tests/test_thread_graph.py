"""
Unit tests for engine/thread_graph.py

Tests cover:
- JSONL backend: append + reload, torn trailing line, append after a torn line
- ThreadGraph: dedupe by message_id, flush bookkeeping, sample
- Mongo backend (mocked collection): seq numbering across flushes
"""

import os
import random
import sys
import tempfile
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.models import ThreadRecord
from engine.thread_graph import JsonlThreadBackend, MongoThreadBackend, ThreadGraph


def _record(n):
    return ThreadRecord(
        message_id=f"<msg{n}@test.com>",
        subject=f"Subject {n}",
        sender="a@test.com",
        sender_name="Alice",
        recipient="b@test.com",
        recipient_name="Bob",
    )


class TestJsonlBackend(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "threads.jsonl")

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_file_is_empty(self):
        self.assertEqual(JsonlThreadBackend(self.path).load(), [])

    def test_append_then_load(self):
        backend = JsonlThreadBackend(self.path)
        backend.append([_record(1), _record(2)])
        backend.append([_record(3)])
        loaded = backend.load()
        self.assertEqual([r.message_id for r in loaded], ["<msg1@test.com>", "<msg2@test.com>", "<msg3@test.com>"])
        self.assertEqual(loaded[0], _record(1))

    def test_torn_last_line_skipped(self):
        backend = JsonlThreadBackend(self.path)
        backend.append([_record(1)])
        with open(self.path, "a") as f:
            f.write('{"message_id": "<torn')
        loaded = backend.load()
        self.assertEqual(len(loaded), 1)

    def test_append_after_torn_line_keeps_new_records(self):
        backend = JsonlThreadBackend(self.path)
        backend.append([_record(1)])
        with open(self.path, "a") as f:
            f.write('{"message_id": "<torn')
        backend.append([_record(2), _record(3)])
        loaded = backend.load()
        self.assertEqual([r.message_id for r in loaded], ["<msg1@test.com>", "<msg2@test.com>", "<msg3@test.com>"])


class TestThreadGraph(unittest.TestCase):

    def test_append_dedupes(self):
        graph = ThreadGraph()
        graph.append(_record(1))
        graph.append(_record(1))
        self.assertEqual(len(graph), 1)
        self.assertIn("<msg1@test.com>", graph)

    def test_sample_empty_is_none(self):
        self.assertIsNone(ThreadGraph().sample(random.Random(1)))

    def test_sample_returns_member(self):
        graph = ThreadGraph(records=[_record(i) for i in range(5)])
        rng = random.Random(7)
        for _ in range(20):
            self.assertIn(graph.sample(rng).message_id, graph)

    def test_flush_writes_only_pending(self):
        backend = MagicMock(spec=JsonlThreadBackend)
        graph = ThreadGraph(backend=backend, records=[_record(1)])
        graph.append(_record(2))
        graph.append(_record(3))
        self.assertEqual(graph.flush(), 2)
        backend.append.assert_called_once_with([_record(2), _record(3)])
        self.assertEqual(graph.flush(), 0)

    def test_open_and_reload_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "g.jsonl")
            graph = ThreadGraph.open(JsonlThreadBackend(path))
            graph.append(_record(1))
            graph.append(_record(2))
            graph.flush()
            reopened = ThreadGraph.open(JsonlThreadBackend(path))
            self.assertEqual(len(reopened), 2)
            self.assertEqual(reopened.flush(), 0)


class TestMongoBackend(unittest.TestCase):

    def test_seq_continues_across_flushes(self):
        coll = MagicMock()
        backend = MongoThreadBackend(coll, "camp")
        graph = ThreadGraph(backend=backend)
        graph.append(_record(1))
        graph.flush()
        graph.append(_record(2))
        graph.append(_record(3))
        graph.flush()

        second_docs = coll.insert_many.call_args_list[1][0][0]
        self.assertEqual([d["seq"] for d in second_docs], [1, 2])
        self.assertTrue(all(d["campaign_id"] == "camp" for d in second_docs))

    def test_load_sorted_by_seq(self):
        coll = MagicMock()
        coll.find.return_value.sort.return_value = [
            dict(_record(1).to_dict(), seq=0, campaign_id="camp", _id="x"),
        ]
        loaded = MongoThreadBackend(coll, "camp").load()
        coll.find.assert_called_once_with({"campaign_id": "camp"})
        coll.find.return_value.sort.assert_called_once_with("seq", 1)
        self.assertEqual(loaded, [_record(1)])


if __name__ == "__main__":
    unittest.main()
