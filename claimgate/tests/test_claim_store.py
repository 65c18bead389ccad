"""
Tests for claim_store.py — memory backend always, redis when REDIS_URL is set.
"""

import os
import uuid
import unittest

import pytest

from claimgate.claims.state_patch import Below, ConditionalUpdate, IncrementPatch
from claimgate.storage.claim_store import MemoryClaimStore, create_store


def _doc(claim_id):
    return {"claim_id": claim_id, "state": {"n": {"num_uses": 0}},
            "claim_attempts": {}, "deleted_at": None}


def _bump(attempt_id, limit=2):
    return ConditionalUpdate(
        attempt_id=attempt_id,
        attempt_record={"address": "a", "delivered": False},
        guards=[Below("n.num_uses", limit)],
        patches=[IncrementPatch("n.num_uses", 1, capture="claim_number")],
    )


class _StoreContract:
    """Behaviour shared by every backend."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()
        self.claim_id = f"c-{uuid.uuid4().hex}"
        self.store.put(_doc(self.claim_id))

    def test_get_returns_copy(self):
        doc = self.store.get(self.claim_id)
        doc["state"]["n"]["num_uses"] = 99
        self.assertEqual(self.store.get(self.claim_id)["state"]["n"]["num_uses"], 0)

    def test_missing_claim(self):
        self.assertIsNone(self.store.get("nope"))
        self.assertIsNone(self.store.conditional_update("nope", _bump("t")))

    def test_conditional_update_captures(self):
        self.assertEqual(self.store.conditional_update(self.claim_id, _bump("t1")),
                         {"claim_number": 0})
        self.assertEqual(self.store.conditional_update(self.claim_id, _bump("t2")),
                         {"claim_number": 1})
        self.assertIsNone(self.store.conditional_update(self.claim_id, _bump("t3")))
        self.assertEqual(self.store.get(self.claim_id)["state"]["n"]["num_uses"], 2)

    def test_deleted_claim_matches_nothing(self):
        self.store.modify(self.claim_id, lambda d: dict(d, deleted_at=1))
        self.assertIsNone(self.store.conditional_update(self.claim_id, _bump("t1")))

    def test_mark_delivered_once(self):
        self.store.conditional_update(self.claim_id, _bump("t1"))
        self.assertTrue(self.store.mark_delivered(self.claim_id, "t1"))
        self.assertFalse(self.store.mark_delivered(self.claim_id, "t1"))
        self.assertFalse(self.store.mark_delivered(self.claim_id, "unknown"))

    def test_modify_none_leaves_document(self):
        self.assertIsNone(self.store.modify(self.claim_id, lambda d: None))
        self.assertEqual(self.store.get(self.claim_id), _doc(self.claim_id))

    def test_callback_keys(self):
        uri = f"https://hooks.example/{self.claim_id}"
        self.store.push_callback_key(uri, "k1", 10)
        self.store.push_callback_key(uri, "k2", 11)
        self.assertEqual([e["key"] for e in self.store.get_callback_keys(uri)], ["k1", "k2"])


class TestMemoryClaimStore(_StoreContract, unittest.TestCase):

    def make_store(self):
        return MemoryClaimStore()

    def test_clear(self):
        self.store.clear()
        self.assertIsNone(self.store.get(self.claim_id))


@pytest.mark.skipif(not os.getenv("REDIS_URL"), reason="REDIS_URL not set")
class TestRedisClaimStore(_StoreContract, unittest.TestCase):

    def make_store(self):
        return create_store("redis", os.environ["REDIS_URL"])


def test_factory_defaults_to_memory():
    assert isinstance(create_store("memory"), MemoryClaimStore)
