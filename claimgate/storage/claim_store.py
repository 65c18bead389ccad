"""
Claim Store — document storage with a single atomic conditional update.

Backend: chosen by Settings.store_backend.
    "memory"  -> in-process dict guarded by a lock (default, lost on restart)
    "redis"   -> JSON documents, WATCH/MULTI optimistic transactions

Redis keys:
    claim:{claim_id}          claim document (JSON)
    callback_keys:{uri}       one-time webhook keys (list of JSON entries)

conditional_update() is the only synchronization primitive the engine uses
for usage limits. Guards are re-checked against the live document inside
the atomic step; when any guard fails the update matches nothing and the
caller reports a lost race.
"""

import copy
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from claimgate.claims.state_patch import ConditionalUpdate, GuardRejected, apply_update
from claimgate.errors import ExternalDependencyError

logger = logging.getLogger(__name__)


def _is_live(doc: Optional[Dict[str, Any]]) -> bool:
    return doc is not None and doc.get("deleted_at") is None


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class MemoryClaimStore:
    """In-memory claim store (default)."""

    def __init__(self) -> None:
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._callback_keys: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, claim_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._docs.get(claim_id)
            return copy.deepcopy(doc) if doc is not None else None

    def put(self, doc: Dict[str, Any]) -> None:
        with self._lock:
            self._docs[doc["claim_id"]] = copy.deepcopy(doc)

    def conditional_update(self, claim_id: str,
                           update: ConditionalUpdate) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._docs.get(claim_id)
            if not _is_live(doc):
                return None
            try:
                return apply_update(doc, update)
            except GuardRejected as exc:
                logger.info("[STORE] Conditional update on %s matched nothing: %s",
                            claim_id, exc)
                return None

    def mark_delivered(self, claim_id: str, attempt_id: str) -> bool:
        with self._lock:
            doc = self._docs.get(claim_id)
            record = (doc or {}).get("claim_attempts", {}).get(attempt_id)
            if record is None or record.get("delivered"):
                return False
            record["delivered"] = True
            return True

    def modify(self, claim_id: str,
               mutate: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]
               ) -> Optional[Dict[str, Any]]:
        """Replace a document with mutate(copy) atomically.

        mutate returns the new document, or None to leave it unchanged.
        """
        with self._lock:
            doc = self._docs.get(claim_id)
            if doc is None:
                return None
            new_doc = mutate(copy.deepcopy(doc))
            if new_doc is None:
                return None
            self._docs[claim_id] = copy.deepcopy(new_doc)
            return copy.deepcopy(new_doc)

    def push_callback_key(self, uri: str, key: str, timestamp: int) -> None:
        with self._lock:
            self._callback_keys.setdefault(uri, []).append(
                {"key": key, "timestamp": timestamp})

    def get_callback_keys(self, uri: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._callback_keys.get(uri, []))

    def clear(self) -> None:
        """For testing: simulate process restart."""
        with self._lock:
            self._docs.clear()
            self._callback_keys.clear()


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

class RedisClaimStore:
    """Redis-backed claim store using optimistic WATCH/MULTI transactions."""

    def __init__(self, redis_url: str, max_retries: int = 64) -> None:
        import redis as _redis_lib
        self._url = redis_url
        self._max_retries = max_retries
        self._watch_error = _redis_lib.WatchError
        self._redis_error = _redis_lib.RedisError
        self._client = _redis_lib.Redis.from_url(
            redis_url,
            socket_connect_timeout=2,
            socket_timeout=2,
            decode_responses=True,
        )
        try:
            self._client.ping()
            logger.info("[STORE] Redis connected: %s", redis_url)
        except self._redis_error as exc:
            raise ExternalDependencyError(f"Redis unavailable at {redis_url}: {exc}") from exc

    @staticmethod
    def _key_claim(claim_id: str) -> str:
        return f"claim:{claim_id}"

    @staticmethod
    def _key_callbacks(uri: str) -> str:
        return f"callback_keys:{uri}"

    def get(self, claim_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self._client.get(self._key_claim(claim_id))
        except self._redis_error as exc:
            raise ExternalDependencyError(f"Redis read failed: {exc}") from exc
        return json.loads(raw) if raw is not None else None

    def put(self, doc: Dict[str, Any]) -> None:
        try:
            self._client.set(self._key_claim(doc["claim_id"]), json.dumps(doc))
        except self._redis_error as exc:
            raise ExternalDependencyError(f"Redis write failed: {exc}") from exc

    def _transact(self, claim_id: str, mutate) -> Any:
        """Run mutate(doc) under WATCH; retry when another writer interferes.

        mutate returns (result, new_doc). new_doc is written back unless it
        is None.
        """
        key = self._key_claim(claim_id)
        for attempt in range(1, self._max_retries + 1):
            with self._client.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    doc = json.loads(raw) if raw is not None else None
                    result, new_doc = mutate(doc)
                    if new_doc is None:
                        pipe.unwatch()
                        return result
                    pipe.multi()
                    pipe.set(key, json.dumps(new_doc))
                    pipe.execute()
                    return result
                except self._watch_error:
                    logger.debug("[STORE] Write conflict on %s (attempt %d/%d)",
                                 claim_id, attempt, self._max_retries)
                    continue
                except self._redis_error as exc:
                    raise ExternalDependencyError(f"Redis transaction failed: {exc}") from exc
        logger.warning("[STORE] Gave up on %s after %d conflicting retries",
                       claim_id, self._max_retries)
        return None

    def conditional_update(self, claim_id: str,
                           update: ConditionalUpdate) -> Optional[Dict[str, Any]]:
        def mutate(doc):
            if not _is_live(doc):
                return None, None
            try:
                return apply_update(doc, update), doc
            except GuardRejected as exc:
                logger.info("[STORE] Conditional update on %s matched nothing: %s",
                            claim_id, exc)
                return None, None

        return self._transact(claim_id, mutate)

    def mark_delivered(self, claim_id: str, attempt_id: str) -> bool:
        def mutate(doc):
            record = (doc or {}).get("claim_attempts", {}).get(attempt_id)
            if record is None or record.get("delivered"):
                return False, None
            record["delivered"] = True
            return True, doc

        return bool(self._transact(claim_id, mutate))

    def modify(self, claim_id: str,
               mutate: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]
               ) -> Optional[Dict[str, Any]]:
        def step(doc):
            if doc is None:
                return None, None
            new_doc = mutate(doc)
            return new_doc, new_doc

        return self._transact(claim_id, step)

    def push_callback_key(self, uri: str, key: str, timestamp: int) -> None:
        entry = json.dumps({"key": key, "timestamp": timestamp})
        try:
            self._client.rpush(self._key_callbacks(uri), entry)
        except self._redis_error as exc:
            raise ExternalDependencyError(f"Redis write failed: {exc}") from exc

    def get_callback_keys(self, uri: str) -> List[Dict[str, Any]]:
        try:
            raw = self._client.lrange(self._key_callbacks(uri), 0, -1)
        except self._redis_error as exc:
            raise ExternalDependencyError(f"Redis read failed: {exc}") from exc
        return [json.loads(x) for x in raw]

    def clear(self) -> None:
        """For testing: flush claim keys only."""
        for pattern in ("claim:*", "callback_keys:*"):
            for key in self._client.scan_iter(pattern):
                self._client.delete(key)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_store(backend: str, redis_url: str = "", max_retries: int = 64):
    if backend == "redis":
        return RedisClaimStore(redis_url, max_retries)
    return MemoryClaimStore()
