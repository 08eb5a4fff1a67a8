"""
Reply Index: an ordered, per-root projection of replies.

Each root message owns one sorted collection of (created_at score, reply id)
pairs. The Message Store stays the source of truth; everything here can be
rebuilt from it (see ConsistencyCoordinator.resync_index).

Two implementations are provided:
- RedisReplyIndex: sorted sets in Redis, safe under concurrent writers
  because ZADD/ZREM are atomic on the server
- InMemoryReplyIndex: a lock-protected in-process equivalent
"""

import bisect
import logging
import threading
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

import redis

from dao_forum.config import Settings

logger = logging.getLogger(__name__)


class ReplyIndex(Protocol):
    def add(self, root_id: str, reply_id: str, score: int) -> None: ...

    def remove(self, root_id: str, reply_id: str) -> None: ...

    def delete_all(self, root_id: str) -> None: ...

    def count(self, root_id: str) -> int: ...

    def window_oldest_first(self, root_id: str, start_rank: int, count: int) -> List[str]: ...

    def rebuild(self, root_id: str, entries: Iterable[Tuple[str, int]]) -> None: ...

    def ping(self) -> bool: ...


class RedisReplyIndex:
    """
    Reply Index stored as one Redis sorted set per root message.

    Members are reply ids and scores are creation times in epoch
    milliseconds. Redis orders equal scores by member, which gives the
    same (created_at, id) ordering the Message Store uses.
    """

    def __init__(self, client: "redis.Redis", prefix: str = "message-replies"):
        self.client = client
        self.prefix = prefix

    def key(self, root_id: str) -> str:
        return f"{self.prefix}:{root_id}"

    def add(self, root_id: str, reply_id: str, score: int) -> None:
        # nx keeps the first score when the same reply is added twice
        self.client.zadd(self.key(root_id), {reply_id: score}, nx=True)

    def remove(self, root_id: str, reply_id: str) -> None:
        self.client.zrem(self.key(root_id), reply_id)

    def delete_all(self, root_id: str) -> None:
        self.client.delete(self.key(root_id))

    def count(self, root_id: str) -> int:
        return int(self.client.zcard(self.key(root_id)))

    def window_oldest_first(self, root_id: str, start_rank: int, count: int) -> List[str]:
        if count <= 0:
            return []
        return list(self.client.zrange(self.key(root_id), start_rank, start_rank + count - 1))

    def rebuild(self, root_id: str, entries: Iterable[Tuple[str, int]]) -> None:
        """Replace a root's collection in one MULTI/EXEC block."""
        mapping = {reply_id: score for reply_id, score in entries}
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(self.key(root_id))
        if mapping:
            pipe.zadd(self.key(root_id), mapping)
        pipe.execute()

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Reply index health check failed: {e}")
            return False

    def close(self) -> None:
        self.client.close()


class InMemoryReplyIndex:
    """
    Process-local Reply Index with the same semantics as RedisReplyIndex.

    Used by tests and single-process deployments.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, List[Tuple[int, str]]] = {}
        self._scores: Dict[str, Dict[str, int]] = {}

    def add(self, root_id: str, reply_id: str, score: int) -> None:
        with self._lock:
            scores = self._scores.setdefault(root_id, {})
            if reply_id in scores:
                return
            scores[reply_id] = score
            bisect.insort(self._entries.setdefault(root_id, []), (score, reply_id))

    def remove(self, root_id: str, reply_id: str) -> None:
        with self._lock:
            score = self._scores.get(root_id, {}).pop(reply_id, None)
            if score is None:
                return
            entries = self._entries[root_id]
            entries.pop(bisect.bisect_left(entries, (score, reply_id)))
            if not entries:
                del self._entries[root_id]
                del self._scores[root_id]

    def delete_all(self, root_id: str) -> None:
        with self._lock:
            self._entries.pop(root_id, None)
            self._scores.pop(root_id, None)

    def count(self, root_id: str) -> int:
        with self._lock:
            return len(self._entries.get(root_id, ()))

    def window_oldest_first(self, root_id: str, start_rank: int, count: int) -> List[str]:
        if count <= 0 or start_rank < 0:
            return []
        with self._lock:
            window = self._entries.get(root_id, [])[start_rank:start_rank + count]
            return [reply_id for _, reply_id in window]

    def rebuild(self, root_id: str, entries: Iterable[Tuple[str, int]]) -> None:
        scores = {reply_id: score for reply_id, score in entries}
        with self._lock:
            if not scores:
                self._entries.pop(root_id, None)
                self._scores.pop(root_id, None)
                return
            self._scores[root_id] = scores
            self._entries[root_id] = sorted((score, reply_id) for reply_id, score in scores.items())

    def snapshot(self) -> Dict[str, List[Tuple[int, str]]]:
        """Copy of every collection, keyed by root id."""
        with self._lock:
            return {root_id: list(entries) for root_id, entries in self._entries.items()}

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


def create_reply_index(config: Optional[Settings] = None) -> RedisReplyIndex:
    """
    Build the process-wide Reply Index from settings.

    Called once at application startup; the instance is then injected
    into the coordinator and assembler.
    """
    if config is None:
        from dao_forum.config import settings as config

    logger.info(f"Connecting reply index: prefix={config.REPLY_INDEX_PREFIX}")
    client = redis.Redis.from_url(config.REDIS_URL, decode_responses=True)
    return RedisReplyIndex(client, prefix=config.REPLY_INDEX_PREFIX)
