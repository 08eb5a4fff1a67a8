"""
Read-side assembly of discussion threads.

- list_roots_with_preview: a page of root messages, each with its reply
  count and the oldest few replies
- list_replies: cursor-based window over one root's replies
- resolve_with_ancestors: the "in reply to ..." chain of a single message

Reply ordering and counts come from the Reply Index; message content
comes from the Message Store. Corrupted data (stale index entries,
reply-to cycles, runaway chains) is trimmed and logged, never raised.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dao_forum.config import settings
from dao_forum.errors import BadParams, NotFound
from dao_forum.metrics import record_thread_degradation
from dao_forum.utils import page_count

logger = logging.getLogger(__name__)


@dataclass
class RootWithReplies:
    root: object
    reply_count: int
    replies: list = field(default_factory=list)


@dataclass
class RootPage:
    list: List[RootWithReplies]
    total: int
    pages: int


@dataclass
class ReplyWindow:
    items: list
    total: int
    next_cursor: Optional[int]
    prev_cursor: Optional[int]


@dataclass
class MessageThread:
    """
    A message linked to the message it replies to.

    The head is the requested message; following reply_to walks back
    towards the root. Soft-deleted ancestors stay in the chain as
    tombstones (deleted=True).
    """
    message: object
    reply_to: Optional["MessageThread"] = None

    @property
    def deleted(self) -> bool:
        return self.message.is_deleted

    def chain(self) -> list:
        """Nodes oldest first, ending with this one."""
        nodes = []
        node = self
        while node is not None:
            nodes.append(node)
            node = node.reply_to
        nodes.reverse()
        return nodes


def _in_index_order(ids: List[str], by_id: Dict[str, object]) -> list:
    return [by_id[reply_id] for reply_id in ids if reply_id in by_id]


class ThreadAssembler:
    """
    Builds thread views from a Message Store and a Reply Index.

    Args:
        store: Message Store (see storage.SqlMessageStore)
        index: Reply Index shared by the whole process
        max_depth: Bound on the ancestor walk
        fanout_workers: Thread pool size for per-root index lookups
    """

    def __init__(self, store, index, max_depth: Optional[int] = None, fanout_workers: Optional[int] = None):
        self.store = store
        self.index = index
        self.max_depth = max_depth if max_depth is not None else settings.ANCESTOR_MAX_DEPTH
        self.fanout_workers = fanout_workers or settings.PREVIEW_FANOUT_WORKERS

    def _reply_info(self, root_id: str, preview_limit: int):
        return self.index.count(root_id), self.index.window_oldest_first(root_id, 0, preview_limit)

    def list_roots_with_preview(self, dao_id: str, page: int, page_size: int, reply_preview_limit: int) -> RootPage:
        if page < 0 or page_size < 1 or reply_preview_limit < 0:
            raise BadParams("page must be >= 0, page size >= 1 and reply limit >= 0")

        total = self.store.count(dao_id, only_roots=True)
        pages = page_count(total, page_size)
        if total == 0:
            return RootPage(list=[], total=0, pages=0)

        actual_page = max(0, min(page, pages - 1))
        if actual_page != page:
            logger.debug(f"Clamped page {page} to {actual_page} for dao {dao_id}")

        roots = self.store.find_roots(dao_id, offset=actual_page * page_size, limit=page_size)
        if not roots:
            return RootPage(list=[], total=total, pages=pages)

        # Index lookups are independent per root; run them side by side.
        workers = min(self.fanout_workers, len(roots))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            infos = list(pool.map(lambda root: self._reply_info(root.id, reply_preview_limit), roots))

        preview_ids = [reply_id for _, ids in infos for reply_id in ids]
        by_id = {reply.id: reply for reply in self.store.find_by_ids(preview_ids)}

        stale = len(set(preview_ids) - set(by_id))
        if stale:
            logger.info(f"Dropped {stale} stale reply index entries while listing dao {dao_id}")
            record_thread_degradation("stale_index_entry", stale)

        items = [
            RootWithReplies(root=root, reply_count=count, replies=_in_index_order(ids, by_id))
            for root, (count, ids) in zip(roots, infos)
        ]
        return RootPage(list=items, total=total, pages=pages)

    def list_replies(self, root_id: str, cursor: int = 0, limit: int = 10) -> ReplyWindow:
        """
        Window of replies to a root, oldest first.

        Returned items can be fewer than `limit` when replies were deleted
        after the index was read.
        """
        if cursor < 0 or limit < 1:
            raise BadParams("cursor must be >= 0 and limit >= 1")

        total = self.index.count(root_id)
        ids = self.index.window_oldest_first(root_id, cursor, limit)
        by_id = {reply.id: reply for reply in self.store.find_by_ids(ids)}

        stale = len(set(ids) - set(by_id))
        if stale:
            logger.info(f"Dropped {stale} stale reply index entries under root {root_id}")
            record_thread_degradation("stale_index_entry", stale)

        next_cursor = cursor + limit if cursor + limit < total else None
        prev_cursor = cursor - limit if cursor - limit >= 0 else None
        return ReplyWindow(items=_in_index_order(ids, by_id), total=total, next_cursor=next_cursor, prev_cursor=prev_cursor)

    def get_message(self, message_id: str):
        message = self.store.find_by_id(message_id)
        if message is None:
            raise NotFound(f"Can't find message with id {message_id}")
        return message

    def resolve_with_ancestors(self, message_id: str) -> MessageThread:
        """
        Walk reply-to pointers back from a message.

        The walk stops at the first message without a reply-to pointer,
        at a missing ancestor, on a cycle, or after max_depth hops.
        Deleted ancestors are kept as tombstones and the walk continues
        through them.

        Raises:
            NotFound: the requested message is missing or deleted
        """
        message = self.get_message(message_id)

        chain = [message]
        seen = {message.id}
        depth = 0
        while depth < self.max_depth:
            reply_to_id = chain[-1].reply_to_message_id
            if not reply_to_id:
                break

            parent = self.store.find_by_id(reply_to_id, include_deleted=True)
            if parent is None:
                logger.info(f"Ancestor {reply_to_id} missing in thread of message {message_id}")
                record_thread_degradation("missing_ancestor")
                break
            if parent.id in seen:
                logger.error(f"Circular reference detected in message thread: {message_id} (at {parent.id})")
                record_thread_degradation("cycle")
                break

            chain.append(parent)
            seen.add(parent.id)
            depth += 1
        else:
            if chain[-1].reply_to_message_id:
                logger.warning(f"Message thread exceeded maximum depth of {self.max_depth}: {message_id}")
                record_thread_degradation("max_depth")

        head = None
        for item in reversed(chain):
            head = MessageThread(message=item, reply_to=head)
        return head
