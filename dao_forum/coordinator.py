"""
Write-side coordination between the Message Store and the Reply Index.

The two stores cannot be updated atomically. Writes always go to the
Message Store first and the Reply Index second, so a failure in between
leaves a reply missing from counts (repairable by resync_index) rather
than an index entry pointing at a message that does not exist.
"""

import logging
import time
from typing import Callable, Optional

import redis

from dao_forum.config import settings
from dao_forum.errors import BadParams, ForumError, InternalError, NotFound
from dao_forum.metrics import record_forum_write, record_resync
from dao_forum.utils import to_score, utc_now

logger = logging.getLogger(__name__)

# Store errors worth retrying during a resync
RETRYABLE_INDEX_ERRORS = (redis.ConnectionError, redis.TimeoutError)


class ConsistencyCoordinator:
    """
    Creates, deletes and re-indexes messages.

    Args:
        store: Message Store (see storage.SqlMessageStore)
        index: Reply Index shared by the whole process
        owners: Parent-DAO lookup with an exists(dao_id) method
        clock: Returns the naive UTC creation time for new messages
    """

    def __init__(self, store, index, owners, clock: Optional[Callable] = None):
        self.store = store
        self.index = index
        self.owners = owners
        self.clock = clock or utc_now

    def create_message(self, dao_id: str, author_id: str, body: str, reply_to_message_id: Optional[str] = None):
        """
        Post a root message, or a reply when `reply_to_message_id` is given.

        Replies are always indexed under the root of the thread, even when
        they answer another reply.

        Raises:
            BadParams: unknown DAO or body length outside 1..MAX_MESSAGE_LENGTH
            NotFound: the message being answered is missing or deleted
            InternalError: the thread root could not be determined
        """
        from dao_forum.models import Message

        if not self.owners.exists(dao_id):
            record_forum_write("create", "bad_params")
            raise BadParams(f"Can't find dao {dao_id}")

        if not body or len(body) > settings.MAX_MESSAGE_LENGTH:
            record_forum_write("create", "bad_params")
            raise BadParams(f"Message cannot be empty or longer than {settings.MAX_MESSAGE_LENGTH} characters")

        logger.info(f"Creating message for dao {dao_id} from user {author_id} in reply to message {reply_to_message_id}: {body[:10]}...")

        reply_to = None
        root_message_id = None
        if reply_to_message_id:
            reply_to = self.store.find_by_id(reply_to_message_id)
            if reply_to is None:
                record_forum_write("create", "not_found")
                raise NotFound("Reply to message not found")
            root_message_id = reply_to.root_message_id or reply_to.id
            if not root_message_id:
                logger.error(f"Cannot determine root message id while replying to message {reply_to.id} in dao {dao_id}")
                record_forum_write("create", "internal_error")
                raise InternalError("Cannot determine root message id while replying to message")

        message = self.store.insert(Message(
            dao_id=dao_id,
            author_id=author_id,
            body=body,
            created_at=self.clock(),
            root_message_id=root_message_id,
            reply_to_message_id=reply_to.id if reply_to else None,
            reply_to_author_id=reply_to.author_id if reply_to else None,
        ))
        logger.info(f"Created message for dao {dao_id}, new message id: {message.id}")

        if root_message_id:
            try:
                self.index.add(root_message_id, message.id, to_score(message.created_at))
            except Exception as e:
                logger.error(
                    f"Reply {message.id} stored but not indexed under root {root_message_id} "
                    f"(dao {dao_id}); run a resync to repair: {e}"
                )
                record_forum_write("create", "index_error")
                raise

        record_forum_write("create", "created")
        return message

    def delete_message(self, message_id: str, requesting_author_id: str):
        """
        Soft-delete a message and drop it from the Reply Index.

        Deleting a root drops its whole reply collection. The replies stay
        in the Message Store but are no longer listed.
        """
        try:
            message = self.store.soft_delete(message_id, requesting_author_id)
        except ForumError as e:
            record_forum_write("delete", e.code.value.lower())
            raise

        if message.is_root:
            self.index.delete_all(message.id)
        else:
            self.index.remove(message.root_message_id, message.id)

        record_forum_write("delete", "deleted")
        return message

    def resync_index(self, dao_id: str, max_retries: Optional[int] = None) -> dict:
        """
        Rebuild the Reply Index of every root in a DAO from the Message Store.

        Safe to repeat and to run alongside live traffic. Each root's
        rebuild is retried on Redis connection errors with exponential
        backoff.

        Returns:
            Summary with the number of roots and replies indexed
        """
        if max_retries is None:
            max_retries = settings.RESYNC_MAX_RETRIES

        logger.info(f"Resyncing reply index for dao {dao_id}")
        roots = self.store.find_all_roots(dao_id)
        replies_indexed = 0

        for root in roots:
            entries = [(reply.id, to_score(reply.created_at)) for reply in self.store.find_replies(root.id)]
            self._rebuild_with_retry(root.id, entries, max_retries)
            replies_indexed += len(entries)

        logger.info(f"Resynced reply index for dao {dao_id}: {len(roots)} roots, {replies_indexed} replies")
        record_resync("ok")
        return {"roots": len(roots), "replies": replies_indexed}

    def _rebuild_with_retry(self, root_id: str, entries: list, max_retries: int) -> None:
        for attempt in range(max_retries + 1):
            try:
                self.index.rebuild(root_id, entries)
                return
            except RETRYABLE_INDEX_ERRORS as e:
                if attempt >= max_retries:
                    logger.error(f"Giving up on reply index rebuild for root {root_id} after {attempt + 1} attempts: {e}")
                    record_resync("failed")
                    raise
                delay = settings.RESYNC_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(f"Reply index rebuild for root {root_id} failed (attempt {attempt + 1}), retrying in {delay:.2f}s: {e}")
                time.sleep(delay)
