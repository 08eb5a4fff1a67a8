import logging
from datetime import datetime, timedelta
from typing import Generator, Iterable, Optional

from sqlalchemy import create_engine, func, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from dao_forum.config import settings
from dao_forum.errors import NotFound, Unauthorized
from dao_forum.utils import utc_now

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from dao_forum.models import Dao, Message  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and the forum schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("forum_messages"):
            logger.error("Database schema not applied: 'forum_messages' table not found")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Store
# =============================================================================

class SqlMessageStore:
    """
    Message Store backed by a SQLAlchemy session.

    The store is the source of truth for every message. All listing
    queries exclude soft-deleted rows; ordering is created_at then id.
    """

    def __init__(self, db: Session):
        self.db = db

    def _visible(self):
        from dao_forum.models import Message

        return self.db.query(Message).filter(Message.deleted_at.is_(None))

    def count(self, dao_id: str, only_roots: bool = True) -> int:
        from dao_forum.models import Message

        query = self._visible().filter(Message.dao_id == dao_id)
        if only_roots:
            query = query.filter(Message.root_message_id.is_(None))
        return query.count()

    def find_roots(self, dao_id: str, offset: int, limit: int) -> list:
        """Page of root messages, most recent discussion first."""
        from dao_forum.models import Message

        logger.debug(f"Querying roots: dao={dao_id}, offset={offset}, limit={limit}")
        return (
            self._visible()
            .filter(Message.dao_id == dao_id, Message.root_message_id.is_(None))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def find_all_roots(self, dao_id: str) -> list:
        from dao_forum.models import Message

        return (
            self._visible()
            .filter(Message.dao_id == dao_id, Message.root_message_id.is_(None))
            .order_by(Message.created_at.asc(), Message.id.asc())
            .all()
        )

    def find_replies(self, root_id: str) -> list:
        """All non-deleted replies indexed under `root_id`, oldest first."""
        from dao_forum.models import Message

        return (
            self._visible()
            .filter(Message.root_message_id == root_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
            .all()
        )

    def find_by_ids(self, ids: Iterable[str]) -> list:
        """
        Bulk fetch, excluding soft-deleted rows.

        The result is in no particular order; callers re-order by the
        Reply Index, which is authoritative for reply ordering.
        """
        from dao_forum.models import Message

        ids = list(dict.fromkeys(ids))
        if not ids:
            return []
        return self._visible().filter(Message.id.in_(ids)).all()

    def find_by_id(self, message_id: str, include_deleted: bool = False):
        from dao_forum.models import Message

        query = self.db.query(Message) if include_deleted else self._visible()
        return query.filter(Message.id == message_id).first()

    def find_recent_excluding_author(
        self,
        dao_id: str,
        exclude_author_id: str,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> list:
        """
        Recent messages in a DAO written by anyone but `exclude_author_id`.

        Args:
            dao_id: DAO whose discussion is scanned
            exclude_author_id: Author whose own messages are skipped
            since: Lower bound on created_at, defaults to the configured window
            limit: Requested row count; at least 100 rows are always returned
                when available

        Returns:
            Messages newest first, soft-deleted ones included
        """
        from dao_forum.models import Message

        if since is None:
            since = utc_now() - timedelta(hours=settings.RECENT_MESSAGES_WINDOW_HOURS)

        return (
            self.db.query(Message)
            .filter(
                Message.dao_id == dao_id,
                Message.author_id != exclude_author_id,
                Message.created_at >= since,
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(max(limit, 100))
            .all()
        )

    def history_for_author(self, author_id: Optional[str], limit: int = 10) -> list:
        """An author's latest messages across every DAO, newest first."""
        from dao_forum.models import Message

        if not author_id:
            return []
        return (
            self.db.query(Message)
            .filter(func.lower(Message.author_id) == author_id.lower())
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .all()
        )

    def stats(self, dao_id: str, owner_author_id: Optional[str]) -> dict:
        """
        Message statistics for a DAO.

        Computes:
        - total: every message ever posted in the DAO
        - self_total: messages written by the DAO owner, across all DAOs
        - self_24h / self_7d: the same, restricted to the last 24 hours / 7 days

        Returns:
            Dictionary with stats data
        """
        from dao_forum.models import Message

        logger.info(f"Computing message statistics for dao {dao_id}")

        total = self.db.query(func.count(Message.id)).filter(Message.dao_id == dao_id).scalar() or 0

        if not owner_author_id:
            return {"total": total, "self_total": 0, "self_24h": 0, "self_7d": 0}

        by_owner = self.db.query(func.count(Message.id)).filter(
            func.lower(Message.author_id) == owner_author_id.lower()
        )
        now = utc_now()
        self_total = by_owner.scalar() or 0
        self_24h = by_owner.filter(Message.created_at >= now - timedelta(hours=24)).scalar() or 0
        self_7d = by_owner.filter(Message.created_at >= now - timedelta(days=7)).scalar() or 0

        logger.debug(f"Stats: total={total}, self_total={self_total}, self_24h={self_24h}, self_7d={self_7d}")
        return {"total": total, "self_total": self_total, "self_24h": self_24h, "self_7d": self_7d}

    def insert(self, message):
        """Persist a new message and return it with its id populated."""
        logger.info(f"Inserting message: dao={message.dao_id}, author={message.author_id}, root={message.root_message_id}")
        try:
            self.db.add(message)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(message)
        return message

    def soft_delete(self, message_id: str, requesting_author_id: str):
        """
        Mark a message deleted on behalf of its author.

        Returns:
            The deleted message, so callers can see whether it was a root

        Raises:
            NotFound: message does not exist or is already deleted
            Unauthorized: requester is not the author
        """
        message = self.find_by_id(message_id)
        if message is None:
            raise NotFound(f"Message not found: {message_id}")
        if message.author_id != requesting_author_id:
            logger.warning(f"Delete of message {message_id} refused for non-author {requesting_author_id}")
            raise Unauthorized("Only the author can delete a message")

        message.deleted_at = utc_now()
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Message soft-deleted: {message_id}")
        return message


class SqlThreadOwners:
    """Looks up the DAO that owns a discussion."""

    def __init__(self, db: Session):
        self.db = db

    def exists(self, dao_id: str) -> bool:
        from dao_forum.models import Dao

        return self.db.query(Dao.id).filter(Dao.id == dao_id).first() is not None

    def owner_of(self, dao_id: str) -> Optional[str]:
        from dao_forum.models import Dao

        dao = self.db.query(Dao).filter(Dao.id == dao_id).first()
        return dao.owner_id if dao else None

    def add(self, dao_id: str, owner_id: Optional[str] = None):
        """Register a DAO; used by provisioning scripts and tests."""
        from dao_forum.models import Dao

        dao = Dao(id=dao_id, owner_id=owner_id)
        self.db.add(dao)
        self.db.commit()
        return dao
