"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import Column, DateTime, Index, String, Text

from dao_forum.storage import Base


def new_message_id() -> str:
    return uuid.uuid4().hex


class Message(Base):
    """
    A discussion message, either a root post or a reply.

    Table: forum_messages
    Roots have root_message_id NULL. Replies always point at a root,
    never at another reply; reply_to_message_id keeps the message that
    was actually answered and is only used for display.
    """
    __tablename__ = "forum_messages"

    id = Column(String, primary_key=True, default=new_message_id)
    dao_id = Column(String, nullable=False, index=True)
    author_id = Column(String, nullable=False, index=True)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, index=True)  # naive UTC
    deleted_at = Column(DateTime, nullable=True)

    root_message_id = Column(String, nullable=True, index=True)
    reply_to_message_id = Column(String, nullable=True)
    reply_to_author_id = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_forum_messages_dao_root_created", "dao_id", "root_message_id", "created_at"),
    )

    @property
    def is_root(self) -> bool:
        return self.root_message_id is None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self) -> str:
        return f"<Message id={self.id} dao={self.dao_id} root={self.root_message_id}>"


class Dao(Base):
    """
    Minimal view of the parent DAO entity.

    The forum only needs to know that a DAO exists and who owns it;
    everything else about DAOs lives outside this service.
    """
    __tablename__ = "daos"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=True)
