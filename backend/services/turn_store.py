"""Append-only turn storage backed by SQLAlchemy."""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker

from models.turn import ChainHead, HistoryEntry, Turn

logger = logging.getLogger(__name__)

Base = declarative_base()


class ConstraintViolation(Exception):
    """Raised when an append would duplicate or skip a turn index."""

    def __init__(self, conversation_id: str, turn_index: int, reason: str):
        self.conversation_id = conversation_id
        self.turn_index = turn_index
        self.reason = reason
        super().__init__(
            f"Cannot append turn {turn_index} to conversation {conversation_id}: {reason}"
        )


class TurnStore(ABC):
    """
    Durable, ordered, append-only record of turns.

    Turns are keyed by (conversation_id, turn_index). There is deliberately
    no update or delete operation.
    """

    @abstractmethod
    def append(self, turn: Turn) -> None:
        """
        Insert a new turn, committing before returning.

        Raises:
            ConstraintViolation: If the index already exists or is not last + 1
        """

    @abstractmethod
    def last_turn(self, conversation_id: str) -> Optional[ChainHead]:
        """Return the index and chain hash of the newest turn, or None."""

    @abstractmethod
    def history(self, conversation_id: str, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Return the most recent ``limit`` turns (all when None), ascending."""

    @abstractmethod
    def all_turns_ordered(self, conversation_id: Optional[str] = None) -> List[Turn]:
        """Return full turn records ascending by (conversation_id, turn_index)."""

    @abstractmethod
    def count(self) -> int:
        """Return the total number of stored turns."""

    def last_chain_hash(self, conversation_id: str) -> Optional[str]:
        """Return the chain hash of the highest turn index, or None."""
        head = self.last_turn(conversation_id)
        return head.chain_hash if head else None

    def close(self) -> None:
        """Release any held connections."""


class TurnRow(Base):
    __tablename__ = "turns"
    __table_args__ = (
        UniqueConstraint("conversation_id", "turn_index", name="uq_turns_conversation_turn"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String, nullable=False, index=True)
    turn_index = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    user_prompt = Column(Text, nullable=False)
    full_prompt = Column(Text, nullable=True)
    response = Column(Text, nullable=False)
    machine_state = Column(Text, nullable=True)
    retrieved_context = Column(Text, nullable=True)
    content_hash = Column(String(64), nullable=False)
    chain_hash = Column(String(64), nullable=False)

    def to_turn(self) -> Turn:
        return Turn(
            conversation_id=self.conversation_id,
            turn_index=self.turn_index,
            user_prompt=self.user_prompt,
            response=self.response,
            machine_state=self.machine_state,
            content_hash=self.content_hash,
            chain_hash=self.chain_hash,
            full_prompt=self.full_prompt,
            retrieved_context=self.retrieved_context,
            created_at=self.created_at,
        )


class SQLTurnStore(TurnStore):
    """Turn store on any SQLAlchemy database (SQLite by default)."""

    def __init__(self, database_url: str = "sqlite:///./conversation.db", engine: Optional[Engine] = None):
        """
        Initialize the store and create the turns table if needed.

        Args:
            database_url: SQLAlchemy URL, ignored when ``engine`` is given
            engine: Pre-built engine to use instead of creating one
        """
        if engine is None:
            connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
            engine = create_engine(database_url, connect_args=connect_args)

        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        Base.metadata.create_all(engine)
        logger.info(f"Initialized SQLTurnStore on {engine.url.render_as_string(hide_password=True)}")

    def append(self, turn: Turn) -> None:
        with self._session_factory() as session:
            last_index = session.execute(
                select(func.max(TurnRow.turn_index)).where(
                    TurnRow.conversation_id == turn.conversation_id
                )
            ).scalar() or 0

            if turn.turn_index != last_index + 1:
                reason = "duplicate turn index" if turn.turn_index <= last_index else (
                    f"out of sequence (last stored turn is {last_index})"
                )
                raise ConstraintViolation(turn.conversation_id, turn.turn_index, reason)

            session.add(TurnRow(
                conversation_id=turn.conversation_id,
                turn_index=turn.turn_index,
                created_at=turn.created_at or datetime.now(timezone.utc),
                user_prompt=turn.user_prompt,
                full_prompt=turn.full_prompt,
                response=turn.response,
                machine_state=turn.machine_state,
                retrieved_context=turn.retrieved_context,
                content_hash=turn.content_hash,
                chain_hash=turn.chain_hash,
            ))

            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                # Another writer committed the same index between our read and insert
                raise ConstraintViolation(
                    turn.conversation_id, turn.turn_index, "duplicate turn index"
                ) from e

        logger.info(
            f"Appended turn {turn.turn_index} to conversation {turn.conversation_id}",
            extra={
                "conversation_id": turn.conversation_id,
                "turn_index": turn.turn_index,
                "chain_hash": turn.chain_hash,
            },
        )

    def last_turn(self, conversation_id: str) -> Optional[ChainHead]:
        with self._session_factory() as session:
            row = session.execute(
                select(TurnRow.turn_index, TurnRow.chain_hash)
                .where(TurnRow.conversation_id == conversation_id)
                .order_by(TurnRow.turn_index.desc())
                .limit(1)
            ).first()

        if row is None:
            return None
        return ChainHead(turn_index=row.turn_index, chain_hash=row.chain_hash)

    def history(self, conversation_id: str, limit: Optional[int] = None) -> List[HistoryEntry]:
        stmt = (
            select(TurnRow.turn_index, TurnRow.user_prompt, TurnRow.response)
            .where(TurnRow.conversation_id == conversation_id)
            .order_by(TurnRow.turn_index.desc())
        )
        if limit:
            stmt = stmt.limit(limit)

        with self._session_factory() as session:
            rows = session.execute(stmt).all()

        return [
            HistoryEntry(turn_index=row.turn_index, user_prompt=row.user_prompt, response=row.response)
            for row in reversed(rows)
        ]

    def all_turns_ordered(self, conversation_id: Optional[str] = None) -> List[Turn]:
        stmt = select(TurnRow).order_by(TurnRow.conversation_id, TurnRow.turn_index)
        if conversation_id is not None:
            stmt = stmt.where(TurnRow.conversation_id == conversation_id)

        with self._session_factory() as session:
            rows = session.execute(stmt).scalars().all()

        return [row.to_turn() for row in rows]

    def count(self) -> int:
        with self._session_factory() as session:
            return session.execute(select(func.count(TurnRow.id))).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()
