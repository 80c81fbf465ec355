"""SQLAlchemy persistence for messages, subscription rules and delivery records."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    or_,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from .models import Message

LOGGER = logging.getLogger(__name__)

Base = declarative_base()


class MessageModel(Base):
    __tablename__ = "messages"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer)
    template = Column(String(64), default="general", nullable=False)
    subject = Column(String(255), default="", nullable=False)
    body_text = Column(Text, default="", nullable=False)
    body_html = Column(Text)
    arguments = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class FlagModel(Base):
    __tablename__ = "flags"
    id = Column(Integer, primary_key=True)
    name = Column(String(128), unique=True, nullable=False)
    entity_type = Column(String(64), nullable=False)
    label = Column(String(255))

    flaggings = relationship("FlaggingModel", back_populates="flag", cascade="all, delete-orphan")


class FlaggingModel(Base):
    __tablename__ = "flaggings"
    __table_args__ = (UniqueConstraint("flag_id", "entity_id", "user_id", name="uq_flagging"),)
    id = Column(Integer, primary_key=True)
    flag_id = Column(Integer, ForeignKey("flags.id", ondelete="CASCADE"), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(Integer, nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    flag = relationship("FlagModel", back_populates="flaggings")


class DeliveryRecordModel(Base):
    __tablename__ = "delivery_records"
    id = Column(Integer, primary_key=True)
    source_message_id = Column(Integer, ForeignKey("messages.id", ondelete="SET NULL"))
    user_id = Column(Integer)
    channel = Column(String(64), nullable=False)
    delivered = Column(Boolean, default=False, nullable=False)
    template = Column(String(64))
    subject = Column(String(255))
    body_text = Column(Text)
    arguments = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


def create_session_factory(database_url: str) -> sessionmaker:
    engine_kwargs: Dict[str, Any] = {"future": True}
    if str(database_url).startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        pool_pre_ping = False
    else:
        pool_pre_ping = True
    engine = create_engine(database_url, pool_pre_ping=pool_pre_ping, **engine_kwargs)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def _message_from_row(row: MessageModel) -> Message:
    return Message(
        id=row.id,
        user_id=row.user_id,
        template=row.template,
        subject=row.subject or "",
        body_text=row.body_text or "",
        body_html=row.body_html,
        arguments=dict(row.arguments or {}),
        created_at=row.created_at,
    )


class SqlMessageStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def save(self, message: Message) -> Message:
        """Persist an unsaved message and assign its id."""
        if message.is_saved:
            return message
        with self._session_factory.begin() as session:
            row = MessageModel(
                user_id=message.user_id,
                template=message.template,
                subject=message.subject,
                body_text=message.body_text,
                body_html=message.body_html,
                arguments=dict(message.arguments) or None,
                created_at=message.created_at or datetime.utcnow(),
            )
            session.add(row)
            session.flush()
            message.id = row.id
            message.created_at = row.created_at
        LOGGER.debug("Saved message %s for user %s", message.id, message.user_id)
        return message

    def load(self, message_id: Any) -> Optional[Message]:
        with self._session_factory() as session:
            row = session.get(MessageModel, message_id)
            if row is None:
                return None
            return _message_from_row(row)

    def save_delivery_record(self, message: Message, channel: str, delivered: bool) -> int:
        source = message.original
        source_id = source.id if source is not None else message.id
        with self._session_factory.begin() as session:
            row = DeliveryRecordModel(
                source_message_id=source_id,
                user_id=message.user_id,
                channel=channel,
                delivered=delivered,
                template=message.template,
                subject=message.subject,
                body_text=message.body_text,
                arguments=dict(message.arguments) or None,
            )
            session.add(row)
            session.flush()
            return row.id

    def delivery_records(self, source_message_id: Any) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
            rows = (
                session.query(DeliveryRecordModel)
                .filter(DeliveryRecordModel.source_message_id == source_message_id)
                .order_by(DeliveryRecordModel.id)
                .all()
            )
            return [
                {
                    "id": row.id,
                    "user_id": row.user_id,
                    "channel": row.channel,
                    "delivered": row.delivered,
                    "subject": row.subject,
                }
                for row in rows
            ]


class SqlSubscriptionStore:
    """Subscription rules ("flags") and the per-user rows that reference them."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def create_flag(self, name: str, entity_type: str, label: Optional[str] = None) -> int:
        with self._session_factory.begin() as session:
            row = FlagModel(name=name, entity_type=entity_type, label=label)
            session.add(row)
            session.flush()
            return row.id

    def flag(self, user_id: Any, flag_name: str, entity_id: Any) -> None:
        with self._session_factory.begin() as session:
            flag = session.query(FlagModel).filter(FlagModel.name == flag_name).one_or_none()
            if flag is None:
                raise ValueError(f"Unknown subscription rule: {flag_name}")
            exists = (
                session.query(FlaggingModel.id)
                .filter(
                    FlaggingModel.flag_id == flag.id,
                    FlaggingModel.entity_id == entity_id,
                    FlaggingModel.user_id == user_id,
                )
                .first()
            )
            if exists:
                return
            session.add(FlaggingModel(flag_id=flag.id, entity_type=flag.entity_type, entity_id=entity_id, user_id=user_id))

    def unflag(self, user_id: Any, flag_name: str, entity_id: Any) -> None:
        with self._session_factory.begin() as session:
            flag = session.query(FlagModel).filter(FlagModel.name == flag_name).one_or_none()
            if flag is None:
                return
            (
                session.query(FlaggingModel)
                .filter(
                    FlaggingModel.flag_id == flag.id,
                    FlaggingModel.entity_id == entity_id,
                    FlaggingModel.user_id == user_id,
                )
                .delete(synchronize_session=False)
            )

    def flags_by_prefix(self, prefix: str, entity_types: Optional[Iterable[str]] = None) -> Dict[int, Tuple[str, str]]:
        """Return ``{flag id: (flag name, entity type)}`` for rules named with ``prefix``."""
        with self._session_factory() as session:
            query = session.query(FlagModel).filter(FlagModel.name.startswith(prefix, autoescape=True))
            if entity_types is not None:
                query = query.filter(FlagModel.entity_type.in_(list(entity_types)))
            return {row.id: (row.name, row.entity_type) for row in query.order_by(FlagModel.id).all()}

    def subscription_rows(
        self,
        scopes: Mapping[str, Tuple[Sequence[Any], Sequence[int]]],
        after_user_id: Optional[Any] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[int, Any]]:
        """Return ``(flag id, user id)`` rows across all scopes, ascending by user id.

        ``scopes`` maps an entity type to ``(entity ids, flag ids)``. All scopes
        are read in one ordered query so that ``limit`` pages over user ids
        consistently regardless of how many entity types are involved.
        """
        clauses = [
            and_(
                FlaggingModel.entity_type == entity_type,
                FlaggingModel.entity_id.in_(list(entity_ids)),
                FlaggingModel.flag_id.in_(list(flag_ids)),
            )
            for entity_type, (entity_ids, flag_ids) in scopes.items()
            if entity_ids and flag_ids
        ]
        if not clauses:
            return []
        with self._session_factory() as session:
            query = session.query(FlaggingModel.flag_id, FlaggingModel.user_id).filter(or_(*clauses))
            if after_user_id is not None:
                query = query.filter(FlaggingModel.user_id > after_user_id)
            query = query.order_by(FlaggingModel.user_id.asc(), FlaggingModel.id.asc())
            if limit:
                query = query.limit(limit)
            return [(row.flag_id, row.user_id) for row in query.all()]

    def users_with_flags(self, user_ids: Iterable[Any], flag_names: Iterable[str], scopes: Mapping[str, Iterable[Any]]) -> Dict[Any, List[str]]:
        """Return which of ``flag_names`` each user holds on the scoped entities."""
        user_ids = list(user_ids)
        flag_names = list(flag_names)
        if not user_ids or not flag_names:
            return {}
        clauses = [
            and_(FlaggingModel.entity_type == entity_type, FlaggingModel.entity_id.in_(list(ids)))
            for entity_type, ids in scopes.items()
            if ids
        ]
        if not clauses:
            return {}
        held: Dict[Any, List[str]] = {}
        with self._session_factory() as session:
            rows = (
                session.query(FlaggingModel.user_id, FlagModel.name)
                .join(FlagModel, FlagModel.id == FlaggingModel.flag_id)
                .filter(
                    FlaggingModel.user_id.in_(user_ids),
                    FlagModel.name.in_(flag_names),
                    or_(*clauses),
                )
                .all()
            )
        for user_id, name in rows:
            names = held.setdefault(user_id, [])
            if name not in names:
                names.append(name)
        return held
