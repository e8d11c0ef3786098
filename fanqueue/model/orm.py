from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)


Base = declarative_base()

# queue statuses
ST_WAITING = "waiting"
ST_PROCESSING = "processing"
ST_COMPLETED = "completed"
ST_EXPIRED = "expired"

ACTIVE_STATUSES = (ST_WAITING, ST_PROCESSING)
TERMINAL_STATUSES = (ST_COMPLETED, ST_EXPIRED)

_ACTIVE_PREDICATE = text("status IN ('waiting', 'processing')")


# ----------------------------
# ORM models
# ----------------------------
class Match(Base):
    __tablename__ = "matches"
    id = Column(String, primary_key=True)
    match_name = Column(String, nullable=False)
    venue = Column(String, nullable=False)
    # epoch seconds
    match_datetime = Column(Float, nullable=False)
    booking_opens_at = Column(Float, nullable=False)


class Stand(Base):
    __tablename__ = "stands"
    __table_args__ = (
        CheckConstraint(
            "available_tickets >= 0 AND available_tickets <= total_tickets",
            name="ck_stands_available_range",
        ),
        Index("ix_stands_match", "match_id"),
    )
    id = Column(String, primary_key=True)
    match_id = Column(String, ForeignKey("matches.id"), nullable=False)
    stand_name = Column(String, nullable=False)
    total_tickets = Column(Integer, nullable=False)
    available_tickets = Column(Integer, nullable=False)


class QueueRow(Base):
    __tablename__ = "queue"
    __table_args__ = (
        CheckConstraint(
            "status IN ('waiting', 'processing', 'completed', 'expired')",
            name="ck_queue_status",
        ),
        # at most one active entry per (user, match)
        Index(
            "uq_queue_active_user_match", "user_id", "match_id",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
        Index("ix_queue_match_status_joined", "match_id", "status",
              "joined_at", "id"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    match_id = Column(String, ForeignKey("matches.id"), nullable=False)
    joined_at = Column(Float, nullable=False)

    # waiting | processing | completed | expired
    status = Column(String, nullable=False, default=ST_WAITING)

    # booking window, set on promotion
    promoted_at = Column(Float, nullable=True)
    expires_at = Column(Float, nullable=True)
