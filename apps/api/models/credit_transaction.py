"""Credit transaction model: append-only ledger audit log."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditTransaction(Base):
    """Immutable record of a ledger-affecting event."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    trans_no = Column(String, nullable=False, unique=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    trans_type = Column(String, nullable=False, index=True)
    credits = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    package_id = Column(String, nullable=True)
    hold_id = Column(String, nullable=True)
    video_uuid = Column(String, nullable=True, index=True)
    order_no = Column(String, nullable=True)
    remark = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
