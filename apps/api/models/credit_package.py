"""Credit package model: one batch of credits with its own expiry and origin."""

from datetime import datetime, timezone
import enum
import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditTransType(str, enum.Enum):
    NEW_USER = "NEW_USER"
    ORDER_PAY = "ORDER_PAY"
    SUBSCRIPTION = "SUBSCRIPTION"
    VIDEO_CONSUME = "VIDEO_CONSUME"
    REFUND = "REFUND"
    EXPIRED = "EXPIRED"
    SYSTEM_ADJUST = "SYSTEM_ADJUST"


class CreditPackageStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    DEPLETED = "DEPLETED"
    EXPIRED = "EXPIRED"


class CreditPackage(Base):
    """Credits granted by a purchase, subscription, gift, or adjustment."""

    __tablename__ = "credit_packages"
    __table_args__ = (
        CheckConstraint("remaining_credits >= 0", name="ck_credit_packages_remaining_non_negative"),
        CheckConstraint("frozen_credits >= 0", name="ck_credit_packages_frozen_non_negative"),
        CheckConstraint(
            "remaining_credits + frozen_credits <= initial_credits",
            name="ck_credit_packages_within_initial",
        ),
        UniqueConstraint("user_id", "order_no", name="uq_credit_packages_user_order"),
        Index("ix_credit_packages_user_status", "user_id", "status"),
        Index("ix_credit_packages_user_expired_at", "user_id", "expired_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    initial_credits = Column(Integer, nullable=False)
    remaining_credits = Column(Integer, nullable=False)
    frozen_credits = Column(Integer, nullable=False, default=0)
    trans_type = Column(String, nullable=False)
    order_no = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=CreditPackageStatus.ACTIVE.value)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="credit_packages")

    @property
    def consumed_credits(self) -> int:
        return int(self.initial_credits) - int(self.remaining_credits) - int(self.frozen_credits)
