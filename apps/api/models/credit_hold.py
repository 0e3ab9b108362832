"""Credit hold model: credits reserved against one in-flight video job."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import enum
from typing import Any, Dict, List, Tuple
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String

from database import Base


ALLOCATION_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditHoldStatus(str, enum.Enum):
    HOLDING = "HOLDING"
    SETTLED = "SETTLED"
    RELEASED = "RELEASED"


@dataclass(frozen=True)
class AllocationEntry:
    package_id: str
    credits: int


@dataclass(frozen=True)
class PackageAllocation:
    """Ordered record of which packages funded a hold."""

    entries: Tuple[AllocationEntry, ...]
    version: int = ALLOCATION_SCHEMA_VERSION

    @property
    def total_credits(self) -> int:
        return sum(entry.credits for entry in self.entries)

    def to_json(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "entries": [{"package_id": e.package_id, "credits": e.credits} for e in self.entries],
        }

    @classmethod
    def from_json(cls, value: Any) -> "PackageAllocation":
        if isinstance(value, list):
            # Unversioned rows stored the bare entry list.
            raw_entries: List[Dict[str, Any]] = value
            version = 0
        else:
            payload = value or {}
            version = int(payload.get("version", ALLOCATION_SCHEMA_VERSION))
            if version > ALLOCATION_SCHEMA_VERSION:
                raise ValueError(f"Unsupported package allocation version: {version}")
            raw_entries = list(payload.get("entries") or [])
        entries = tuple(
            AllocationEntry(
                package_id=str(item.get("package_id") or item.get("packageId")),
                credits=int(item.get("credits", 0)),
            )
            for item in raw_entries
        )
        return cls(entries=entries, version=version)


class CreditHold(Base):
    """Reservation of credits for a job, settled or released exactly once."""

    __tablename__ = "credit_holds"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    video_uuid = Column(String, nullable=False, unique=True)
    credits = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=CreditHoldStatus.HOLDING.value, index=True)
    package_allocation = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def allocation(self) -> PackageAllocation:
        return PackageAllocation.from_json(self.package_allocation)
