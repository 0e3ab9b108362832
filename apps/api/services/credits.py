"""Credit ledger: packages, holds, and the append-only transaction log."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, AsyncIterator, Dict, List, Optional
import uuid

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.credit_hold import AllocationEntry, CreditHold, CreditHoldStatus, PackageAllocation
from models.credit_package import CreditPackage, CreditPackageStatus, CreditTransType
from models.credit_transaction import CreditTransaction
from services.errors import (
    AlreadyProcessedError,
    HoldNotFoundError,
    InsufficientCreditsError,
    InvalidHoldStateError,
)

logger = logging.getLogger(__name__)

GRANT_TRANS_TYPES = (
    CreditTransType.NEW_USER,
    CreditTransType.ORDER_PAY,
    CreditTransType.SUBSCRIPTION,
    CreditTransType.SYSTEM_ADJUST,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _trans_no() -> str:
    return f"TXN{uuid.uuid4().hex}"


@dataclass(frozen=True)
class CreditBalance:
    total: int
    used: int
    frozen: int
    available: int
    expiring_soon: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalCredits": self.total,
            "usedCredits": self.used,
            "frozenCredits": self.frozen,
            "availableCredits": self.available,
            "expiringSoon": self.expiring_soon,
        }


def default_expiry_days(trans_type: CreditTransType) -> int:
    if trans_type == CreditTransType.NEW_USER:
        return max(int(settings.NEW_USER_GIFT_DAYS), 1)
    if trans_type == CreditTransType.SUBSCRIPTION:
        return max(int(settings.CREDIT_SUBSCRIPTION_EXPIRY_DAYS), 1)
    return max(int(settings.CREDIT_PURCHASE_EXPIRY_DAYS), 1)


def _active_package_filter(user_id: str, now: datetime):
    return (
        CreditPackage.user_id == user_id,
        CreditPackage.status == CreditPackageStatus.ACTIVE.value,
        or_(CreditPackage.expired_at.is_(None), CreditPackage.expired_at > now),
    )


class CreditLedger:
    """Accounting engine for prepaid credits.

    Every mutating method runs as one transaction. Passing ``db`` joins the
    caller's session instead; the caller then owns commit and rollback.
    Package counters are only changed through guarded SQL updates, and hold
    state changes are compare-and-set, so concurrent callers cannot spend or
    refund the same credits twice.
    """

    def __init__(self, session_maker: Optional[async_sessionmaker] = None) -> None:
        self._session_maker = session_maker or async_session_maker

    @asynccontextmanager
    async def _transaction(self, db: Optional[AsyncSession]) -> AsyncIterator[AsyncSession]:
        if db is not None:
            yield db
            return
        async with self._session_maker() as session:
            async with session.begin():
                yield session

    async def _get_hold(self, db: AsyncSession, video_uuid: str) -> Optional[CreditHold]:
        result = await db.execute(
            select(CreditHold)
            .where(CreditHold.video_uuid == video_uuid)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _available_credits(self, db: AsyncSession, user_id: str) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(CreditPackage.remaining_credits), 0)).where(
                *_active_package_filter(user_id, _utcnow())
            )
        )
        return int(result.scalar() or 0)

    async def _append_transaction(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        trans_type: CreditTransType,
        credits: int,
        package_id: Optional[str] = None,
        hold_id: Optional[str] = None,
        video_uuid: Optional[str] = None,
        order_no: Optional[str] = None,
        remark: Optional[str] = None,
    ) -> CreditTransaction:
        await db.flush()
        entry = CreditTransaction(
            id=str(uuid.uuid4()),
            trans_no=_trans_no(),
            user_id=user_id,
            trans_type=trans_type.value,
            credits=int(credits),
            balance_after=await self._available_credits(db, user_id),
            package_id=package_id,
            hold_id=hold_id,
            video_uuid=video_uuid,
            order_no=order_no,
            remark=remark,
        )
        db.add(entry)
        await db.flush()
        return entry

    async def _mark_hold(self, db: AsyncSession, hold: CreditHold, status: CreditHoldStatus) -> bool:
        result = await db.execute(
            update(CreditHold)
            .where(
                CreditHold.id == hold.id,
                CreditHold.status == CreditHoldStatus.HOLDING.value,
            )
            .values(status=status.value, settled_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_balance(self, user_id: str, *, db: Optional[AsyncSession] = None) -> CreditBalance:
        now = _utcnow()
        warn_before = now + timedelta(days=max(int(settings.CREDIT_EXPIRY_WARN_DAYS), 0))
        async with self._transaction(db) as session:
            # Depleted packages still count toward total and used credits.
            result = await session.execute(
                select(CreditPackage)
                .where(
                    CreditPackage.user_id == user_id,
                    CreditPackage.status.in_(
                        (CreditPackageStatus.ACTIVE.value, CreditPackageStatus.DEPLETED.value)
                    ),
                    or_(CreditPackage.expired_at.is_(None), CreditPackage.expired_at > now),
                )
                .execution_options(populate_existing=True)
            )
            packages = result.scalars().all()

        total = used = frozen = available = expiring_soon = 0
        for package in packages:
            total += int(package.initial_credits)
            used += package.consumed_credits
            frozen += int(package.frozen_credits)
            available += int(package.remaining_credits)
            expired_at = _as_utc(package.expired_at)
            if expired_at is not None and expired_at <= warn_before:
                expiring_soon += int(package.remaining_credits)
        return CreditBalance(
            total=total,
            used=used,
            frozen=frozen,
            available=available,
            expiring_soon=expiring_soon,
        )

    async def freeze(
        self,
        user_id: str,
        credits: int,
        video_uuid: str,
        *,
        db: Optional[AsyncSession] = None,
    ) -> str:
        """Reserve credits for a job and return the hold id.

        Idempotent by ``video_uuid``: a retry returns the existing HOLDING
        hold without allocating again.
        """
        amount = int(credits)
        if amount <= 0:
            raise ValueError("credits must be greater than 0")
        try:
            async with self._transaction(db) as session:
                return await self._freeze(session, user_id, amount, video_uuid)
        except IntegrityError:
            if db is not None:
                raise
            # A concurrent freeze for the same job inserted its hold first.
            async with self._session_maker() as session:
                hold = await self._get_hold(session, video_uuid)
            if hold is not None and hold.status == CreditHoldStatus.HOLDING.value:
                logger.info("Freeze for %s resolved to concurrent hold %s", video_uuid, hold.id)
                return hold.id
            raise

    async def _freeze(self, db: AsyncSession, user_id: str, amount: int, video_uuid: str) -> str:
        existing = await self._get_hold(db, video_uuid)
        if existing is not None:
            if existing.status == CreditHoldStatus.HOLDING.value:
                return existing.id
            raise AlreadyProcessedError(f"Hold already processed for video: {video_uuid}")

        # The unique video_uuid insert goes first: a concurrent freeze for the
        # same job blocks here and then fails, before reading any package.
        hold = CreditHold(
            id=str(uuid.uuid4()),
            user_id=user_id,
            video_uuid=video_uuid,
            credits=amount,
            status=CreditHoldStatus.HOLDING.value,
            package_allocation=PackageAllocation(entries=()).to_json(),
        )
        db.add(hold)
        await db.flush()

        now = _utcnow()
        result = await db.execute(
            select(CreditPackage)
            .where(
                *_active_package_filter(user_id, now),
                CreditPackage.remaining_credits > 0,
            )
            .order_by(
                CreditPackage.expired_at.is_(None),
                CreditPackage.expired_at.asc(),
                CreditPackage.created_at.asc(),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        packages = result.scalars().all()
        available = sum(int(p.remaining_credits) for p in packages)
        if available < amount:
            raise InsufficientCreditsError(required=amount, available=available)

        entries: List[AllocationEntry] = []
        remaining = amount
        for package in packages:
            if remaining <= 0:
                break
            take = min(int(package.remaining_credits), remaining)
            entries.append(AllocationEntry(package_id=package.id, credits=take))
            remaining -= take
        allocation = PackageAllocation(entries=tuple(entries))

        for entry in allocation.entries:
            moved = await db.execute(
                update(CreditPackage)
                .where(
                    CreditPackage.id == entry.package_id,
                    CreditPackage.status == CreditPackageStatus.ACTIVE.value,
                    CreditPackage.remaining_credits >= entry.credits,
                )
                .values(
                    remaining_credits=CreditPackage.remaining_credits - entry.credits,
                    frozen_credits=CreditPackage.frozen_credits + entry.credits,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                # Another writer spent this package after we read it.
                raise InsufficientCreditsError(required=amount, available=available - entry.credits)

        hold.package_allocation = allocation.to_json()
        await db.flush()

        logger.info(
            "Froze %s credits for %s across %s package(s)", amount, video_uuid, len(allocation.entries)
        )
        return hold.id

    async def settle(self, video_uuid: str, *, db: Optional[AsyncSession] = None) -> None:
        """Permanently consume a HOLDING hold. No-op once SETTLED."""
        async with self._transaction(db) as session:
            hold = await self._get_hold(session, video_uuid)
            if hold is None:
                raise HoldNotFoundError(f"Hold not found for video: {video_uuid}")
            if hold.status == CreditHoldStatus.SETTLED.value:
                return
            if hold.status != CreditHoldStatus.HOLDING.value:
                raise InvalidHoldStateError(f"Cannot settle hold {hold.id} in status {hold.status}")
            if not await self._mark_hold(session, hold, CreditHoldStatus.SETTLED):
                current = await self._get_hold(session, video_uuid)
                if current is not None and current.status == CreditHoldStatus.SETTLED.value:
                    return
                raise InvalidHoldStateError(f"Hold {hold.id} changed state during settle")

            now = _utcnow()
            for entry in hold.allocation.entries:
                consumed = await session.execute(
                    update(CreditPackage)
                    .where(
                        CreditPackage.id == entry.package_id,
                        CreditPackage.frozen_credits >= entry.credits,
                    )
                    .values(
                        frozen_credits=CreditPackage.frozen_credits - entry.credits,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if consumed.rowcount != 1:
                    raise InvalidHoldStateError(
                        f"Package {entry.package_id} frozen credits do not cover hold {hold.id}"
                    )
                await session.execute(
                    update(CreditPackage)
                    .where(
                        CreditPackage.id == entry.package_id,
                        CreditPackage.status == CreditPackageStatus.ACTIVE.value,
                        CreditPackage.remaining_credits == 0,
                        CreditPackage.frozen_credits == 0,
                    )
                    .values(status=CreditPackageStatus.DEPLETED.value)
                    .execution_options(synchronize_session=False)
                )

            await self._append_transaction(
                session,
                user_id=hold.user_id,
                trans_type=CreditTransType.VIDEO_CONSUME,
                credits=-int(hold.credits),
                hold_id=hold.id,
                video_uuid=video_uuid,
                remark=f"Video generation settled: {video_uuid}",
            )
        logger.info("Settled hold for %s (%s credits)", video_uuid, hold.credits)

    async def release(self, video_uuid: str, *, db: Optional[AsyncSession] = None) -> None:
        """Return a HOLDING hold's credits to availability. No-op once RELEASED."""
        async with self._transaction(db) as session:
            hold = await self._get_hold(session, video_uuid)
            if hold is None:
                raise HoldNotFoundError(f"Hold not found for video: {video_uuid}")
            if hold.status == CreditHoldStatus.RELEASED.value:
                return
            if hold.status != CreditHoldStatus.HOLDING.value:
                raise InvalidHoldStateError(f"Cannot release hold {hold.id} in status {hold.status}")
            if not await self._mark_hold(session, hold, CreditHoldStatus.RELEASED):
                current = await self._get_hold(session, video_uuid)
                if current is not None and current.status == CreditHoldStatus.RELEASED.value:
                    return
                raise InvalidHoldStateError(f"Hold {hold.id} changed state during release")

            now = _utcnow()
            for entry in hold.allocation.entries:
                restored = await session.execute(
                    update(CreditPackage)
                    .where(
                        CreditPackage.id == entry.package_id,
                        CreditPackage.frozen_credits >= entry.credits,
                    )
                    .values(
                        remaining_credits=CreditPackage.remaining_credits + entry.credits,
                        frozen_credits=CreditPackage.frozen_credits - entry.credits,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if restored.rowcount != 1:
                    raise InvalidHoldStateError(
                        f"Package {entry.package_id} frozen credits do not cover hold {hold.id}"
                    )

            # Zero delta: the refund is the frozen -> remaining move above.
            await self._append_transaction(
                session,
                user_id=hold.user_id,
                trans_type=CreditTransType.REFUND,
                credits=0,
                hold_id=hold.id,
                video_uuid=video_uuid,
                remark=f"Video generation failed, credits released: {video_uuid}",
            )
        logger.info("Released hold for %s (%s credits)", video_uuid, hold.credits)

    async def hold_status(self, video_uuid: str, *, db: Optional[AsyncSession] = None) -> Optional[str]:
        async with self._transaction(db) as session:
            hold = await self._get_hold(session, video_uuid)
            return hold.status if hold is not None else None

    async def recharge(
        self,
        user_id: str,
        credits: int,
        order_no: str,
        *,
        trans_type: CreditTransType = CreditTransType.ORDER_PAY,
        expiry_days: Optional[int] = None,
        remark: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> str:
        """Create an ACTIVE package. Replaying the same order returns the original package."""
        grant = int(credits)
        if grant <= 0:
            raise ValueError("credits must be greater than 0")
        if trans_type not in GRANT_TRANS_TYPES:
            raise ValueError(f"{trans_type.value} cannot create a credit package")
        days = int(expiry_days) if expiry_days is not None else default_expiry_days(trans_type)
        try:
            async with self._transaction(db) as session:
                existing = await self._find_order_package(session, user_id, order_no)
                if existing is not None:
                    logger.info("Order %s already credited to %s, skipping", order_no, user_id)
                    return existing.id

                package = CreditPackage(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    initial_credits=grant,
                    remaining_credits=grant,
                    frozen_credits=0,
                    trans_type=trans_type.value,
                    order_no=order_no,
                    status=CreditPackageStatus.ACTIVE.value,
                    expired_at=_utcnow() + timedelta(days=max(days, 1)),
                )
                session.add(package)
                await self._append_transaction(
                    session,
                    user_id=user_id,
                    trans_type=trans_type,
                    credits=grant,
                    package_id=package.id,
                    order_no=order_no,
                    remark=remark or f"Recharge: {order_no}",
                )
                package_id = package.id
        except IntegrityError:
            if db is not None:
                raise
            async with self._session_maker() as session:
                existing = await self._find_order_package(session, user_id, order_no)
            if existing is None:
                raise
            return existing.id
        logger.info("Recharged %s credits for %s (order=%s)", grant, user_id, order_no)
        return package_id

    async def _find_order_package(
        self, db: AsyncSession, user_id: str, order_no: str
    ) -> Optional[CreditPackage]:
        result = await db.execute(
            select(CreditPackage).where(
                CreditPackage.user_id == user_id,
                CreditPackage.order_no == order_no,
            )
        )
        return result.scalars().first()

    async def grant_new_user_credits(self, user_id: str) -> Optional[str]:
        """Grant the welcome gift once per user. Safe to call on every login."""
        if not settings.NEW_USER_GIFT_ENABLED:
            logger.info("New user gift disabled, skipping for user %s", user_id)
            return None
        async with self._session_maker() as session:
            result = await session.execute(
                select(CreditPackage.id).where(
                    CreditPackage.user_id == user_id,
                    CreditPackage.trans_type == CreditTransType.NEW_USER.value,
                )
            )
            if result.scalars().first() is not None:
                return None
        package_id = await self.recharge(
            user_id,
            max(int(settings.NEW_USER_GIFT_CREDITS), 1),
            f"NEW_USER_{user_id}",
            trans_type=CreditTransType.NEW_USER,
            expiry_days=settings.NEW_USER_GIFT_DAYS,
            remark="New user welcome credits",
        )
        logger.info("Granted welcome credits to %s", user_id)
        return package_id

    async def expire_credits(self) -> int:
        """Expire lapsed packages. Packages with frozen credits are skipped."""
        now = _utcnow()
        expired = 0
        async with self._transaction(None) as session:
            result = await session.execute(
                select(CreditPackage.id, CreditPackage.user_id, CreditPackage.remaining_credits).where(
                    CreditPackage.status == CreditPackageStatus.ACTIVE.value,
                    CreditPackage.expired_at < now,
                    CreditPackage.remaining_credits > 0,
                    CreditPackage.frozen_credits == 0,
                )
            )
            for package_id, user_id, remaining in result.all():
                changed = await session.execute(
                    update(CreditPackage)
                    .where(
                        CreditPackage.id == package_id,
                        CreditPackage.status == CreditPackageStatus.ACTIVE.value,
                        CreditPackage.frozen_credits == 0,
                        CreditPackage.remaining_credits == remaining,
                    )
                    .values(status=CreditPackageStatus.EXPIRED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if changed.rowcount != 1:
                    continue
                expired += 1
                await self._append_transaction(
                    session,
                    user_id=user_id,
                    trans_type=CreditTransType.EXPIRED,
                    credits=-int(remaining),
                    package_id=package_id,
                    remark=f"Credits expired: {package_id}",
                )
        if expired:
            logger.info("Expired %s credit package(s)", expired)
        return expired

    async def get_history(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        trans_type: Optional[CreditTransType] = None,
    ) -> Dict[str, Any]:
        filters = [CreditTransaction.user_id == user_id]
        if trans_type is not None:
            filters.append(CreditTransaction.trans_type == trans_type.value)
        async with self._session_maker() as session:
            records = (
                await session.execute(
                    select(CreditTransaction)
                    .where(*filters)
                    .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                    .limit(max(int(limit), 1))
                    .offset(max(int(offset), 0))
                )
            ).scalars().all()
            total = (
                await session.execute(select(func.count(CreditTransaction.id)).where(*filters))
            ).scalar()
        return {"records": list(records), "total": int(total or 0)}


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "transNo": entry.trans_no,
        "transType": entry.trans_type,
        "credits": entry.credits,
        "balanceAfter": entry.balance_after,
        "videoUuid": entry.video_uuid,
        "orderNo": entry.order_no,
        "remark": entry.remark,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }
