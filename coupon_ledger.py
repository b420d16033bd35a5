# coupon_ledger.py - 优惠券校验、库存预占与释放
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import (
    COUPON_RESERVATION_TTL_MINUTES, CouponDiscountType, CouponStatus, ReservationStatus, to_amount,
)
from database_setup import coupon_reservations, coupons
from exceptions import CouponExhausted, CouponExpired, CouponInvalid, MinAmountNotMet

logger = logging.getLogger(__name__)


class CouponReservation(BaseModel):
    coupon_id: int
    reservation_key: str
    code: str
    name: str
    discount_amount: Decimal
    expires_at: datetime


def compute_coupon_discount(discount_type: str, value: Decimal, order_amount: Decimal,
                            max_discount: Optional[Decimal] = None) -> Decimal:
    if order_amount <= 0:
        return Decimal('0.00')
    if discount_type == CouponDiscountType.FIXED:
        discount = min(value, order_amount)
    elif discount_type == CouponDiscountType.PERCENTAGE:
        discount = order_amount * value
        if max_discount is not None:
            discount = min(discount, max_discount)
    else:
        raise ValueError(f"未知的优惠券折扣类型: {discount_type}")
    return to_amount(min(discount, order_amount))


class CouponLedger:
    def __init__(self, session: Session, reservation_ttl_minutes: int = COUPON_RESERVATION_TTL_MINUTES):
        self.session = session
        self.reservation_ttl = timedelta(minutes=reservation_ttl_minutes)

    def _load_coupon(self, coupon_id: int):
        return self.session.execute(
            select(coupons).where(coupons.c.id == coupon_id)
        ).first()

    def _find_reservation(self, coupon_id: int, reservation_key: str):
        return self.session.execute(
            select(coupon_reservations).where(
                coupon_reservations.c.coupon_id == coupon_id,
                coupon_reservations.c.reservation_key == reservation_key,
            )
        ).first()

    @staticmethod
    def _check_scope(coupon, product_ids: Optional[Iterable[int]], sku_ids: Optional[Iterable[int]]) -> None:
        """限定商品 / SKU 的券，订单中至少有一行命中才可用；未传订单商品时不校验。"""
        if coupon.product_ids and product_ids is not None:
            if not set(coupon.product_ids) & set(product_ids):
                raise CouponInvalid(coupon.id, f"优惠券不适用于当前商品: {coupon.id}")
        if coupon.sku_ids and sku_ids is not None:
            if not set(coupon.sku_ids) & set(sku_ids):
                raise CouponInvalid(coupon.id, f"优惠券不适用于当前规格: {coupon.id}")

    def _validate(self, coupon, order_amount: Decimal, now: datetime,
                  product_ids: Optional[Iterable[int]] = None, sku_ids: Optional[Iterable[int]] = None) -> None:
        if coupon.status == CouponStatus.EXPIRED:
            raise CouponExpired(coupon.id)
        if coupon.status != CouponStatus.ACTIVE:
            raise CouponInvalid(coupon.id)
        if not (coupon.valid_from <= now < coupon.valid_to):
            raise CouponExpired(coupon.id)
        self._check_scope(coupon, product_ids, sku_ids)
        min_amount = Decimal(str(coupon.min_order_amount or 0))
        if order_amount < min_amount:
            raise MinAmountNotMet(coupon.id, min_amount, order_amount)

    def _discount(self, coupon, order_amount: Decimal) -> Decimal:
        max_discount = coupon.max_discount_amount
        return compute_coupon_discount(
            coupon.discount_type,
            Decimal(str(coupon.value)),
            order_amount,
            Decimal(str(max_discount)) if max_discount is not None else None,
        )

    def reserve(self, coupon_id: int, order_amount: Decimal, reservation_key: str,
                now: Optional[datetime] = None, product_ids: Optional[Iterable[int]] = None,
                sku_ids: Optional[Iterable[int]] = None) -> CouponReservation:
        """预占一张优惠券库存；同一 reservation_key 重复预占只占用一次。"""
        now = now or datetime.now()
        coupon = self._load_coupon(coupon_id)
        if not coupon:
            raise CouponInvalid(coupon_id, f"优惠券不存在: {coupon_id}")

        existing = self._find_reservation(coupon_id, reservation_key)
        holding = existing is not None and existing.status in (ReservationStatus.RESERVED, ReservationStatus.CONFIRMED)

        try:
            self._validate(coupon, order_amount, now, product_ids, sku_ids)
        except Exception:
            if holding and existing.status == ReservationStatus.RESERVED:
                self._release_rows([existing], ReservationStatus.RESERVED)
            raise

        discount = self._discount(coupon, order_amount)
        expires_at = now + self.reservation_ttl

        if holding:
            if existing.status == ReservationStatus.RESERVED:
                self.session.execute(
                    update(coupon_reservations)
                    .where(coupon_reservations.c.id == existing.id)
                    .values(discount_amount=discount, expires_at=expires_at)
                )
            else:
                discount = Decimal(str(existing.discount_amount))
                expires_at = existing.expires_at
            return CouponReservation(
                coupon_id=coupon.id, reservation_key=reservation_key, code=coupon.code,
                name=coupon.name, discount_amount=discount, expires_at=expires_at,
            )

        # 原子地校验并增加已用数量
        result = self.session.execute(
            update(coupons)
            .where(
                coupons.c.id == coupon_id,
                coupons.c.status == CouponStatus.ACTIVE,
                coupons.c.used_count < coupons.c.total_count,
            )
            .values(used_count=coupons.c.used_count + 1)
        )
        if result.rowcount != 1:
            raise CouponExhausted(coupon_id)

        if existing is not None:
            self.session.execute(
                update(coupon_reservations)
                .where(coupon_reservations.c.id == existing.id)
                .values(status=ReservationStatus.RESERVED, order_id=None,
                        discount_amount=discount, expires_at=expires_at)
            )
        else:
            self.session.execute(
                coupon_reservations.insert().values(
                    coupon_id=coupon_id,
                    reservation_key=reservation_key,
                    discount_amount=discount,
                    status=ReservationStatus.RESERVED,
                    expires_at=expires_at,
                    created_at=now,
                )
            )
        logger.info(f"🎫 优惠券预占: #{coupon_id} 抵扣¥{discount} (key={reservation_key})")
        return CouponReservation(
            coupon_id=coupon.id, reservation_key=reservation_key, code=coupon.code,
            name=coupon.name, discount_amount=discount, expires_at=expires_at,
        )

    def _release_rows(self, rows: Iterable, from_status: ReservationStatus) -> int:
        released = 0
        for row in rows:
            result = self.session.execute(
                update(coupon_reservations)
                .where(coupon_reservations.c.id == row.id, coupon_reservations.c.status == from_status)
                .values(status=ReservationStatus.RELEASED)
            )
            if result.rowcount != 1:
                continue
            self.session.execute(
                update(coupons)
                .where(coupons.c.id == row.coupon_id, coupons.c.used_count > 0)
                .values(used_count=coupons.c.used_count - 1)
            )
            released += 1
        return released

    def release(self, reservation_key: str, keep_coupon_ids: Iterable[int] = ()) -> int:
        keep = set(keep_coupon_ids)
        rows = [
            r for r in self.session.execute(
                select(coupon_reservations).where(
                    coupon_reservations.c.reservation_key == reservation_key,
                    coupon_reservations.c.status == ReservationStatus.RESERVED,
                )
            ).fetchall()
            if r.coupon_id not in keep
        ]
        released = self._release_rows(rows, ReservationStatus.RESERVED)
        if released:
            logger.info(f"↩️ 释放优惠券预占 {released} 张 (key={reservation_key})")
        return released

    def confirm(self, reservation_key: str, order_id: int) -> int:
        result = self.session.execute(
            update(coupon_reservations)
            .where(
                coupon_reservations.c.reservation_key == reservation_key,
                coupon_reservations.c.status == ReservationStatus.RESERVED,
            )
            .values(status=ReservationStatus.CONFIRMED, order_id=order_id)
        )
        return result.rowcount

    def release_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now()
        rows = self.session.execute(
            select(coupon_reservations).where(
                coupon_reservations.c.status == ReservationStatus.RESERVED,
                coupon_reservations.c.expires_at < now,
            )
        ).fetchall()
        released = self._release_rows(rows, ReservationStatus.RESERVED)
        if released:
            logger.info(f"⏰ 过期优惠券预占已释放: {released} 张")
        return released

    def release_for_order(self, order_id: int) -> int:
        rows = self.session.execute(
            select(coupon_reservations).where(
                coupon_reservations.c.order_id == order_id,
                coupon_reservations.c.status == ReservationStatus.CONFIRMED,
            )
        ).fetchall()
        return self._release_rows(rows, ReservationStatus.CONFIRMED)

    def reservations_for(self, reservation_key: str) -> List:
        return self.session.execute(
            select(coupon_reservations).where(coupon_reservations.c.reservation_key == reservation_key)
        ).fetchall()
