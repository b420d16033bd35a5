# order_service.py - 下单（计价 + 落库 + 分佣）与订单状态流转
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from commission_distributor import CommissionRecordView, DistributionResult, load_distributor
from config import COMMISSION_RETRY_ATTEMPTS, CommissionStatus, OrderStatus
from coupon_ledger import CouponLedger
from database_setup import commission_records, members, order_items, orders
from exceptions import InsufficientPointsException, OrderException
from pricing_engine import PricingEngine, PricingResult, QuoteRequest
from settings_store import SystemSettings

logger = logging.getLogger(__name__)


class OrderResult(BaseModel):
    order_id: int
    order_no: str
    status: OrderStatus
    pricing: PricingResult
    commission_created: int = 0

    def to_payload(self) -> dict:
        return {
            'order': {'id': self.order_id, 'orderNo': self.order_no, 'status': self.status},
            'pricing': self.pricing.to_payload(),
            'appliedCoupons': self.pricing.applied_coupons,
            'appliedPromotions': self.pricing.applied_promotions,
            'commissionCreated': self.commission_created,
        }


class OrderService:
    def __init__(self, session: Session, settings: SystemSettings, ledger: Optional[CouponLedger] = None,
                 retry_attempts: int = COMMISSION_RETRY_ATTEMPTS):
        self.session = session
        self.settings = settings
        self.ledger = ledger or CouponLedger(session)
        self.retry_attempts = retry_attempts

    @staticmethod
    def _generate_order_no(now: datetime) -> str:
        return f"ORD{now.strftime('%Y%m%d%H%M%S')}{uuid.uuid4().hex[:6].upper()}"

    def _get_order(self, order_no: str, for_update: bool = False):
        stmt = select(orders).where(orders.c.order_no == order_no)
        if for_update:
            stmt = stmt.with_for_update()
        order = self.session.execute(stmt).first()
        if not order:
            raise OrderException(f"订单不存在: {order_no}")
        return order

    def create_order(self, request: QuoteRequest, order_no: Optional[str] = None,
                     now: Optional[datetime] = None) -> OrderResult:
        now = now or datetime.now()
        reservation_key = request.reservation_key or uuid.uuid4().hex
        request = request.model_copy(update={'reservation_key': reservation_key})
        order_no = order_no or self._generate_order_no(now)
        logger.info(f"\n🛒 下单开始: {order_no} | 会员{request.member_id}")

        try:
            pricing = PricingEngine(self.session, self.ledger).quote(request, now=now, commit=False)
            order_id = self._persist_order(order_no, pricing, now)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            self._release_reservations(reservation_key)
            logger.error(f"❌ 下单失败: {order_no} | {e}")
            if isinstance(e, IntegrityError):
                raise OrderException(f"订单号重复: {order_no}") from e
            raise

        logger.info(f"✅ 订单已创建: ID={order_id} | 实付¥{pricing.final_price}")
        created = self.distribute_with_retry(order_id)
        return OrderResult(
            order_id=order_id,
            order_no=order_no,
            status=OrderStatus.CONFIRMED,
            pricing=pricing,
            commission_created=created,
        )

    def _persist_order(self, order_no: str, pricing: PricingResult, now: datetime) -> int:
        order_id = self.session.execute(insert(orders).values(
            order_no=order_no,
            member_id=pricing.member_id,
            original_amount=pricing.original_amount,
            final_price=pricing.final_price,
            shipping_fee=pricing.shipping_fee,
            points_used=pricing.points_used,
            points_discount=pricing.points_discount,
            applied_coupons=pricing.applied_coupons,
            applied_promotions=pricing.applied_promotions,
            reservation_key=pricing.reservation_key,
            status=OrderStatus.CONFIRMED,
            created_at=now,
            updated_at=now,
        )).inserted_primary_key[0]

        self.session.execute(insert(order_items), [
            {
                'order_id': order_id,
                'product_id': line.product_id,
                'sku_id': line.sku_id,
                'quantity': line.quantity,
                'unit_price': line.unit_price,
                'total_price': line.total_price,
            }
            for line in pricing.items
        ])

        if pricing.points_used > 0:
            result = self.session.execute(
                update(members)
                .where(members.c.id == pricing.member_id, members.c.available_points >= pricing.points_used)
                .values(available_points=members.c.available_points - pricing.points_used)
            )
            if result.rowcount != 1:
                raise InsufficientPointsException(pricing.member_id, pricing.points_used)

        confirmed = self.ledger.confirm(pricing.reservation_key, order_id)
        if confirmed != len(pricing.applied_coupons):
            raise OrderException(f"优惠券预占状态异常: 期望{len(pricing.applied_coupons)}张，实际{confirmed}张")

        self.session.execute(
            update(members).where(members.c.id == pricing.member_id).values(last_order_at=now)
        )
        return order_id

    def _release_reservations(self, reservation_key: str) -> None:
        try:
            self.ledger.release(reservation_key)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ 释放优惠券预占失败，等待过期回收: key={reservation_key} | {e}")

    def distribute_with_retry(self, order_id: int) -> int:
        """订单已落库后分佣，失败时幂等重试，不影响订单本身。"""
        order = self.session.execute(select(orders).where(orders.c.id == order_id)).first()
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return load_distributor(self.session, self.settings).distribute(order).created_count
            except Exception as e:
                # 订单已提交，分佣的任何异常都不能影响下单结果
                self.session.rollback()
                logger.warning(
                    f"⚠️ 分佣失败（第{attempt}/{self.retry_attempts}次）: 订单#{order_id} | {e}", exc_info=True
                )
        logger.error(f"❌ 分佣重试耗尽: 订单#{order_id}，可通过重新分佣接口补偿")
        return 0

    def redistribute(self, order_no: str) -> DistributionResult:
        order = self._get_order(order_no)
        if order.status == OrderStatus.CANCELLED:
            logger.info(f"ℹ️ 订单已取消，不再分佣: {order_no}")
            return DistributionResult(order_id=order.id)
        return load_distributor(self.session, self.settings).distribute(order)

    def settle_order(self, order_no: str, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now()
        try:
            order = self._get_order(order_no, for_update=True)
            if order.status == OrderStatus.SETTLED:
                return {'orderNo': order_no, 'status': OrderStatus.SETTLED, 'settledCommissions': 0}
            if order.status != OrderStatus.CONFIRMED:
                raise OrderException(f"订单状态不允许结算: {order_no} ({order.status})")

            result = self.session.execute(
                update(orders)
                .where(orders.c.id == order.id, orders.c.status == OrderStatus.CONFIRMED)
                .values(status=OrderStatus.SETTLED, updated_at=now)
            )
            if result.rowcount != 1:
                raise OrderException(f"订单状态已变更: {order_no}")

            pending = self.session.execute(
                select(commission_records).where(
                    commission_records.c.order_id == order.id,
                    commission_records.c.status == CommissionStatus.PENDING,
                )
            ).fetchall()
            for record in pending:
                amount = Decimal(str(record.amount))
                self.session.execute(
                    update(members)
                    .where(members.c.id == record.beneficiary_member_id)
                    .values(
                        available_commission=members.c.available_commission + amount,
                        total_commission=members.c.total_commission + amount,
                    )
                )
                self.session.execute(
                    update(commission_records)
                    .where(commission_records.c.id == record.id)
                    .values(status=CommissionStatus.SETTLED, updated_at=now)
                )
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.error(f"❌ 订单结算失败: {order_no} | {e}")
            raise

        logger.info(f"✅ 订单已结算: {order_no} | 发放佣金{len(pending)}笔")
        return {'orderNo': order_no, 'status': OrderStatus.SETTLED, 'settledCommissions': len(pending)}

    def cancel_order(self, order_no: str, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now()
        try:
            order = self._get_order(order_no, for_update=True)
            if order.status == OrderStatus.CANCELLED:
                return {'orderNo': order_no, 'status': OrderStatus.CANCELLED, 'releasedCoupons': 0,
                        'cancelledCommissions': 0, 'refundedPoints': 0}
            if order.status == OrderStatus.SETTLED:
                raise OrderException(f"订单已结算，不可取消: {order_no}")

            result = self.session.execute(
                update(orders)
                .where(orders.c.id == order.id, orders.c.status == OrderStatus.CONFIRMED)
                .values(status=OrderStatus.CANCELLED, updated_at=now)
            )
            if result.rowcount != 1:
                raise OrderException(f"订单状态已变更: {order_no}")

            cancelled = self.session.execute(
                update(commission_records)
                .where(
                    commission_records.c.order_id == order.id,
                    commission_records.c.status == CommissionStatus.PENDING,
                )
                .values(status=CommissionStatus.CANCELLED, updated_at=now)
            ).rowcount
            released = self.ledger.release_for_order(order.id)

            points = int(order.points_used or 0)
            if points > 0:
                self.session.execute(
                    update(members)
                    .where(members.c.id == order.member_id)
                    .values(available_points=members.c.available_points + points)
                )
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.error(f"❌ 订单取消失败: {order_no} | {e}")
            raise

        logger.info(f"✅ 订单已取消: {order_no} | 退回优惠券{released}张 | 作废佣金{cancelled}笔 | 退回积分{points}")
        return {'orderNo': order_no, 'status': OrderStatus.CANCELLED, 'releasedCoupons': released,
                'cancelledCommissions': cancelled, 'refundedPoints': points}

    def list_commissions(self, order_no: str) -> List[CommissionRecordView]:
        order = self._get_order(order_no)
        return load_distributor(self.session, self.settings).records_for(order.id)
