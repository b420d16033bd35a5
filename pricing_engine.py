# pricing_engine.py - 订单计价：促销 → 优惠券 → 积分，输出确定性的报价
import logging
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import (
    DEFAULT_SHIPPING_FEE, MAX_POINTS_DISCOUNT_RATIO, POINTS_CONVERSION_RATE,
    DiscountSource, PromotionStatus, PromotionType, to_amount, to_rate,
)
from coupon_ledger import CouponLedger
from database_setup import members, product_member_prices, product_skus, products, promotions
from exceptions import CouponException, InvalidQuantity, MemberNotFound, ProductNotFound
from promotion_rules import Promotion, PromotionEvaluator, discount_for

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderLine(CamelModel):
    product_id: int
    sku_id: Optional[int] = None
    quantity: int


class PointUsage(CamelModel):
    points: int = Field(default=0, ge=0)


class QuoteRequest(CamelModel):
    member_id: int
    items: List[OrderLine] = Field(min_length=1)
    applied_coupons: List[int] = Field(default_factory=list)
    applied_promotions: List[int] = Field(default_factory=list)
    point_usage: Optional[PointUsage] = None
    reservation_key: Optional[str] = None


class DiscountLine(CamelModel):
    """source 为 shipping 的行是免掉的运费（reason='shipping_fee'），不计入 savings。"""
    source: DiscountSource
    id: Optional[int] = None
    name: Optional[str] = None
    amount: Decimal = ZERO
    reason: Optional[str] = None
    skipped: bool = False


class PricedLine(CamelModel):
    product_id: int
    sku_id: Optional[int] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class PricingResult(CamelModel):
    member_id: int
    original_amount: Decimal
    final_price: Decimal
    savings: Decimal
    savings_rate: Decimal
    shipping_fee: Decimal
    discounts: List[DiscountLine]
    applied_coupons: List[int]
    applied_promotions: List[int]
    points_used: int = 0
    points_discount: Decimal = ZERO
    reservation_key: str
    items: List[PricedLine]

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, mode='json')


class PricingEngine:
    def __init__(self, session: Session, ledger: Optional[CouponLedger] = None,
                 evaluator: Optional[PromotionEvaluator] = None,
                 shipping_fee: Decimal = DEFAULT_SHIPPING_FEE,
                 points_rate: Decimal = POINTS_CONVERSION_RATE,
                 max_points_ratio: Decimal = MAX_POINTS_DISCOUNT_RATIO):
        self.session = session
        self.ledger = ledger or CouponLedger(session)
        self.evaluator = evaluator or PromotionEvaluator()
        self.shipping_fee = to_amount(shipping_fee)
        self.points_rate = points_rate
        self.max_points_ratio = max_points_ratio

    def _load_member(self, member_id: int):
        member = self.session.execute(
            select(members).where(members.c.id == member_id)
        ).first()
        if not member or member.status != 'active':
            raise MemberNotFound(member_id)
        return member

    def _member_price(self, product_id: int, member_level: int, sku_id: Optional[int]) -> Optional[Decimal]:
        row = self.session.execute(
            select(product_member_prices.c.price).where(
                product_member_prices.c.product_id == product_id,
                product_member_prices.c.member_level == member_level,
                product_member_prices.c.sku_id == (sku_id or 0),
            )
        ).first()
        return Decimal(str(row.price)) if row else None

    def _price_lines(self, items: List[OrderLine], member_level: int = 0) -> List[PricedLine]:
        """单价只取库内价格：会员等级价 > SKU价 > 商品价。"""
        for item in items:
            if item.quantity <= 0:
                raise InvalidQuantity(item.quantity)

        priced = []
        for item in items:
            product = self.session.execute(
                select(products).where(products.c.id == item.product_id)
            ).first()
            if not product or product.status != 'active':
                raise ProductNotFound(item.product_id)

            unit_price = Decimal(str(product.price))
            if item.sku_id is not None:
                sku = self.session.execute(
                    select(product_skus).where(
                        product_skus.c.id == item.sku_id,
                        product_skus.c.product_id == item.product_id,
                    )
                ).first()
                if not sku or sku.status != 'active':
                    raise ProductNotFound(item.product_id, item.sku_id)
                unit_price = Decimal(str(sku.price))
            member_price = self._member_price(item.product_id, member_level, item.sku_id)
            if member_price is not None:
                unit_price = member_price

            unit_price = to_amount(unit_price)
            priced.append(PricedLine(
                product_id=item.product_id,
                sku_id=item.sku_id,
                quantity=item.quantity,
                unit_price=unit_price,
                total_price=to_amount(unit_price * item.quantity),
            ))
        return priced

    def _load_promotions(self, promotion_ids: List[int], now: datetime) -> List[Promotion]:
        """指定了促销ID时只评估这些促销，否则评估全部进行中的促销。"""
        stmt = select(promotions)
        if promotion_ids:
            stmt = stmt.where(promotions.c.id.in_(promotion_ids))
        else:
            stmt = stmt.where(
                promotions.c.status == PromotionStatus.ACTIVE,
                promotions.c.start_time <= now,
                promotions.c.end_time > now,
            )

        candidates = []
        for row in self.session.execute(stmt.order_by(promotions.c.id)).fetchall():
            try:
                candidates.append(Promotion.from_row(row))
            except ValidationError as e:
                logger.warning(f"⚠️ 促销#{row.id} 规则配置无效，已忽略: {e.errors()[:1]}")
        return candidates

    def quote(self, request: QuoteRequest, now: Optional[datetime] = None, commit: bool = True) -> PricingResult:
        now = now or datetime.now()
        reservation_key = request.reservation_key or uuid.uuid4().hex
        logger.info(f"\n🧾 计价开始: 会员{request.member_id} | 商品行{len(request.items)} | key={reservation_key}")

        try:
            member = self._load_member(request.member_id)
            lines = self._price_lines(request.items, int(member.member_level or 0))
            original_amount = to_amount(sum((line.total_price for line in lines), ZERO))
            total_quantity = sum(line.quantity for line in lines)
            product_ids = [line.product_id for line in lines]
            sku_ids = [line.sku_id for line in lines if line.sku_id is not None]

            remaining = original_amount
            shipping_fee = self.shipping_fee
            discounts: List[DiscountLine] = []
            applied_promotions: List[int] = []
            applied_coupons: List[int] = []

            # 1. 促销
            candidates = self._load_promotions(request.applied_promotions, now)
            selected = self.evaluator.select_applicable(
                original_amount, candidates, now, product_ids, sku_ids=sku_ids, quantity=total_quantity
            )
            for promo in selected:
                if promo.type == PromotionType.FREE_SHIPPING:
                    discounts.append(DiscountLine(
                        source=DiscountSource.SHIPPING, id=promo.id, name=promo.name,
                        amount=shipping_fee, reason='shipping_fee',
                    ))
                    shipping_fee = ZERO
                    applied_promotions.append(promo.id)
                    continue
                amount = min(discount_for(promo.rules, remaining, total_quantity), remaining)
                if amount <= 0:
                    continue
                remaining -= amount
                discounts.append(DiscountLine(
                    source=DiscountSource.PROMOTION, id=promo.id, name=promo.name, amount=amount
                ))
                applied_promotions.append(promo.id)

            # 2. 优惠券（逐张预占，失败的券记录原因后跳过）
            requested_coupons = list(dict.fromkeys(request.applied_coupons))
            for coupon_id in requested_coupons:
                if remaining <= 0:
                    discounts.append(DiscountLine(
                        source=DiscountSource.COUPON, id=coupon_id, reason='nothing_to_discount', skipped=True
                    ))
                    continue
                try:
                    reservation = self.ledger.reserve(
                        coupon_id, remaining, reservation_key, now, product_ids=product_ids, sku_ids=sku_ids
                    )
                except CouponException as e:
                    logger.warning(f"⚠️ 优惠券#{coupon_id} 跳过: {e}")
                    discounts.append(DiscountLine(
                        source=DiscountSource.COUPON, id=coupon_id, reason=e.reason, skipped=True
                    ))
                    continue
                amount = min(reservation.discount_amount, remaining)
                remaining -= amount
                discounts.append(DiscountLine(
                    source=DiscountSource.COUPON, id=coupon_id, name=reservation.name, amount=amount
                ))
                applied_coupons.append(coupon_id)

            # 同一 key 下未被采用的旧预占一并释放
            self.ledger.release(reservation_key, keep_coupon_ids=applied_coupons)

            # 3. 积分
            points_used, points_discount = 0, ZERO
            requested_points = request.point_usage.points if request.point_usage else 0
            if requested_points > 0:
                points_used, points_discount = self._redeem_points(
                    requested_points, int(member.available_points or 0), original_amount, remaining
                )
                if points_used > 0:
                    remaining -= points_discount
                    discounts.append(DiscountLine(source=DiscountSource.POINTS, amount=points_discount))
                else:
                    discounts.append(DiscountLine(
                        source=DiscountSource.POINTS, reason='points_unavailable', skipped=True
                    ))

            final_price = max(ZERO, to_amount(remaining))
            savings = original_amount - final_price
            savings_rate = to_rate(savings / original_amount) if original_amount > 0 else to_rate(0)

            if commit:
                self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"✅ 计价完成: 原价¥{original_amount} → 实付¥{final_price} | 节省¥{savings} ({savings_rate}) | 运费¥{shipping_fee}"
        )
        return PricingResult(
            member_id=request.member_id,
            original_amount=original_amount,
            final_price=final_price,
            savings=savings,
            savings_rate=savings_rate,
            shipping_fee=shipping_fee,
            discounts=discounts,
            applied_coupons=applied_coupons,
            applied_promotions=applied_promotions,
            points_used=points_used,
            points_discount=points_discount,
            reservation_key=reservation_key,
            items=lines,
        )

    def _redeem_points(self, requested: int, available: int, original_amount: Decimal,
                       remaining: Decimal) -> tuple[int, Decimal]:
        if self.points_rate <= 0:
            return 0, ZERO
        max_redeemable = min(to_amount(original_amount * self.max_points_ratio), remaining)
        if max_redeemable <= 0:
            return 0, ZERO
        max_points = int((max_redeemable / self.points_rate).to_integral_value(rounding=ROUND_FLOOR))
        points = min(requested, available, max_points)
        if points <= 0:
            return 0, ZERO
        discount = to_amount(min(points * self.points_rate, max_redeemable))
        logger.info(f"💳 积分抵扣: {points}分 = ¥{discount}")
        return points, discount
