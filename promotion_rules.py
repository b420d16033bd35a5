# promotion_rules.py - 促销规则（按类型区分的规则载荷）与可用促销筛选
import logging
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from typing_extensions import assert_never

from config import PromotionStatus, PromotionType, to_amount

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


class _RuleModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class RuleBase(_RuleModel):
    # 非空时仅对包含这些商品 / SKU 的订单生效
    product_ids: List[int] = Field(default_factory=list)
    sku_ids: List[int] = Field(default_factory=list)
    min_quantity: int = Field(default=0, ge=0)


class FreeShippingRules(RuleBase):
    kind: Literal['free_shipping'] = 'free_shipping'
    min_amount: Decimal = Field(default=ZERO, ge=0)


class FixedDiscountRules(RuleBase):
    kind: Literal['fixed_discount'] = 'fixed_discount'
    discount_amount: Decimal = Field(gt=0)
    min_amount: Decimal = Field(default=ZERO, ge=0)


class PercentageDiscountRules(RuleBase):
    """discount_rate 为实付比例，0.9 即九折。"""
    kind: Literal['percentage_discount'] = 'percentage_discount'
    discount_rate: Decimal = Field(gt=0, le=1)
    max_discount: Optional[Decimal] = Field(default=None, gt=0)
    min_amount: Decimal = Field(default=ZERO, ge=0)


class ThresholdTier(_RuleModel):
    """满减档位：condition_type 为 amount 时按金额，为 quantity 时按件数。"""
    condition_type: Literal['amount', 'quantity'] = 'amount'
    min_amount: Decimal = Field(default=ZERO, ge=0)
    min_quantity: Optional[int] = Field(default=None, ge=1)
    discount_amount: Decimal = Field(gt=0)

    @model_validator(mode='after')
    def check_condition(self):
        if self.condition_type == 'quantity' and self.min_quantity is None:
            raise ValueError("按件数满减的档位必须提供 minQuantity")
        return self

    def reached(self, amount: Decimal, quantity: int) -> bool:
        if self.condition_type == 'quantity':
            return quantity >= self.min_quantity
        return amount >= self.min_amount


class ThresholdDiscountRules(RuleBase):
    kind: Literal['threshold_discount'] = 'threshold_discount'
    tiers: List[ThresholdTier] = Field(min_length=1)


PromotionRules = Annotated[
    Union[FreeShippingRules, FixedDiscountRules, PercentageDiscountRules, ThresholdDiscountRules],
    Field(discriminator='kind'),
]


class Promotion(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    name: str = ''
    rules: PromotionRules
    start_time: datetime
    end_time: datetime
    status: PromotionStatus = PromotionStatus.ACTIVE

    @property
    def type(self) -> PromotionType:
        return PromotionType(self.rules.kind)

    @classmethod
    def from_row(cls, row) -> 'Promotion':
        return cls(
            id=row.id,
            name=row.name,
            rules={**(row.rules or {}), 'kind': row.type},
            start_time=row.start_time,
            end_time=row.end_time,
            status=row.status,
        )

    def is_live(self, now: datetime) -> bool:
        return self.status == PromotionStatus.ACTIVE and self.start_time <= now < self.end_time

    def in_scope(self, product_ids: Optional[Iterable[int]], sku_ids: Optional[Iterable[int]] = None) -> bool:
        if self.rules.product_ids and product_ids is not None:
            if not set(self.rules.product_ids) & set(product_ids):
                return False
        if self.rules.sku_ids and sku_ids is not None:
            if not set(self.rules.sku_ids) & set(sku_ids):
                return False
        return True


def _best_tier(tiers: List[ThresholdTier], amount: Decimal, quantity: int) -> Optional[ThresholdTier]:
    """金额档与件数档各取达到的最高档，再取两者中减得更多的一个。"""
    best = []
    amount_tiers = [t for t in tiers if t.condition_type == 'amount' and t.reached(amount, quantity)]
    if amount_tiers:
        best.append(max(amount_tiers, key=lambda t: (t.min_amount, t.discount_amount)))
    quantity_tiers = [t for t in tiers if t.condition_type == 'quantity' and t.reached(amount, quantity)]
    if quantity_tiers:
        best.append(max(quantity_tiers, key=lambda t: (t.min_quantity, t.discount_amount)))
    if not best:
        return None
    return max(best, key=lambda t: t.discount_amount)


def qualifies(rules: PromotionRules, order_amount: Decimal, quantity: int = 0) -> bool:
    if quantity < rules.min_quantity:
        return False
    match rules:
        case FreeShippingRules() | FixedDiscountRules() | PercentageDiscountRules():
            return order_amount >= rules.min_amount
        case ThresholdDiscountRules():
            return _best_tier(rules.tiers, order_amount, quantity) is not None
        case _:
            assert_never(rules)


def discount_for(rules: PromotionRules, amount: Decimal, quantity: int = 0) -> Decimal:
    """促销对商品小计的优惠金额；包邮不影响小计。"""
    if amount <= 0:
        return ZERO
    match rules:
        case FreeShippingRules():
            return ZERO
        case FixedDiscountRules():
            discount = rules.discount_amount
        case PercentageDiscountRules():
            discount = amount * (Decimal('1') - rules.discount_rate)
            if rules.max_discount is not None:
                discount = min(discount, rules.max_discount)
        case ThresholdDiscountRules():
            tier = _best_tier(rules.tiers, amount, quantity)
            discount = tier.discount_amount if tier else ZERO
        case _:
            assert_never(rules)
    return to_amount(min(discount, amount))


# 金额类促销的计算顺序
AMOUNT_TYPE_ORDER = (
    PromotionType.FIXED_DISCOUNT,
    PromotionType.PERCENTAGE_DISCOUNT,
    PromotionType.THRESHOLD_DISCOUNT,
)


class PromotionEvaluator:
    def select_applicable(self, order_amount: Decimal, candidates: Iterable[Promotion],
                          now: datetime, product_ids: Optional[Iterable[int]] = None,
                          sku_ids: Optional[Iterable[int]] = None, quantity: int = 0) -> List[Promotion]:
        """按 立减 → 折扣 → 满减 的顺序返回可叠加的促销，包邮单独排在最后。

        同类型促销互斥，只保留对买家优惠最大的一个（相同时取ID较小者）。
        quantity 为订单商品总件数，用于起购件数和按件数满减。
        """
        product_ids = list(product_ids) if product_ids is not None else None
        sku_ids = list(sku_ids) if sku_ids is not None else None
        eligible = [
            p for p in candidates
            if p.is_live(now) and p.in_scope(product_ids, sku_ids) and qualifies(p.rules, order_amount, quantity)
        ]

        selected: List[Promotion] = []
        for promo_type in AMOUNT_TYPE_ORDER:
            same_type = [p for p in eligible if p.type == promo_type]
            if not same_type:
                continue
            best = max(same_type, key=lambda p: (discount_for(p.rules, order_amount, quantity), -p.id))
            if discount_for(best.rules, order_amount, quantity) > 0:
                selected.append(best)
            if len(same_type) > 1:
                logger.debug(f"同类促销互斥 {promo_type}: 保留#{best.id}，丢弃{[p.id for p in same_type if p.id != best.id]}")

        shipping = [p for p in eligible if p.type == PromotionType.FREE_SHIPPING]
        if shipping:
            selected.append(min(shipping, key=lambda p: p.id))
        return selected
