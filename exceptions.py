# exceptions.py - 计价与分佣异常
from decimal import Decimal


class PricingException(Exception):
    pass


class ProductNotFound(PricingException):
    def __init__(self, product_id: int, sku_id: int | None = None):
        detail = f"商品不存在或已下架: {product_id}"
        if sku_id is not None:
            detail += f" (SKU {sku_id})"
        super().__init__(detail)
        self.product_id = product_id
        self.sku_id = sku_id


class InvalidQuantity(PricingException):
    def __init__(self, quantity: int):
        super().__init__(f"购买数量必须大于0: {quantity}")
        self.quantity = quantity


class MemberNotFound(PricingException):
    def __init__(self, member_id: int):
        super().__init__(f"会员不存在或已被禁用: {member_id}")
        self.member_id = member_id


class CouponException(PricingException):
    reason = 'coupon_invalid'

    def __init__(self, coupon_id: int, message: str):
        super().__init__(message)
        self.coupon_id = coupon_id


class CouponInvalid(CouponException):
    reason = 'coupon_invalid'

    def __init__(self, coupon_id: int, message: str | None = None):
        super().__init__(coupon_id, message or f"优惠券不可用: {coupon_id}")


class CouponExpired(CouponException):
    reason = 'coupon_expired'

    def __init__(self, coupon_id: int):
        super().__init__(coupon_id, f"优惠券不在有效期内: {coupon_id}")


class CouponExhausted(CouponException):
    reason = 'coupon_exhausted'

    def __init__(self, coupon_id: int):
        super().__init__(coupon_id, f"优惠券已领完: {coupon_id}")


class MinAmountNotMet(CouponException):
    reason = 'min_amount_not_met'

    def __init__(self, coupon_id: int, required: Decimal, actual: Decimal):
        super().__init__(
            coupon_id, f"未达到优惠券使用门槛: 需满¥{required:.2f} | 当前¥{actual:.2f}"
        )
        self.required = required
        self.actual = actual


class OrderException(PricingException):
    pass


class InsufficientPointsException(OrderException):
    def __init__(self, member_id: int, required: int):
        super().__init__(f"积分不足: 会员{member_id} 需要{required}分")
        self.member_id = member_id
        self.required = required


class ReferrerCycleDetected(Exception):
    def __init__(self, order_id: int, member_id: int, depth: int):
        super().__init__(f"推荐关系存在环: 订单#{order_id} 在第{depth}层再次遇到会员{member_id}")
        self.order_id = order_id
        self.member_id = member_id
        self.depth = depth
