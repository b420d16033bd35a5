# config.py - 营销计价与分佣引擎配置
from decimal import Decimal, ROUND_HALF_UP
from enum import StrEnum
from typing import Final
import os
from dotenv import load_dotenv

load_dotenv()

# 数据库配置
DB_CONFIG = {
    'host': os.getenv('MYSQL_HOST', '127.0.0.1'),
    'port': int(os.getenv('MYSQL_PORT', 3306)),
    'user': os.getenv('MYSQL_USER'),
    'password': os.getenv('MYSQL_PASSWORD'),
    'database': os.getenv('MYSQL_DATABASE'),
    'charset': 'utf8mb4',
}

# 设置后直接使用该连接串（测试环境使用 sqlite）
DATABASE_URL: Final[str | None] = os.getenv('DATABASE_URL')

# 金额精度
AMOUNT_PLACES: Final[Decimal] = Decimal('0.01')
RATE_PLACES: Final[Decimal] = Decimal('0.0001')

# 积分抵扣：1积分 = POINTS_CONVERSION_RATE 元，最多抵扣原价的 MAX_POINTS_DISCOUNT_RATIO
POINTS_CONVERSION_RATE: Final[Decimal] = Decimal(os.getenv('POINTS_CONVERSION_RATE', '0.01'))
MAX_POINTS_DISCOUNT_RATIO: Final[Decimal] = Decimal(os.getenv('MAX_POINTS_DISCOUNT_RATIO', '0.5'))

DEFAULT_SHIPPING_FEE: Final[Decimal] = Decimal(os.getenv('DEFAULT_SHIPPING_FEE', '10.00'))

# 分佣
MAX_COMMISSION_DEPTH: Final[int] = int(os.getenv('MAX_COMMISSION_DEPTH', 3))
COMMISSION_RETRY_ATTEMPTS: Final[int] = 3

# 优惠券预占
COUPON_RESERVATION_TTL_MINUTES: Final[int] = int(os.getenv('COUPON_RESERVATION_TTL_MINUTES', 30))
RESERVATION_SWEEP_MINUTES: Final[int] = 5

SCHEDULER_ENABLED: Final[bool] = os.getenv('SCHEDULER_ENABLED', '1') == '1'

# 系统设置持久化文件
SETTINGS_FILE: Final[str] = os.getenv(
    'SETTINGS_FILE', os.path.join(os.path.dirname(__file__), 'config', 'app-config.json')
)


def to_amount(value) -> Decimal:
    return Decimal(str(value)).quantize(AMOUNT_PLACES, rounding=ROUND_HALF_UP)


def to_rate(value) -> Decimal:
    return Decimal(str(value)).quantize(RATE_PLACES, rounding=ROUND_HALF_UP)


# 促销类型
class PromotionType(StrEnum):
    FREE_SHIPPING = 'free_shipping'
    FIXED_DISCOUNT = 'fixed_discount'
    PERCENTAGE_DISCOUNT = 'percentage_discount'
    THRESHOLD_DISCOUNT = 'threshold_discount'

class PromotionStatus(StrEnum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    EXPIRED = 'expired'

# 优惠券
class CouponDiscountType(StrEnum):
    FIXED = 'fixed'
    PERCENTAGE = 'percentage'

class CouponStatus(StrEnum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    EXPIRED = 'expired'

class ReservationStatus(StrEnum):
    RESERVED = 'reserved'
    CONFIRMED = 'confirmed'
    RELEASED = 'released'

# 订单状态
class OrderStatus(StrEnum):
    CONFIRMED = 'confirmed'
    SETTLED = 'settled'
    CANCELLED = 'cancelled'

# 佣金状态
class CommissionStatus(StrEnum):
    PENDING = 'pending'
    SETTLED = 'settled'
    CANCELLED = 'cancelled'

# 活跃判定字段
class ActiveCondition(StrEnum):
    LAST_ACTIVE_AT = 'lastActiveAt'
    LAST_ORDER_AT = 'lastOrderAt'

# 优惠明细来源
class DiscountSource(StrEnum):
    PROMOTION = 'promotion'
    COUPON = 'coupon'
    POINTS = 'points'
    SHIPPING = 'shipping'

# 日志配置
LOG_DIR: Final[str] = os.path.join(os.path.dirname(__file__), 'logs')
LOG_FILE: Final[str] = os.path.join(LOG_DIR, 'engine.log')
os.makedirs(LOG_DIR, exist_ok=True)
