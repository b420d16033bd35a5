# database_setup.py - 表结构与会话管理
import logging
from datetime import datetime, timedelta
from decimal import Decimal

import pymysql
from sqlalchemy import (
    JSON, BigInteger, Boolean, CheckConstraint, Column, DateTime, Integer, MetaData,
    Numeric, String, Table, UniqueConstraint, create_engine, insert,
)
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import QueuePool

from config import DB_CONFIG, DATABASE_URL

logger = logging.getLogger(__name__)

_engine = None
_SessionFactory = None

metadata = MetaData()

members = Table(
    'members', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('nickname', String(50), nullable=False),
    Column('referrer_id', BigInteger, nullable=True, index=True),
    Column('distributor_level', Integer, nullable=False, default=0),
    Column('member_level', Integer, nullable=False, default=0),
    Column('available_points', BigInteger, nullable=False, default=0),
    Column('available_commission', Numeric(14, 2), nullable=False, default=Decimal('0.00')),
    Column('total_commission', Numeric(14, 2), nullable=False, default=Decimal('0.00')),
    Column('last_active_at', DateTime, nullable=True),
    Column('last_order_at', DateTime, nullable=True),
    Column('active', Boolean, nullable=False, default=True),
    Column('status', String(20), nullable=False, default='active'),
    Column('created_at', DateTime, default=datetime.now),
)

products = Table(
    'products', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('name', String(255), nullable=False),
    Column('price', Numeric(12, 2), nullable=False),
    Column('status', String(20), nullable=False, default='active'),
    Column('created_at', DateTime, default=datetime.now),
)

product_skus = Table(
    'product_skus', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('product_id', BigInteger, nullable=False, index=True),
    Column('name', String(100), nullable=False),
    Column('price', Numeric(12, 2), nullable=False),
    Column('status', String(20), nullable=False, default='active'),
)

# 会员等级价：sku_id = 0 表示整个商品的默认等级价
product_member_prices = Table(
    'product_member_prices', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('product_id', BigInteger, nullable=False),
    Column('member_level', Integer, nullable=False),
    Column('sku_id', BigInteger, nullable=False, default=0),
    Column('price', Numeric(12, 2), nullable=False),
    UniqueConstraint('product_id', 'member_level', 'sku_id', name='uq_product_member_price'),
)

promotions = Table(
    'promotions', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('name', String(100), nullable=False),
    Column('type', String(32), nullable=False),
    Column('rules', JSON, nullable=True),
    Column('start_time', DateTime, nullable=False),
    Column('end_time', DateTime, nullable=False),
    Column('status', String(20), nullable=False, default='active'),
)

coupons = Table(
    'coupons', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('code', String(50), nullable=False, unique=True),
    Column('name', String(100), nullable=False),
    Column('discount_type', String(20), nullable=False),
    Column('value', Numeric(10, 4), nullable=False),
    Column('min_order_amount', Numeric(12, 2), nullable=False, default=Decimal('0.00')),
    Column('max_discount_amount', Numeric(12, 2), nullable=True),
    # 非空时仅限这些商品 / SKU 使用
    Column('product_ids', JSON, nullable=True),
    Column('sku_ids', JSON, nullable=True),
    Column('total_count', Integer, nullable=False),
    Column('used_count', Integer, nullable=False, default=0),
    Column('valid_from', DateTime, nullable=False),
    Column('valid_to', DateTime, nullable=False),
    Column('status', String(20), nullable=False, default='active'),
    CheckConstraint('used_count >= 0 AND used_count <= total_count', name='ck_coupon_usage'),
)

coupon_reservations = Table(
    'coupon_reservations', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('coupon_id', BigInteger, nullable=False),
    Column('reservation_key', String(64), nullable=False, index=True),
    Column('order_id', BigInteger, nullable=True, index=True),
    Column('discount_amount', Numeric(12, 2), nullable=False),
    Column('status', String(20), nullable=False),
    Column('expires_at', DateTime, nullable=False),
    Column('created_at', DateTime, default=datetime.now),
    UniqueConstraint('coupon_id', 'reservation_key', name='uq_coupon_reservation'),
)

orders = Table(
    'orders', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('order_no', String(64), nullable=False, unique=True),
    Column('member_id', BigInteger, nullable=False, index=True),
    Column('original_amount', Numeric(14, 2), nullable=False),
    Column('final_price', Numeric(14, 2), nullable=False),
    Column('shipping_fee', Numeric(10, 2), nullable=False, default=Decimal('0.00')),
    Column('points_used', BigInteger, nullable=False, default=0),
    Column('points_discount', Numeric(14, 2), nullable=False, default=Decimal('0.00')),
    Column('applied_coupons', JSON, nullable=True),
    Column('applied_promotions', JSON, nullable=True),
    Column('reservation_key', String(64), nullable=True),
    Column('status', String(20), nullable=False),
    Column('created_at', DateTime, default=datetime.now),
    Column('updated_at', DateTime, default=datetime.now, onupdate=datetime.now),
)

order_items = Table(
    'order_items', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('order_id', BigInteger, nullable=False, index=True),
    Column('product_id', BigInteger, nullable=False),
    Column('sku_id', BigInteger, nullable=True),
    Column('quantity', Integer, nullable=False),
    Column('unit_price', Numeric(12, 2), nullable=False),
    Column('total_price', Numeric(14, 2), nullable=False),
)

commission_records = Table(
    'commission_records', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('order_id', BigInteger, nullable=False),
    Column('beneficiary_member_id', BigInteger, nullable=False, index=True),
    Column('buyer_member_id', BigInteger, nullable=False),
    Column('tier_depth', Integer, nullable=False),
    Column('rate', Numeric(6, 4), nullable=False),
    Column('amount', Numeric(14, 2), nullable=False),
    Column('status', String(20), nullable=False),
    Column('created_at', DateTime, default=datetime.now),
    Column('updated_at', DateTime, default=datetime.now, onupdate=datetime.now),
    UniqueConstraint('order_id', 'beneficiary_member_id', name='uq_commission_order_beneficiary'),
)

distributor_level_tiers = Table(
    'distributor_level_tiers', metadata,
    Column('id', BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True),
    Column('level', Integer, nullable=False),
    Column('tier_depth', Integer, nullable=False),
    Column('rate', Numeric(6, 4), nullable=False),
    Column('min_level', Integer, nullable=False, default=0),
    UniqueConstraint('level', 'tier_depth', name='uq_level_tier'),
)


def _connection_url() -> str:
    if DATABASE_URL:
        return DATABASE_URL
    return (
        f"mysql+pymysql://{DB_CONFIG['user']}:{DB_CONFIG['password']}"
        f"@{DB_CONFIG['host']}:{DB_CONFIG['port']}/{DB_CONFIG['database']}"
        f"?charset={DB_CONFIG['charset']}"
    )


def get_engine():
    global _engine
    if _engine is None:
        try:
            url = _connection_url()
            if url.startswith('sqlite'):
                _engine = create_engine(url, connect_args={"check_same_thread": False}, echo=False)
            else:
                _engine = create_engine(
                    url,
                    poolclass=QueuePool,
                    pool_size=20,
                    max_overflow=30,
                    pool_timeout=30,
                    pool_pre_ping=True,
                    echo=False
                )
            logger.info("✅ SQLAlchemy 引擎已创建")
        except Exception as e:
            logger.error(f"❌ SQLAlchemy 引擎创建失败: {e}")
            raise
    return _engine


def get_session_factory():
    global _SessionFactory
    if _SessionFactory is None:
        engine = get_engine()
        _SessionFactory = sessionmaker(
            bind=engine,
            autoflush=False,
            expire_on_commit=False
        )
        logger.info("✅ 会话工厂已创建")
    return _SessionFactory


def get_db_session():
    factory = get_session_factory()
    db = scoped_session(factory)()
    try:
        yield db
    finally:
        db.close()


class DatabaseManager:
    def __init__(self):
        if _connection_url().startswith('mysql'):
            self._ensure_database_exists()

    def _ensure_database_exists(self):
        try:
            temp_config = DB_CONFIG.copy()
            database = temp_config.pop('database')
            conn = pymysql.connect(**temp_config)
            cursor = conn.cursor()
            cursor.execute(
                f"CREATE DATABASE IF NOT EXISTS `{database}` "
                f"DEFAULT CHARSET utf8mb4 COLLATE utf8mb4_unicode_ci"
            )
            conn.commit()
            conn.close()
            logger.info(f"✅ 数据库 `{database}` 已就绪")
        except Exception as e:
            logger.error(f"❌ 数据库初始化失败: {e}")
            raise

    def init_all_tables(self, conn):
        logger.info("=== 初始化数据库表结构 ===")
        metadata.create_all(conn)
        for table_name in metadata.tables:
            logger.info(f"✅ 表 `{table_name}` 已创建/确认")
        logger.info("✅ 所有表结构初始化完成")

    def create_test_data(self, conn, now: datetime | None = None) -> dict:
        """创建营销场景测试数据：商品200元、满50减10优惠券、满99包邮、三级推荐链"""
        logger.info("--- 创建测试数据 ---")
        now = now or datetime.now()
        next_month = now + timedelta(days=30)

        product_id = conn.execute(
            insert(products).values(name='[种子] 单价200元', price=Decimal('200.00'), status='active')
        ).inserted_primary_key[0]
        sku_id = conn.execute(
            insert(product_skus).values(product_id=product_id, name='默认规格', price=Decimal('200.00'), status='active')
        ).inserted_primary_key[0]
        conn.execute(insert(product_member_prices).values(
            product_id=product_id, member_level=1, sku_id=0, price=Decimal('180.00')
        ))

        conn.execute(insert(promotions).values(
            name='[种子] 满99包邮', type='free_shipping', rules={'minAmount': 99},
            start_time=now - timedelta(days=1), end_time=next_month, status='active'
        ))
        coupon_id = conn.execute(insert(coupons).values(
            code=f"SEED10_{int(now.timestamp())}", name='[种子] 10元券', discount_type='fixed',
            value=Decimal('10'), min_order_amount=Decimal('50'), total_count=100, used_count=0,
            valid_from=now - timedelta(days=1), valid_to=next_month, status='active'
        )).inserted_primary_key[0]

        # 推荐链: 买家 -> 一级分销商 -> 二级分销商
        upper_id = conn.execute(insert(members).values(
            nickname='二级分销商', distributor_level=2, last_active_at=now, active=True
        )).inserted_primary_key[0]
        direct_id = conn.execute(insert(members).values(
            nickname='一级分销商', referrer_id=upper_id, distributor_level=1, last_active_at=now, active=True
        )).inserted_primary_key[0]
        buyer_id = conn.execute(insert(members).values(
            nickname='测试买家', referrer_id=direct_id, available_points=5000, last_active_at=now, active=True
        )).inserted_primary_key[0]

        conn.execute(insert(distributor_level_tiers), [
            {'level': 1, 'tier_depth': 1, 'rate': Decimal('0.05'), 'min_level': 1},
            {'level': 2, 'tier_depth': 1, 'rate': Decimal('0.08'), 'min_level': 1},
            {'level': 2, 'tier_depth': 2, 'rate': Decimal('0.03'), 'min_level': 2},
        ])

        logger.info(f"✅ 测试数据创建完成 | 商品ID: {product_id} | 优惠券ID: {coupon_id} | 买家ID: {buyer_id}")
        return {
            'product_id': product_id,
            'sku_id': sku_id,
            'coupon_id': coupon_id,
            'buyer_id': buyer_id,
            'referrer_ids': [direct_id, upper_id],
        }
