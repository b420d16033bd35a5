"""测试公共配置与共享 fixture。"""

import os
import sys
import tempfile
from pathlib import Path

# 测试环境：sqlite + 关闭定时任务
_tmp_dir = Path(tempfile.mkdtemp(prefix="pricing_engine_"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_tmp_dir / 'default.db'}")
os.environ.setdefault("SCHEDULER_ENABLED", "0")
os.environ.setdefault("SETTINGS_FILE", str(_tmp_dir / "app-config.json"))

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import itertools
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, insert, update
from sqlalchemy.orm import sessionmaker

from database_setup import (
    coupons, distributor_level_tiers, members, metadata, product_member_prices, product_skus, products,
    promotions,
)
from settings_store import SettingsStore, SystemSettings

NOW = datetime(2026, 10, 1, 12, 0, 0)
_coupon_codes = itertools.count(1)


class Seeder:
    """直接写库的测试数据构造器，每次写入后提交。"""

    def __init__(self, session, now: datetime):
        self.session = session
        self.now = now

    def _insert(self, table, **values) -> int:
        pk = self.session.execute(insert(table).values(**values)).inserted_primary_key[0]
        self.session.commit()
        return pk

    def member(self, nickname="会员", referrer_id=None, distributor_level=0, points=0,
               last_active_days_ago=0, last_order_days_ago=None, active=True, status="active",
               member_level=0) -> int:
        return self._insert(
            members,
            nickname=nickname,
            referrer_id=referrer_id,
            distributor_level=distributor_level,
            member_level=member_level,
            available_points=points,
            last_active_at=self.now - timedelta(days=last_active_days_ago) if last_active_days_ago is not None else None,
            last_order_at=self.now - timedelta(days=last_order_days_ago) if last_order_days_ago is not None else None,
            active=active,
            status=status,
        )

    def set_referrer(self, member_id: int, referrer_id: int) -> None:
        self.session.execute(update(members).where(members.c.id == member_id).values(referrer_id=referrer_id))
        self.session.commit()

    def product(self, price="200.00", status="active", name="测试商品") -> int:
        return self._insert(products, name=name, price=Decimal(price), status=status)

    def sku(self, product_id: int, price: str, status="active") -> int:
        return self._insert(product_skus, product_id=product_id, name="规格", price=Decimal(price), status=status)

    def member_price(self, product_id: int, member_level: int, price: str, sku_id: int = 0) -> int:
        return self._insert(
            product_member_prices,
            product_id=product_id, member_level=member_level, sku_id=sku_id, price=Decimal(price),
        )

    def coupon(self, value="10", discount_type="fixed", min_order_amount="0", total_count=100,
               used_count=0, max_discount=None, status="active", valid_from_days=-1, valid_to_days=30,
               code=None, product_ids=None, sku_ids=None) -> int:
        return self._insert(
            coupons,
            code=code or f"CPN{next(_coupon_codes)}",
            name=f"券{value}",
            discount_type=discount_type,
            value=Decimal(value),
            min_order_amount=Decimal(min_order_amount),
            max_discount_amount=Decimal(max_discount) if max_discount is not None else None,
            product_ids=product_ids,
            sku_ids=sku_ids,
            total_count=total_count,
            used_count=used_count,
            valid_from=self.now + timedelta(days=valid_from_days),
            valid_to=self.now + timedelta(days=valid_to_days),
            status=status,
        )

    def promotion(self, type_: str, rules: dict, status="active", start_days=-1, end_days=30, name=None) -> int:
        return self._insert(
            promotions,
            name=name or type_,
            type=type_,
            rules=rules,
            start_time=self.now + timedelta(days=start_days),
            end_time=self.now + timedelta(days=end_days),
            status=status,
        )

    def tiers(self, rows) -> None:
        self.session.execute(insert(distributor_level_tiers), [
            {"level": level, "tier_depth": depth, "rate": Decimal(rate), "min_level": min_level}
            for level, depth, rate, min_level in rows
        ])
        self.session.commit()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'engine.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(session, now):
    return Seeder(session, now)


@pytest.fixture
def settings():
    return SystemSettings()


@pytest.fixture
def settings_store(tmp_path):
    store = SettingsStore(str(tmp_path / "config" / "app-config.json"))
    store.load()
    return store
