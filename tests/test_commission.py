"""
分佣比例解析与多级分佣测试

覆盖范围:
- 按 等级 × 层级 查比例，含最低等级限制
- 直推 / 间推 场景
- 开启活跃检测时跳过非活跃推荐人
- 推荐环与最大层级
- 重复分佣幂等
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from commission_config import CommissionConfigResolver, TierRule
from commission_distributor import CommissionDistributor, load_distributor
from database_setup import commission_records
from settings_store import SystemSettings


def make_order(order_id, member_id, final_price):
    return SimpleNamespace(id=order_id, member_id=member_id, final_price=Decimal(final_price))


def record_count(session):
    return len(session.execute(select(commission_records)).fetchall())


class TestCommissionConfigResolver:
    """比例查询。"""

    @pytest.fixture
    def resolver(self):
        return CommissionConfigResolver({
            1: [TierRule(rate=Decimal("0.05"), min_level=1)],
            2: [TierRule(rate=Decimal("0.08"), min_level=1), TierRule(rate=Decimal("0.03"), min_level=2)],
            3: [None, TierRule(rate=Decimal("0.04"), min_level=3)],
        })

    def test_known_rate(self, resolver):
        assert resolver.rate_for(2, 1) == Decimal("0.08")
        assert resolver.rate_for(2, 2) == Decimal("0.03")

    def test_depth_beyond_configured_tiers(self, resolver):
        assert resolver.rate_for(1, 2) is None

    def test_unknown_level(self, resolver):
        assert resolver.rate_for(0, 1) is None
        assert resolver.rate_for(9, 1) is None

    def test_gap_in_tiers(self, resolver):
        assert resolver.rate_for(3, 1) is None
        assert resolver.rate_for(3, 2) == Decimal("0.04")

    def test_invalid_depth(self, resolver):
        assert resolver.rate_for(2, 0) is None

    def test_min_level_gate(self):
        resolver = CommissionConfigResolver({1: [TierRule(rate=Decimal("0.05"), min_level=2)]})
        assert resolver.rate_for(1, 1) is None

    def test_load_from_table(self, session, seed):
        seed.tiers([(1, 1, "0.05", 1), (2, 1, "0.08", 1), (2, 2, "0.03", 2)])
        resolver = CommissionConfigResolver.load(session)
        assert resolver.rate_for(1, 1) == Decimal("0.05")
        assert resolver.rate_for(2, 2) == Decimal("0.03")
        assert resolver.rate_for(1, 2) is None


class TestDistribute:
    """沿推荐链分佣。"""

    @pytest.fixture
    def tiers(self, seed):
        seed.tiers([(1, 1, "0.05", 1), (2, 1, "0.08", 1), (2, 2, "0.03", 2)])

    def test_direct_referrer_only_qualifying_tier(self, session, seed, tiers, settings):
        m2 = seed.member(nickname="M2", distributor_level=1)
        m1 = seed.member(nickname="M1", referrer_id=m2, distributor_level=1)
        buyer = seed.member(nickname="买家", referrer_id=m1)

        result = load_distributor(session, settings).distribute(make_order(1, buyer, "100.00"))

        assert result.created_count == 1
        assert [(r.beneficiary_member_id, r.amount, r.tier_depth) for r in result.records] == [
            (m1, Decimal("5.00"), 1)
        ]

    def test_two_tiers(self, session, seed, tiers, settings):
        upper = seed.member(distributor_level=2)
        direct = seed.member(referrer_id=upper, distributor_level=1)
        buyer = seed.member(referrer_id=direct)

        result = load_distributor(session, settings).distribute(make_order(1, buyer, "190.00"))

        amounts = {r.beneficiary_member_id: r.amount for r in result.records}
        assert amounts == {direct: Decimal("9.50"), upper: Decimal("5.70")}
        assert result.created_count == 2

    def test_no_referrer(self, session, seed, tiers, settings):
        buyer = seed.member()
        result = load_distributor(session, settings).distribute(make_order(1, buyer, "100.00"))
        assert result.created_count == 0
        assert result.records == []
        assert record_count(session) == 0

    def test_inactive_referrer_excluded_when_check_enabled(self, session, seed, tiers):
        m1 = seed.member(distributor_level=1, last_active_days_ago=40, active=False)
        buyer = seed.member(referrer_id=m1)
        settings = SystemSettings(active_member_check_enabled=True, active_member_check_days=30)

        result = load_distributor(session, settings).distribute(make_order(1, buyer, "100.00"))

        assert result.created_count == 0

    def test_inactive_flag_ignored_when_check_disabled(self, session, seed, tiers, settings):
        m1 = seed.member(distributor_level=1, active=False)
        buyer = seed.member(referrer_id=m1)
        result = load_distributor(session, settings).distribute(make_order(1, buyer, "100.00"))
        assert result.created_count == 1

    def test_cycle_terminates(self, session, seed, tiers, settings):
        a = seed.member(nickname="A", distributor_level=2)
        b = seed.member(nickname="B", referrer_id=a, distributor_level=2)
        seed.set_referrer(a, b)

        result = load_distributor(session, settings).distribute(make_order(1, a, "100.00"))

        assert result.cycle_detected is True
        assert [r.beneficiary_member_id for r in result.records] == [b]
        assert result.created_count == 1

    def test_self_referral_cycle(self, session, seed, tiers, settings):
        a = seed.member(distributor_level=2)
        seed.set_referrer(a, a)
        result = load_distributor(session, settings).distribute(make_order(1, a, "100.00"))
        assert result.cycle_detected is True
        assert result.created_count == 0

    def test_depth_cap(self, session, seed, settings):
        seed.tiers([(5, d, "0.01", 0) for d in range(1, 6)])
        top = seed.member(distributor_level=5)
        chain = [top]
        for _ in range(4):
            chain.append(seed.member(referrer_id=chain[-1], distributor_level=5))
        buyer = seed.member(referrer_id=chain[-1])

        distributor = CommissionDistributor(session, CommissionConfigResolver.load(session), settings, max_depth=3)
        result = distributor.distribute(make_order(1, buyer, "100.00"))

        assert result.created_count == 3
        assert sorted(r.tier_depth for r in result.records) == [1, 2, 3]

    def test_idempotent(self, session, seed, tiers, settings):
        upper = seed.member(distributor_level=2)
        direct = seed.member(referrer_id=upper, distributor_level=1)
        buyer = seed.member(referrer_id=direct)
        order = make_order(1, buyer, "100.00")

        first = load_distributor(session, settings).distribute(order)
        second = load_distributor(session, settings).distribute(order)

        assert first.created_count == 2
        assert second.created_count == 0
        assert {r.id for r in first.records} == {r.id for r in second.records}
        assert record_count(session) == 2

    def test_zero_amount_not_recorded(self, session, seed, tiers, settings):
        m1 = seed.member(distributor_level=1)
        buyer = seed.member(referrer_id=m1)
        result = load_distributor(session, settings).distribute(make_order(1, buyer, "0.00"))
        assert result.created_count == 0
