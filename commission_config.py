# commission_config.py - 分销等级 × 推荐层级 → 佣金比例
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from database_setup import distributor_level_tiers

logger = logging.getLogger(__name__)


class TierRule(BaseModel):
    rate: Decimal
    min_level: int = 0


class CommissionConfigResolver:
    """纯查表，不产生副作用。configs 的列表下标 0 对应第1层。"""

    def __init__(self, configs: Dict[int, List[Optional[TierRule]]]):
        self.configs = configs

    @classmethod
    def from_rows(cls, rows: Iterable) -> 'CommissionConfigResolver':
        grouped: Dict[int, Dict[int, TierRule]] = {}
        for row in rows:
            grouped.setdefault(int(row.level), {})[int(row.tier_depth)] = TierRule(
                rate=Decimal(str(row.rate)), min_level=int(row.min_level or 0)
            )
        configs = {
            level: [tiers.get(depth) for depth in range(1, max(tiers) + 1)]
            for level, tiers in grouped.items()
        }
        return cls(configs)

    @classmethod
    def load(cls, session: Session) -> 'CommissionConfigResolver':
        rows = session.execute(
            select(distributor_level_tiers).order_by(
                distributor_level_tiers.c.level, distributor_level_tiers.c.tier_depth
            )
        ).fetchall()
        resolver = cls.from_rows(rows)
        logger.debug(f"分销等级配置已加载: {len(resolver.configs)} 个等级")
        return resolver

    def rate_for(self, distributor_level: int, tier_depth: int) -> Optional[Decimal]:
        if tier_depth < 1:
            return None
        tiers = self.configs.get(distributor_level)
        if not tiers or tier_depth > len(tiers):
            return None
        rule = tiers[tier_depth - 1]
        if rule is None or distributor_level < rule.min_level or rule.rate <= 0:
            return None
        return rule.rate
