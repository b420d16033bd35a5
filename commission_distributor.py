# commission_distributor.py - 沿推荐链向上分配多级佣金
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from commission_config import CommissionConfigResolver
from config import MAX_COMMISSION_DEPTH, CommissionStatus, to_amount
from database_setup import commission_records, members
from exceptions import ReferrerCycleDetected
from settings_store import SystemSettings

logger = logging.getLogger(__name__)


class CommissionRecordView(BaseModel):
    id: int
    order_id: int
    beneficiary_member_id: int
    buyer_member_id: int
    tier_depth: int
    rate: Decimal
    amount: Decimal
    status: CommissionStatus

    @classmethod
    def from_row(cls, row) -> 'CommissionRecordView':
        return cls(
            id=row.id,
            order_id=row.order_id,
            beneficiary_member_id=row.beneficiary_member_id,
            buyer_member_id=row.buyer_member_id,
            tier_depth=row.tier_depth,
            rate=Decimal(str(row.rate)),
            amount=Decimal(str(row.amount)),
            status=row.status,
        )


class DistributionResult(BaseModel):
    order_id: int
    created_count: int = 0
    records: List[CommissionRecordView] = []
    cycle_detected: bool = False


class CommissionDistributor:
    def __init__(self, session: Session, resolver: CommissionConfigResolver,
                 settings: SystemSettings, max_depth: int = MAX_COMMISSION_DEPTH):
        self.session = session
        self.resolver = resolver
        self.settings = settings
        self.max_depth = max_depth

    def _load_member(self, member_id: int):
        return self.session.execute(
            select(members).where(members.c.id == member_id)
        ).first()

    def walk_referrers(self, order_id: int, buyer_id: int) -> Tuple[List[Tuple[int, object]], bool]:
        """返回 [(层级, 上级会员)]；遇到重复会员或达到最大层级即停止。"""
        chain: List[Tuple[int, object]] = []
        visited = {buyer_id}
        current = self._load_member(buyer_id)
        depth = 0

        while current is not None and current.referrer_id and depth < self.max_depth:
            depth += 1
            referrer_id = current.referrer_id
            if referrer_id in visited:
                logger.warning(f"⚠️ {ReferrerCycleDetected(order_id, referrer_id, depth)}，停止向上遍历")
                return chain, True
            visited.add(referrer_id)

            ancestor = self._load_member(referrer_id)
            if ancestor is None:
                logger.warning(f"⚠️ 推荐人不存在: {referrer_id}（订单#{order_id} 第{depth}层）")
                break
            chain.append((depth, ancestor))
            current = ancestor
        return chain, False

    def _existing_record(self, order_id: int, beneficiary_id: int):
        return self.session.execute(
            select(commission_records).where(
                commission_records.c.order_id == order_id,
                commission_records.c.beneficiary_member_id == beneficiary_id,
            )
        ).first()

    def _distribute_once(self, order) -> DistributionResult:
        order_id = order.id
        final_price = Decimal(str(order.final_price))
        chain, cycle_detected = self.walk_referrers(order_id, order.member_id)
        result = DistributionResult(order_id=order_id, cycle_detected=cycle_detected)

        if not chain:
            logger.info(f"ℹ️ 订单#{order_id} 买家无推荐人，无需分佣")
            return result

        now = datetime.now()
        for depth, ancestor in chain:
            if self.settings.active_member_check_enabled and not ancestor.active:
                logger.info(f"⏭️ 第{depth}层 会员{ancestor.id} 非活跃，跳过")
                continue
            rate = self.resolver.rate_for(ancestor.distributor_level, depth)
            if rate is None:
                logger.info(f"⏭️ 第{depth}层 会员{ancestor.id} 等级{ancestor.distributor_level} 不满足条件，跳过")
                continue
            amount = to_amount(final_price * rate)
            if amount <= 0:
                continue

            existing = self._existing_record(order_id, ancestor.id)
            if existing:
                result.records.append(CommissionRecordView.from_row(existing))
                continue

            self.session.execute(insert(commission_records).values(
                order_id=order_id,
                beneficiary_member_id=ancestor.id,
                buyer_member_id=order.member_id,
                tier_depth=depth,
                rate=rate,
                amount=amount,
                status=CommissionStatus.PENDING,
                created_at=now,
                updated_at=now,
            ))
            result.records.append(CommissionRecordView.from_row(self._existing_record(order_id, ancestor.id)))
            result.created_count += 1
            logger.info(f"💰 佣金: 第{depth}层 会员{ancestor.id} ¥{amount} (比例{rate})")

        self.session.commit()
        return result

    def distribute(self, order) -> DistributionResult:
        """幂等分佣：同一订单同一受益人最多一条记录，重复执行不会新增。"""
        logger.info(f"\n🔗 分佣开始: 订单#{order.id} 实付¥{order.final_price}")
        try:
            result = self._distribute_once(order)
        except IntegrityError:
            # 并发写入同一(订单, 受益人)，按已存在处理后重跑一次
            self.session.rollback()
            logger.warning(f"⚠️ 订单#{order.id} 佣金记录已被并发写入，按幂等重试")
            result = self._distribute_once(order)
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"✅ 分佣完成: 订单#{order.id} 新增{result.created_count}条，共{len(result.records)}条")
        return result

    def records_for(self, order_id: int) -> List[CommissionRecordView]:
        rows = self.session.execute(
            select(commission_records)
            .where(commission_records.c.order_id == order_id)
            .order_by(commission_records.c.tier_depth)
        ).fetchall()
        return [CommissionRecordView.from_row(r) for r in rows]


def load_distributor(session: Session, settings: SystemSettings,
                     max_depth: Optional[int] = None) -> CommissionDistributor:
    return CommissionDistributor(
        session,
        CommissionConfigResolver.load(session),
        settings,
        max_depth if max_depth is not None else MAX_COMMISSION_DEPTH,
    )
