# active_member.py - 定时重算会员活跃标记（active 字段的唯一写入方）
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel
from sqlalchemy import or_, update

from config import ActiveCondition
from database_setup import members
from settings_store import SystemSettings

logger = logging.getLogger(__name__)


class RefreshResult(BaseModel):
    skipped: bool = False
    reason: Optional[str] = None
    activated: int = 0
    deactivated: int = 0
    cutoff: Optional[datetime] = None


class ActiveMemberRefresher:
    def __init__(self, session_factory: Callable, settings_provider: Callable[[], SystemSettings]):
        self.session_factory = session_factory
        self.settings_provider = settings_provider

    def run_once(self, now: Optional[datetime] = None) -> RefreshResult:
        settings = self.settings_provider()
        if not settings.active_member_check_enabled:
            logger.debug("活跃会员检测未开启，跳过")
            return RefreshResult(skipped=True, reason='disabled')

        now = now or datetime.now()
        cutoff = now - timedelta(days=settings.active_member_check_days)
        column = (
            members.c.last_order_at
            if settings.active_member_condition == ActiveCondition.LAST_ORDER_AT
            else members.c.last_active_at
        )

        session = self.session_factory()
        try:
            deactivated = session.execute(
                update(members)
                .where(members.c.active.is_(True), or_(column.is_(None), column < cutoff))
                .values(active=False)
            ).rowcount
            activated = session.execute(
                update(members)
                .where(members.c.active.is_(False), column.is_not(None), column >= cutoff)
                .values(active=True)
            ).rowcount
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            f"🔄 活跃会员刷新完成: 依据{settings.active_member_condition} | 近{settings.active_member_check_days}天 "
            f"| 激活{activated} | 置为非活跃{deactivated}"
        )
        return RefreshResult(activated=activated, deactivated=deactivated, cutoff=cutoff)

    def tick(self, now: Optional[datetime] = None) -> RefreshResult:
        """定时任务入口：任何异常都只记录日志，保留上一次的活跃标记。"""
        try:
            return self.run_once(now)
        except Exception as e:
            logger.error(f"❌ 活跃会员刷新失败，本次跳过: {e}", exc_info=True)
            return RefreshResult(skipped=True, reason='error')
