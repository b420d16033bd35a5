# scheduler.py - 后台定时任务：活跃会员刷新、过期优惠券预占回收
import logging
from datetime import datetime

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from active_member import ActiveMemberRefresher
from config import RESERVATION_SWEEP_MINUTES
from coupon_ledger import CouponLedger
from database_setup import get_session_factory
from settings_store import get_settings_store

logger = logging.getLogger(__name__)

ACTIVE_MEMBER_JOB_ID = 'active_member_refresh'
RESERVATION_SWEEP_JOB_ID = 'coupon_reservation_sweep'

scheduler = BackgroundScheduler(
    jobstores={'default': MemoryJobStore()},
    executors={'default': ThreadPoolExecutor(2)},
    job_defaults={
        'coalesce': True,
        'max_instances': 1,
        'misfire_grace_time': 60,
    },
)


def run_active_member_refresh():
    refresher = ActiveMemberRefresher(get_session_factory(), get_settings_store().get)
    refresher.tick()


def run_reservation_sweep():
    session = get_session_factory()()
    try:
        CouponLedger(session).release_expired(datetime.now())
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ 过期预占回收失败: {e}")
    finally:
        session.close()


def start_scheduler():
    if scheduler.running:
        return
    hours = get_settings_store().get().active_member_check_interval_hours

    scheduler.add_job(
        run_active_member_refresh,
        'interval',
        hours=hours,
        id=ACTIVE_MEMBER_JOB_ID,
        name='活跃会员刷新',
        replace_existing=True,
    )
    scheduler.add_job(
        run_reservation_sweep,
        'interval',
        minutes=RESERVATION_SWEEP_MINUTES,
        id=RESERVATION_SWEEP_JOB_ID,
        name='过期优惠券预占回收',
        replace_existing=True,
    )
    scheduler.start()
    logger.info("⏱️ 后台定时任务已启动")
    for job in scheduler.get_jobs():
        logger.info(f"定时任务: {job.name} - 下次执行: {job.next_run_time}")


def reschedule_active_member_job(hours: int) -> bool:
    if not scheduler.running or scheduler.get_job(ACTIVE_MEMBER_JOB_ID) is None:
        return False
    scheduler.reschedule_job(ACTIVE_MEMBER_JOB_ID, trigger='interval', hours=hours)
    logger.info(f"⏱️ 活跃会员刷新周期已调整为每{hours}小时")
    return True


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏱️ 后台定时任务已停止")


def get_job_status():
    return [
        {
            'id': job.id,
            'name': job.name,
            'nextRunTime': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
