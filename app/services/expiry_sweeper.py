"""预占过期清理

两种触发方式并存：Celery beat 定时清理（每 30 秒），以及预占 / 查库存时的惰性过期。
两者都落到 StockLedger.release 的条件更新上，同一条预占只会被释放一次。
"""

from datetime import timedelta
from typing import Callable
import logging

from redis import Redis
from redlock import Redlock
from sqlalchemy import select, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import AlreadyTerminal, NotFound
from app.models.stock_logs import ChangeType
from app.models.stock_reservations import (
    StockReservation,
    ReservationStatus,
    TERMINAL_STATUSES,
)
from app.services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)

SWEEPER_LOCK_KEY = "lock:flash-sale:expiry-sweeper"


class ExpirySweeper:

    def __init__(
        self,
        db: Session,
        redis: Redis = None,
        rlock: Redlock = None,
        clock: Callable = utcnow,
        lock_ttl_ms: int = None,
        retention_hours: int = None,
    ):
        self.db = db
        self.rlock = rlock
        self.clock = clock
        self.lock_ttl_ms = lock_ttl_ms or settings.SWEEP_LOCK_TTL_MS
        self.retention_hours = (
            retention_hours if retention_hours is not None else settings.RESERVATION_RETENTION_HOURS
        )
        self.ledger = StockLedger(db, redis, clock=clock)

    def count_due(self) -> int:
        """统计待释放的过期预占数量（试运行用）"""
        return self.db.execute(
            select(func.count(StockReservation.id)).where(
                StockReservation.status == ReservationStatus.PENDING,
                StockReservation.expires_at <= self.clock(),
            )
        ).scalar_one()

    def sweep(self, batch_size: int = None) -> int:
        """释放所有到期的 pending 预占

        分布式锁只用于避免多个 worker 重复扫描，
        正确性由 release 的条件更新保证。

        Returns:
            本轮释放的预占数量
        """
        batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        lock = None

        if self.rlock:
            lock = self.rlock.lock(SWEEPER_LOCK_KEY, self.lock_ttl_ms)
            if not lock:
                logger.info("其他 worker 正在执行过期清理，跳过本轮")
                return 0

        try:
            return self._sweep_batches(batch_size)
        finally:
            if self.rlock and lock:
                self.rlock.unlock(lock)

    def purge_finalized(self) -> int:
        """删除超过保留期的终态预占记录"""
        cutoff = self.clock() - timedelta(hours=self.retention_hours)
        try:
            result = self.db.execute(
                delete(StockReservation)
                .where(
                    StockReservation.status.in_(TERMINAL_STATUSES),
                    StockReservation.finalized_at <= cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"清理历史预占记录失败: {str(e)}")
            raise

        purged = result.rowcount or 0
        logger.info(f"已清理 {purged} 条超过保留期的预占记录")
        return purged

    def _sweep_batches(self, batch_size: int) -> int:
        total_released = 0

        while True:
            try:
                due_ids = self.ledger.due_reservation_ids(batch_size)
            except SQLAlchemyError as e:
                logger.error(f"查询过期预占失败，等待下一轮重新扫描: {str(e)}")
                self.db.rollback()
                break

            if not due_ids:
                break

            logger.info(f"本次清理 {len(due_ids)} 条过期预占记录")
            released_in_batch = 0

            for reservation_id in due_ids:
                try:
                    self.ledger.release(
                        reservation_id,
                        reason=ChangeType.EXPIRE,
                        operator="system_sweeper",
                        source="sweeper",
                    )
                    released_in_batch += 1
                except (AlreadyTerminal, NotFound) as e:
                    # 已被取消 / 惰性过期 / 其他 worker 处理
                    logger.info(f"跳过预占 reservation_id={reservation_id}: {e.message}")
                except SQLAlchemyError as e:
                    # 剩余的到期记录会在下一轮按过期时间重新扫描到
                    logger.error(f"释放预占失败，中止本轮清理: reservation_id={reservation_id}, error={str(e)}")
                    total_released += released_in_batch
                    logger.info(f"清理任务中止，本轮共释放 {total_released} 条过期预占记录")
                    return total_released

            total_released += released_in_batch
            logger.info(f"已完成批次清理，累计释放 {total_released} 条记录")

            if len(due_ids) < batch_size or released_in_batch == 0:
                break

        logger.info(f"清理任务完成，总共释放 {total_released} 条过期预占记录")
        return total_released
