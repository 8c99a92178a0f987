"""秒杀库存台账

剩余库存（sale_items.remaining）与预占台账（stock_reservations）的每一次变更
都在同一个数据库事务中完成。互斥单元是带条件的 UPDATE：
只有当过滤条件（remaining >= quantity / status = 'pending'）成立时才会命中一行，
并发请求要么立即成功，要么立即失败，不存在先读后写的竞态窗口。
"""

from datetime import timedelta
from typing import Callable, Optional
import logging

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    AlreadyTerminal,
    InsufficientStock,
    LimitExceeded,
    NotFound,
    ReservationError,
    SaleNotFound,
)
from app.models.sale_items import SaleItem
from app.models.stock_logs import StockLog, ChangeType
from app.models.stock_reservations import StockReservation, ReservationStatus

logger = logging.getLogger(__name__)


def stock_cache_key(sale_id: int, product_id: int) -> str:
    return f"flash:{sale_id}:product:{product_id}:stock"


class StockLedger:
    """库存台账核心类"""

    def __init__(
        self,
        db: Session,
        redis: Redis = None,
        clock: Callable = utcnow,
        hold_seconds: int = None,
        cache_ttl: int = None,
    ):
        self.db = db
        self.redis = redis
        self.clock = clock
        self.hold_seconds = hold_seconds if hold_seconds is not None else settings.RESERVATION_HOLD_SECONDS
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.STOCK_CACHE_TTL_SECONDS

    # ==================== 查询 ====================

    def load_item(self, sale_id: int, product_id: int) -> SaleItem:
        item = self.db.execute(
            select(SaleItem)
            .where(
                SaleItem.flash_sale_id == sale_id,
                SaleItem.product_id == product_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if item is None:
            raise SaleNotFound("商品不在该秒杀活动中")
        return item

    def get_reservation(self, reservation_id: int) -> StockReservation:
        reservation = self.db.get(StockReservation, reservation_id, populate_existing=True)
        if reservation is None:
            raise NotFound(f"未找到预占记录: {reservation_id}")
        return reservation

    def user_outstanding(self, sale_item_id: int, user_id: str) -> int:
        """用户在该活动商品上 pending + completed 的数量总和"""
        return self.db.execute(
            select(func.coalesce(func.sum(StockReservation.quantity), 0))
            .where(
                StockReservation.sale_item_id == sale_item_id,
                StockReservation.user_id == user_id,
                StockReservation.status.in_(
                    [ReservationStatus.PENDING, ReservationStatus.COMPLETED]
                ),
            )
        ).scalar_one()

    def pending_for_user(self, sale_id: int, product_id: int, user_id: str) -> list:
        return self.db.execute(
            select(StockReservation)
            .where(
                StockReservation.flash_sale_id == sale_id,
                StockReservation.product_id == product_id,
                StockReservation.user_id == user_id,
                StockReservation.status == ReservationStatus.PENDING,
            )
            .order_by(StockReservation.expires_at)
        ).scalars().all()

    def due_reservation_ids(self, limit: int, sale_item_id: int = None) -> list:
        """到期但仍为 pending 的预占，按过期时间排序"""
        stmt = (
            select(StockReservation.id)
            .where(
                StockReservation.status == ReservationStatus.PENDING,
                StockReservation.expires_at <= self.clock(),
            )
            .order_by(StockReservation.expires_at, StockReservation.id)
            .limit(limit)
        )
        if sale_item_id is not None:
            stmt = stmt.where(StockReservation.sale_item_id == sale_item_id)
        return list(self.db.execute(stmt).scalars().all())

    def available_stock(self, sale_id: int, product_id: int) -> int:
        """查询剩余库存（带缓存，陈旧时间不超过 cache_ttl 秒）"""
        cache_key = stock_cache_key(sale_id, product_id)

        if self.redis:
            try:
                cached = self.redis.get(cache_key)
                if cached is not None:
                    logger.debug(f"Cache hit for {cache_key}")
                    return int(cached)
            except RedisError as e:
                logger.warning(f"读取库存缓存失败，回源数据库: {e}")

        item = self.load_item(sale_id, product_id)
        # 缓存未命中时顺带回收该商品已过期的预占
        self.expire_due(item.id)
        remaining = self._remaining(item.id)

        if self.redis:
            try:
                self.redis.setex(cache_key, self.cache_ttl, remaining)
            except RedisError as e:
                logger.warning(f"写入库存缓存失败: {e}")

        return remaining

    # ==================== 变更 ====================

    def try_reserve(
        self,
        item: SaleItem,
        user_id: str,
        quantity: int,
        hold_seconds: int = None,
    ) -> StockReservation:
        """原子预占：扣减剩余库存并写入 pending 预占记录"""
        item_id = item.id
        sale_id = item.flash_sale_id
        product_id = item.product_id
        per_user_limit = item.per_user_limit
        hold = hold_seconds if hold_seconds is not None else self.hold_seconds
        now = self.clock()

        try:
            result = self.db.execute(
                update(SaleItem)
                .where(
                    SaleItem.id == item_id,
                    SaleItem.remaining >= quantity,
                )
                .values(
                    remaining=SaleItem.remaining - quantity,
                    reserved_count=SaleItem.reserved_count + quantity,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientStock(quantity)

            # 该行已被本事务写锁定，限购统计与扣减处于同一原子单元
            held = self.user_outstanding(item_id, user_id)
            if held + quantity > per_user_limit:
                raise LimitExceeded(per_user_limit)

            reservation = StockReservation(
                flash_sale_id=sale_id,
                sale_item_id=item_id,
                product_id=product_id,
                user_id=user_id,
                quantity=quantity,
                status=ReservationStatus.PENDING,
                expires_at=now + timedelta(seconds=hold),
            )
            self.db.add(reservation)
            self.db.flush()

            after = self._remaining(item_id)
            self._log(
                item_id,
                reservation.id,
                ChangeType.RESERVE,
                -quantity,
                before=after + quantity,
                after=after,
                operator=f"user_{user_id}",
                source="reservation_api",
            )
            self.db.commit()
        except ReservationError as e:
            self.db.rollback()
            logger.info(f"预占被拒绝: sale_id={sale_id}, product_id={product_id}, user_id={user_id}, reason={e.code}")
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"预占库存失败: {str(e)}")
            raise

        logger.info(
            f"预占库存成功: reservation_id={reservation.id}, sale_id={sale_id}, "
            f"product_id={product_id}, user_id={user_id}, quantity={quantity}"
        )
        self._invalidate_cache(sale_id, product_id)
        return reservation

    def commit(self, reservation_id: int, operator: str = "checkout_service") -> StockReservation:
        """确认成交：pending -> completed，数量并入 sold_count"""
        now = self.clock()

        try:
            result = self.db.execute(
                update(StockReservation)
                .where(
                    StockReservation.id == reservation_id,
                    StockReservation.status == ReservationStatus.PENDING,
                    StockReservation.expires_at > now,
                )
                .values(status=ReservationStatus.COMPLETED, finalized_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                reservation = self.get_reservation(reservation_id)
                self.db.execute(
                    update(SaleItem)
                    .where(SaleItem.id == reservation.sale_item_id)
                    .values(
                        sold_count=SaleItem.sold_count + reservation.quantity,
                        reserved_count=SaleItem.reserved_count - reservation.quantity,
                    )
                    .execution_options(synchronize_session=False)
                )
                remaining = self._remaining(reservation.sale_item_id)
                self._log(
                    reservation.sale_item_id,
                    reservation.id,
                    ChangeType.COMMIT,
                    0,
                    before=remaining,
                    after=remaining,
                    operator=operator,
                    source="reservation_api",
                )
                self.db.commit()
            else:
                self.db.rollback()
                reservation = None
        except Exception as e:
            self.db.rollback()
            logger.error(f"确认成交失败: reservation_id={reservation_id}, error={str(e)}")
            raise

        if reservation is None:
            self._reject_commit(reservation_id)

        logger.info(f"确认成交成功: reservation_id={reservation_id}, quantity={reservation.quantity}")
        self._invalidate_cache(reservation.flash_sale_id, reservation.product_id)
        return reservation

    def release(
        self,
        reservation_id: int,
        reason: ChangeType = ChangeType.RELEASE,
        operator: str = None,
        source: str = "reservation_api",
    ) -> StockReservation:
        """释放预占：pending -> expired，数量归还剩余库存

        对已处于终态的预占重复调用不会改变库存，只抛出 AlreadyTerminal。
        """
        now = self.clock()

        try:
            result = self.db.execute(
                update(StockReservation)
                .where(
                    StockReservation.id == reservation_id,
                    StockReservation.status == ReservationStatus.PENDING,
                )
                .values(status=ReservationStatus.EXPIRED, finalized_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                existing = self.get_reservation(reservation_id)
                raise AlreadyTerminal(existing.status.value)

            reservation = self.get_reservation(reservation_id)
            self.db.execute(
                update(SaleItem)
                .where(SaleItem.id == reservation.sale_item_id)
                .values(
                    remaining=SaleItem.remaining + reservation.quantity,
                    reserved_count=SaleItem.reserved_count - reservation.quantity,
                )
                .execution_options(synchronize_session=False)
            )
            after = self._remaining(reservation.sale_item_id)
            self._log(
                reservation.sale_item_id,
                reservation.id,
                reason,
                reservation.quantity,
                before=after - reservation.quantity,
                after=after,
                operator=operator or f"user_{reservation.user_id}",
                source=source,
            )
            self.db.commit()
        except ReservationError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"释放预占失败: reservation_id={reservation_id}, error={str(e)}")
            raise

        logger.info(
            f"释放预占成功: reservation_id={reservation_id}, quantity={reservation.quantity}, "
            f"reason={reason.value}"
        )
        self._invalidate_cache(reservation.flash_sale_id, reservation.product_id)
        return reservation

    def expire_due(self, sale_item_id: int, limit: int = 100) -> int:
        """惰性过期：释放某个活动商品下所有已到期的 pending 预占"""
        released = 0
        for reservation_id in self.due_reservation_ids(limit, sale_item_id=sale_item_id):
            try:
                self.release(
                    reservation_id,
                    reason=ChangeType.EXPIRE,
                    operator="lazy_expiry",
                    source="lazy_expiry",
                )
                released += 1
            except (AlreadyTerminal, NotFound) as e:
                # 与过期清理任务竞争，对方已先处理
                logger.debug(f"惰性过期跳过 reservation_id={reservation_id}: {e.message}")
        return released

    # ==================== 内部方法 ====================

    def _reject_commit(self, reservation_id: int):
        reservation = self.get_reservation(reservation_id)
        if reservation.status != ReservationStatus.PENDING:
            raise AlreadyTerminal(reservation.status.value)

        # 仍为 pending 但已超过保留时间：先归还库存，再按已过期拒绝
        try:
            self.release(
                reservation_id,
                reason=ChangeType.EXPIRE,
                operator="lazy_expiry",
                source="lazy_expiry",
            )
        except AlreadyTerminal:
            pass
        raise AlreadyTerminal(ReservationStatus.EXPIRED.value, "预占已超时，请重新抢购")

    def _remaining(self, sale_item_id: int) -> int:
        return self.db.execute(
            select(SaleItem.remaining).where(SaleItem.id == sale_item_id)
        ).scalar_one()

    def _log(
        self,
        sale_item_id: int,
        reservation_id: Optional[int],
        change_type: ChangeType,
        quantity: int,
        before: int,
        after: int,
        operator: str,
        source: str,
    ):
        self.db.add(
            StockLog(
                sale_item_id=sale_item_id,
                reservation_id=reservation_id,
                change_type=change_type,
                quantity=quantity,
                before_remaining=before,
                after_remaining=after,
                operator=operator,
                source=source,
            )
        )

    def _invalidate_cache(self, sale_id: int, product_id: int):
        if not self.redis:
            return
        try:
            self.redis.delete(stock_cache_key(sale_id, product_id))
            logger.debug(f"Cache invalidated for sale {sale_id} product {product_id}")
        except RedisError as e:
            logger.warning(f"库存缓存失效失败: {e}")
