"""秒杀预占接口层

供购物车 / 结算 / 支付等协作方调用，负责请求级校验，
真正的库存变更全部委托给 StockLedger。
"""

from math import ceil
from typing import Callable, Tuple
import logging

from redis import Redis
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    AlreadyTerminal,
    EarlyAccessOnly,
    InvalidRequest,
    SaleNotActive,
    SaleNotFound,
)
from app.models.flash_sales import FlashSale, SaleStatus
from app.models.stock_logs import ChangeType
from app.models.stock_reservations import StockReservation, ReservationStatus
from app.services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)


class ReservationService:

    def __init__(
        self,
        db: Session,
        redis: Redis = None,
        clock: Callable = utcnow,
        hold_seconds: int = None,
        max_quantity: int = None,
    ):
        self.db = db
        self.redis = redis
        self.clock = clock
        self.max_quantity = max_quantity or settings.MAX_QUANTITY_PER_REQUEST
        self.ledger = StockLedger(db, redis, clock=clock, hold_seconds=hold_seconds)

    def reserve(
        self,
        sale_id: int,
        product_id: int,
        user_id: str,
        quantity: int,
        loyalty_tier: str = None,
    ) -> StockReservation:
        """预占秒杀库存，返回 pending 预占记录（含 id 与过期时间）"""
        if not user_id:
            raise InvalidRequest("缺少用户ID")
        if quantity < 1:
            raise InvalidRequest("预占数量至少为 1")
        if quantity > self.max_quantity:
            raise InvalidRequest(f"单次最多预占 {self.max_quantity} 件")

        sale = self.db.get(FlashSale, sale_id, populate_existing=True)
        if sale is None:
            raise SaleNotFound(f"未找到秒杀活动: {sale_id}")

        self._check_sale_window(sale, loyalty_tier)

        item = sale.find_item(product_id)
        if item is None:
            raise SaleNotFound("商品不在该秒杀活动中")

        # 先回收该商品已到期的预占，再做原子扣减
        self.ledger.expire_due(item.id)
        return self.ledger.try_reserve(item, user_id, quantity)

    def confirm_purchase(self, reservation_id: int) -> StockReservation:
        """支付成功后由结算流程调用"""
        return self.ledger.commit(reservation_id)

    def cancel(self, reservation_id: int) -> Tuple[StockReservation, bool]:
        """用户主动放弃结算，提前释放预占

        Returns:
            (预占记录, 本次是否真正释放了库存)
        """
        try:
            reservation = self.ledger.release(reservation_id, reason=ChangeType.RELEASE)
            return reservation, True
        except AlreadyTerminal as e:
            if e.status == ReservationStatus.EXPIRED.value:
                # 已被过期清理抢先释放，对用户而言结果一致
                logger.info(f"取消预占时记录已过期: reservation_id={reservation_id}")
                return self.ledger.get_reservation(reservation_id), False
            raise

    def get_available_stock(self, sale_id: int, product_id: int) -> int:
        return self.ledger.available_stock(sale_id, product_id)

    def get_reservation(self, reservation_id: int) -> StockReservation:
        return self.ledger.get_reservation(reservation_id)

    def _check_sale_window(self, sale: FlashSale, loyalty_tier: str = None):
        now = self.clock()
        status = sale.effective_status(now)

        if status == SaleStatus.ACTIVE:
            return
        if status == SaleStatus.CANCELLED:
            raise SaleNotActive("秒杀活动已取消")
        if status == SaleStatus.ENDED:
            raise SaleNotActive("秒杀活动已结束")

        tiers = [t.lower() for t in (sale.early_access_tiers or [])]
        if tiers and sale.is_early_access_window(now):
            if loyalty_tier and loyalty_tier.lower() in tiers:
                return
            minutes = ceil((sale.start_time - now).total_seconds() / 60)
            raise EarlyAccessOnly(f"会员优先购时段，公开抢购将在 {minutes} 分钟后开始")

        raise SaleNotActive("秒杀活动尚未开始")
