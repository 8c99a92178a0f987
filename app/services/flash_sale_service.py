"""秒杀活动管理服务（运营侧）"""

from datetime import timezone
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
import logging

from redis import Redis
from slugify import slugify
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import utcnow, to_naive_utc
from app.core.config import settings
from app.core.exceptions import (
    AlreadyTerminal,
    InvalidRequest,
    InvalidSaleState,
    NotFound,
    SaleNotFound,
)
from app.models.flash_sales import FlashSale, SaleStatus
from app.models.sale_items import SaleItem
from app.models.stock_logs import ChangeType
from app.models.stock_reservations import StockReservation, ReservationStatus
from app.services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "name",
    "description",
    "start_time",
    "end_time",
    "early_access_tiers",
    "early_access_minutes",
)

SLUG_CREATE_ATTEMPTS = 5


class FlashSaleService:

    def __init__(self, db: Session, redis: Redis = None, clock: Callable = utcnow):
        self.db = db
        self.redis = redis
        self.clock = clock
        self.ledger = StockLedger(db, redis, clock=clock)

    def get_sale(self, sale_id: int) -> FlashSale:
        sale = self.db.get(FlashSale, sale_id, populate_existing=True)
        if sale is None:
            raise SaleNotFound(f"未找到秒杀活动: {sale_id}")
        return sale

    def get_sale_by_slug(self, slug: str) -> FlashSale:
        """按 slug 查询活动（店铺前台），每个商品附带实时剩余库存 current_stock"""
        sale = self.db.execute(
            select(FlashSale)
            .where(FlashSale.slug == slug)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if sale is None:
            raise SaleNotFound(f"未找到秒杀活动: {slug}")

        for item in sale.items:
            item.current_stock = self.ledger.available_stock(sale.id, item.product_id)
        return sale

    def list_active_sales(self) -> List[FlashSale]:
        """进行中及即将开始的活动"""
        now = self.clock()
        return self.db.execute(
            select(FlashSale)
            .where(
                FlashSale.status.in_([SaleStatus.SCHEDULED, SaleStatus.ACTIVE]),
                FlashSale.end_time > now,
            )
            .order_by(FlashSale.start_time)
        ).scalars().all()

    def list_sales(
        self,
        status: Optional[SaleStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[FlashSale], int]:
        stmt = select(FlashSale)
        count_stmt = select(func.count(FlashSale.id))
        if status is not None:
            stmt = stmt.where(FlashSale.status == status)
            count_stmt = count_stmt.where(FlashSale.status == status)

        sales = self.db.execute(
            stmt.order_by(FlashSale.created_at.desc(), FlashSale.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        total = self.db.execute(count_stmt).scalar_one()
        return sales, total

    def create_sale(
        self,
        name: str,
        start_time,
        end_time,
        items: List[dict],
        description: str = None,
        early_access_tiers: List[str] = None,
        early_access_minutes: int = None,
    ) -> FlashSale:
        """创建秒杀活动

        Args:
            items: [{"product_id": 1, "flash_price": ..., "original_price": ...,
                     "stock_limit": 10, "per_user_limit": 2}, ...]
        """
        start_time = to_naive_utc(start_time)
        end_time = to_naive_utc(end_time)
        self._validate_period(start_time, end_time)

        early_access_tiers = [t.lower() for t in (early_access_tiers or [])]
        if early_access_minutes is None:
            early_access_minutes = settings.DEFAULT_EARLY_ACCESS_MINUTES

        for attempt in range(1, SLUG_CREATE_ATTEMPTS + 1):
            slug = self._unique_slug(name)
            sale = FlashSale(
                name=name,
                slug=slug,
                description=description,
                start_time=start_time,
                end_time=end_time,
                early_access_tiers=early_access_tiers,
                early_access_minutes=early_access_minutes,
            )
            sale.items = self._build_items(items)
            sale.status = sale.effective_status(self.clock())

            try:
                self.db.add(sale)
                self.db.commit()
                break
            except IntegrityError as e:
                self.db.rollback()
                # 并发创建同名活动时 slug 被抢占，换下一个后缀重试
                if attempt < SLUG_CREATE_ATTEMPTS and self._slug_taken(slug):
                    logger.warning(f"活动 slug 冲突，重试: slug={slug}, attempt={attempt}")
                    continue
                logger.error(f"创建秒杀活动失败: {str(e)}")
                raise
            except Exception as e:
                self.db.rollback()
                logger.error(f"创建秒杀活动失败: {str(e)}")
                raise

        logger.info(f"🚀 秒杀活动已创建: id={sale.id}, name={sale.name}, status={sale.status.value}")
        return sale

    def update_sale(self, sale_id: int, changes: dict) -> FlashSale:
        """修改未开始的活动；进行中或已结束的活动不可修改"""
        sale = self.get_sale(sale_id)
        status = sale.effective_status(self.clock())
        if status != SaleStatus.SCHEDULED:
            raise InvalidSaleState(f"活动状态为 {status.value}，不可修改")

        try:
            for field in UPDATABLE_FIELDS:
                if changes.get(field) is not None:
                    value = changes[field]
                    if field in ("start_time", "end_time"):
                        value = to_naive_utc(value)
                    if field == "early_access_tiers":
                        value = [t.lower() for t in value]
                    setattr(sale, field, value)
            self._validate_period(sale.start_time, sale.end_time)

            if changes.get("items") is not None:
                if self._has_reservations(sale.id):
                    raise InvalidSaleState("活动已有预占记录，不可替换商品")
                new_items = self._build_items(changes["items"])
                # 先删除旧商品，避免 (活动, 商品) 唯一约束冲突
                sale.items.clear()
                self.db.flush()
                sale.items.extend(new_items)

            sale.status = sale.effective_status(self.clock())
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"秒杀活动已更新: id={sale.id}")
        return self.get_sale(sale_id)

    def cancel_sale(self, sale_id: int) -> Tuple[FlashSale, int]:
        """运营取消活动，并释放该活动下所有 pending 预占

        Returns:
            (活动, 释放的预占数量)
        """
        sale = self.get_sale(sale_id)
        status = sale.effective_status(self.clock())
        if status == SaleStatus.ENDED:
            raise InvalidSaleState("活动已结束，不可取消")
        if status == SaleStatus.CANCELLED:
            raise InvalidSaleState("活动已取消")

        sale.status = SaleStatus.CANCELLED
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        pending_ids = self.db.execute(
            select(StockReservation.id).where(
                StockReservation.flash_sale_id == sale_id,
                StockReservation.status == ReservationStatus.PENDING,
            )
        ).scalars().all()

        released = 0
        for reservation_id in pending_ids:
            try:
                self.ledger.release(
                    reservation_id,
                    reason=ChangeType.RELEASE,
                    operator="operator_cancel",
                    source="operator",
                )
                released += 1
            except (AlreadyTerminal, NotFound) as e:
                logger.debug(f"取消活动时跳过 reservation_id={reservation_id}: {e.message}")

        logger.info(f"🏁 秒杀活动已取消: id={sale_id}, 释放预占 {released} 条")
        return self.get_sale(sale_id), released

    def refresh_statuses(self) -> dict:
        """按当前时间推进活动状态：scheduled -> active -> ended"""
        now = self.clock()
        try:
            activated = self.db.execute(
                update(FlashSale)
                .where(
                    FlashSale.status == SaleStatus.SCHEDULED,
                    FlashSale.start_time <= now,
                    FlashSale.end_time > now,
                )
                .values(status=SaleStatus.ACTIVE)
                .execution_options(synchronize_session=False)
            ).rowcount
            ended = self.db.execute(
                update(FlashSale)
                .where(
                    FlashSale.status.in_([SaleStatus.SCHEDULED, SaleStatus.ACTIVE]),
                    FlashSale.end_time <= now,
                )
                .values(status=SaleStatus.ENDED)
                .execution_options(synchronize_session=False)
            ).rowcount
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"更新活动状态失败: {str(e)}")
            raise

        if activated or ended:
            logger.info(f"活动状态已更新: activated={activated}, ended={ended}")
        return {"activated": activated, "ended": ended}

    def server_time(self) -> dict:
        """服务器时间（前端倒计时校准用）"""
        now = self.clock()
        return {
            "server_time": now,
            "epoch_ms": int(now.replace(tzinfo=timezone.utc).timestamp() * 1000),
        }

    def _validate_period(self, start_time, end_time):
        if end_time <= start_time:
            raise InvalidRequest("结束时间必须晚于开始时间")

    def _build_items(self, items: List[dict]) -> List[SaleItem]:
        if not items:
            raise InvalidRequest("秒杀活动至少包含一个商品")

        product_ids = [i["product_id"] for i in items]
        if len(set(product_ids)) != len(product_ids):
            raise InvalidRequest("同一商品在活动中只能出现一次")

        built = []
        for i in items:
            stock_limit = int(i["stock_limit"])
            per_user_limit = int(i.get("per_user_limit") or settings.DEFAULT_PER_USER_LIMIT)
            if stock_limit < 1:
                raise InvalidRequest("活动库存至少为 1")
            if per_user_limit < 1:
                raise InvalidRequest("每人限购至少为 1")
            built.append(
                SaleItem(
                    product_id=i["product_id"],
                    flash_price=Decimal(str(i["flash_price"])),
                    original_price=Decimal(str(i["original_price"])),
                    stock_limit=stock_limit,
                    remaining=stock_limit,
                    reserved_count=0,
                    sold_count=0,
                    per_user_limit=per_user_limit,
                )
            )
        return built

    def _has_reservations(self, sale_id: int) -> bool:
        return self.db.execute(
            select(func.count(StockReservation.id)).where(StockReservation.flash_sale_id == sale_id)
        ).scalar_one() > 0

    def _slug_taken(self, slug: str) -> bool:
        return self.db.execute(select(FlashSale.id).where(FlashSale.slug == slug)).first() is not None

    def _unique_slug(self, name: str) -> str:
        base = slugify(name, max_length=200) or "flash-sale"
        slug = base
        suffix = 1
        while self._slug_taken(slug):
            suffix += 1
            slug = f"{base}-{suffix}"
        return slug
