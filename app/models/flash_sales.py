import enum
from datetime import datetime, timedelta

from sqlalchemy import (
    Column,
    String,
    Integer,
    TIMESTAMP,
    JSON,
    Enum,
    Index,
    CheckConstraint,
    func,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, BigIntPK


# 1️ 活动状态枚举

class SaleStatus(str, enum.Enum):
    SCHEDULED = "scheduled"   # 未开始
    ACTIVE = "active"         # 进行中
    ENDED = "ended"           # 已结束
    CANCELLED = "cancelled"   # 运营取消


# 2️ 秒杀活动表

class FlashSale(Base):
    __tablename__ = "flash_sales"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(
        String(200),
        nullable=False,
        comment="活动名称",
    )

    slug = Column(
        String(220),
        nullable=False,
        unique=True,
        comment="活动 slug",
    )

    description = Column(
        String(1000),
        nullable=True,
        comment="活动描述",
    )

    start_time = Column(
        TIMESTAMP(timezone=False),
        nullable=False,
        comment="开始时间（UTC）",
    )

    end_time = Column(
        TIMESTAMP(timezone=False),
        nullable=False,
        comment="结束时间（UTC）",
    )

    status = Column(
        Enum(
            SaleStatus,
            name="flash_sale_status_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=SaleStatus.SCHEDULED,
        comment="活动状态",
    )

    early_access_tiers = Column(
        JSON,
        nullable=False,
        default=list,
        comment="可提前抢购的会员等级",
    )

    early_access_minutes = Column(
        Integer,
        nullable=False,
        default=30,
        comment="会员提前抢购分钟数",
    )

    created_at = Column(
        TIMESTAMP(timezone=False),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=False),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    items = relationship(
        "SaleItem",
        back_populates="flash_sale",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="SaleItem.id",
    )

    __table_args__ = (
        CheckConstraint(
            "end_time > start_time",
            name="ck_flash_sale_valid_period",
        ),
        CheckConstraint(
            "early_access_minutes >= 0",
            name="ck_flash_sale_early_access_non_negative",
        ),
    )

    @property
    def early_access_start(self) -> datetime:
        return self.start_time - timedelta(minutes=self.early_access_minutes or 0)

    def effective_status(self, now: datetime) -> SaleStatus:
        """按当前时间推导活动状态，取消状态不会被时间覆盖"""
        if self.status == SaleStatus.CANCELLED:
            return SaleStatus.CANCELLED
        if now < self.start_time:
            return SaleStatus.SCHEDULED
        if now < self.end_time:
            return SaleStatus.ACTIVE
        return SaleStatus.ENDED

    def is_early_access_window(self, now: datetime) -> bool:
        return self.early_access_start <= now < self.start_time

    def find_item(self, product_id: int):
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None


# 3️ 状态扫描索引

Index(
    "idx_flash_sales_status_time",
    FlashSale.status,
    FlashSale.start_time,
    FlashSale.end_time,
)
