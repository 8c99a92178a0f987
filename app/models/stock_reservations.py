import enum

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    TIMESTAMP,
    Enum,
    Index,
    ForeignKey,
    CheckConstraint,
    func,
)
from app.db.base import Base, BigIntPK



# 1️ 预占状态枚举（数据库 ENUM）

class ReservationStatus(str, enum.Enum):
    PENDING = "pending"       # 预占中，计入库存占用
    COMPLETED = "completed"   # 已成交，数量并入 sold_count
    EXPIRED = "expired"       # 超时或取消，数量已归还

TERMINAL_STATUSES = (ReservationStatus.COMPLETED, ReservationStatus.EXPIRED)



# 2️ 预占台账表

class StockReservation(Base):
    __tablename__ = "stock_reservations"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    flash_sale_id = Column(
        BigInteger,
        ForeignKey("flash_sales.id", ondelete="CASCADE"),
        nullable=False,
        comment="秒杀活动ID",
    )

    sale_item_id = Column(
        BigInteger,
        ForeignKey("sale_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="活动商品ID",
    )

    product_id = Column(
        BigInteger,
        nullable=False,
        comment="商品ID",
    )

    user_id = Column(
        String(64),
        nullable=False,
        comment="用户ID",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="预占数量",
    )

    status = Column(
        Enum(
            ReservationStatus,
            name="stock_reservation_status_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=ReservationStatus.PENDING,
        comment="预占状态",
    )

    expires_at = Column(
        TIMESTAMP(timezone=False),
        nullable=False,
        comment="预占过期时间（UTC）",
    )

    finalized_at = Column(
        TIMESTAMP(timezone=False),
        nullable=True,
        comment="进入终态的时间，用于保留期清理",
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

    __table_args__ = (
        CheckConstraint(
            "quantity >= 1",
            name="ck_reservation_quantity_positive",
        ),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == ReservationStatus.PENDING



# 3️ 高频查询索引

# 限购校验：(活动, 商品, 用户)
Index(
    "idx_reservation_sale_product_user",
    StockReservation.flash_sale_id,
    StockReservation.product_id,
    StockReservation.user_id,
)

# 过期扫描：(状态, 过期时间)
Index(
    "idx_reservation_status_expires",
    StockReservation.status,
    StockReservation.expires_at,
)

# 保留期清理
Index(
    "idx_reservation_finalized_at",
    StockReservation.finalized_at,
)
