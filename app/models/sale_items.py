from sqlalchemy import (
    Column,
    BigInteger,
    Integer,
    Numeric,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    TIMESTAMP,
    func,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, BigIntPK


class SaleItem(Base):
    """秒杀活动商品（库存台账）

    remaining 是“还能预占多少”的唯一权威计数，
    始终满足 remaining + reserved_count + sold_count == stock_limit。
    """

    __tablename__ = "sale_items"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    flash_sale_id = Column(
        BigInteger,
        ForeignKey("flash_sales.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="秒杀活动ID",
    )

    product_id = Column(
        BigInteger,
        nullable=False,
        comment="商品ID",
    )

    flash_price = Column(
        Numeric(10, 2),
        nullable=False,
        comment="秒杀价",
    )

    original_price = Column(
        Numeric(10, 2),
        nullable=False,
        comment="原价",
    )

    stock_limit = Column(
        Integer,
        nullable=False,
        comment="活动总库存",
    )

    remaining = Column(
        Integer,
        nullable=False,
        comment="剩余可预占库存",
    )

    reserved_count = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="预占中库存",
    )

    sold_count = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="已售数量",
    )

    per_user_limit = Column(
        Integer,
        nullable=False,
        default=2,
        server_default="2",
        comment="每人限购",
    )

    created_at = Column(
        TIMESTAMP(timezone=False),
        nullable=False,
        server_default=func.now(),
    )

    updated_at = Column(
        TIMESTAMP(timezone=False),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    flash_sale = relationship("FlashSale", back_populates="items")

    # 非持久化字段，查询活动详情时填入实时剩余库存
    current_stock = None

    __table_args__ = (
        UniqueConstraint(
            "flash_sale_id",
            "product_id",
            name="uq_sale_item_sale_product",
        ),
        CheckConstraint("stock_limit >= 1", name="ck_sale_item_stock_limit_positive"),
        CheckConstraint("remaining >= 0", name="ck_sale_item_remaining_non_negative"),
        CheckConstraint("reserved_count >= 0", name="ck_sale_item_reserved_non_negative"),
        CheckConstraint(
            "sold_count >= 0 AND sold_count <= stock_limit",
            name="ck_sale_item_sold_within_limit",
        ),
        CheckConstraint(
            "remaining + reserved_count + sold_count = stock_limit",
            name="ck_sale_item_stock_conserved",
        ),
        CheckConstraint("per_user_limit >= 1", name="ck_sale_item_per_user_limit_positive"),
        CheckConstraint("flash_price >= 0 AND original_price >= 0", name="ck_sale_item_prices_non_negative"),
    )
