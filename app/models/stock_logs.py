import enum

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    TIMESTAMP,
    Enum,
    Index,
    func,
)
from app.db.base import Base, BigIntPK

# 1定义库存变更类型（数据库 ENUM）
class ChangeType(str, enum.Enum):
    RESERVE = "RESERVE"   # 预占库存
    COMMIT = "COMMIT"     # 成交
    RELEASE = "RELEASE"   # 用户取消，归还库存
    EXPIRE = "EXPIRE"     # 超时，归还库存

# 2️库存流水表（与台账变更同一事务写入）
class StockLog(Base):
    __tablename__ = "stock_logs"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    sale_item_id = Column(
        BigInteger,
        nullable=False,
        index=True,
        comment="活动商品ID",
    )

    reservation_id = Column(
        BigInteger,
        nullable=True,
        index=True,
        comment="预占记录ID",
    )

    change_type = Column(
        Enum(
            ChangeType,
            name="stock_change_type",
        ),
        nullable=False,
        comment="库存变更类型",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="剩余库存变化量",
    )

    before_remaining = Column(
        Integer,
        nullable=False,
        comment="变更前剩余库存",
    )

    after_remaining = Column(
        Integer,
        nullable=False,
        comment="变更后剩余库存",
    )

    created_at = Column(
        TIMESTAMP(timezone=False),
        server_default=func.now(),
        nullable=False,
    )
    operator = Column(
        String(64),
        nullable=True,
        comment="操作人/服务名",
    )

    source = Column(
        String(50),
        nullable=True,
        comment="来源：reservation_api / sweeper / operator",
    )

# 3️组合索引（按商品查看流水）

Index(
    "idx_stock_logs_item_created_desc",
    StockLog.sale_item_id,
    StockLog.created_at.desc(),
)
