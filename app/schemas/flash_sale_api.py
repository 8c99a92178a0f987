"""秒杀 API 专用的 Pydantic 模型和响应格式"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import settings
from app.models.flash_sales import SaleStatus
from app.models.stock_reservations import ReservationStatus


# ==================== 请求模型 ====================

class SaleItemCreate(BaseModel):
    """活动商品"""
    product_id: int = Field(..., gt=0, description="商品ID", examples=[1])
    flash_price: Decimal = Field(..., ge=0, description="秒杀价", examples=["19.90"])
    original_price: Decimal = Field(..., ge=0, description="原价", examples=["39.90"])
    stock_limit: int = Field(..., ge=1, description="活动总库存", examples=[100])
    per_user_limit: int = Field(
        settings.DEFAULT_PER_USER_LIMIT,
        ge=1,
        description="每人限购",
        examples=[2]
    )


class FlashSaleCreate(BaseModel):
    """创建秒杀活动请求"""
    name: str = Field(..., min_length=1, max_length=200, description="活动名称")
    description: Optional[str] = Field(None, max_length=1000, description="活动描述")
    start_time: datetime = Field(..., description="开始时间")
    end_time: datetime = Field(..., description="结束时间")
    items: List[SaleItemCreate] = Field(..., min_length=1, description="活动商品")
    early_access_tiers: List[str] = Field(
        default_factory=list,
        description="可提前抢购的会员等级",
        examples=[["gold", "platinum"]]
    )
    early_access_minutes: int = Field(
        settings.DEFAULT_EARLY_ACCESS_MINUTES,
        ge=0,
        description="会员提前抢购分钟数"
    )


class FlashSaleUpdate(BaseModel):
    """修改秒杀活动请求（仅未开始的活动）"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    items: Optional[List[SaleItemCreate]] = Field(None, min_length=1)
    early_access_tiers: Optional[List[str]] = None
    early_access_minutes: Optional[int] = Field(None, ge=0)


class ReserveRequest(BaseModel):
    """预占库存请求"""
    product_id: int = Field(..., gt=0, description="商品ID", examples=[1])
    user_id: str = Field(..., min_length=1, max_length=64, description="用户ID", examples=["u_1001"])
    quantity: int = Field(
        ...,
        ge=1,
        le=settings.MAX_QUANTITY_PER_REQUEST,
        description="预占数量",
        examples=[1]
    )
    loyalty_tier: Optional[str] = Field(None, description="会员等级", examples=["gold"])


# ==================== 响应模型 ====================

class BaseResponse(BaseModel):
    """基础响应模型"""
    success: bool = Field(..., description="请求是否成功")
    message: Optional[str] = Field(None, description="响应消息")


class ReservationDetail(BaseModel):
    """预占记录详情"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    flash_sale_id: int
    product_id: int
    user_id: str
    quantity: int
    status: ReservationStatus
    expires_at: datetime
    finalized_at: Optional[datetime] = None


class ReservationResponse(BaseResponse):
    data: ReservationDetail


class CancelResponse(ReservationResponse):
    released: bool = Field(..., description="本次是否归还了库存")


class StockResponse(BaseResponse):
    """活动商品剩余库存"""
    sale_id: int
    product_id: int
    available_stock: int = Field(..., ge=0, description="剩余可抢数量")


class SaleItemDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    flash_price: float
    original_price: float
    stock_limit: int
    sold_count: int
    per_user_limit: int
    current_stock: Optional[int] = Field(None, ge=0, description="实时剩余库存")


class FlashSaleDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: SaleStatus
    early_access_tiers: List[str] = []
    early_access_minutes: int
    items: List[SaleItemDetail] = []


class FlashSaleResponse(BaseResponse):
    data: FlashSaleDetail


class FlashSaleListResponse(BaseResponse):
    count: int
    total: Optional[int] = None
    page: Optional[int] = None
    pages: Optional[int] = None
    data: List[FlashSaleDetail]


class CancelSaleResponse(FlashSaleResponse):
    released_count: int = Field(..., ge=0, description="释放的预占数量")


class ServerTime(BaseModel):
    server_time: datetime
    epoch_ms: int


class ServerTimeResponse(BaseResponse):
    data: ServerTime


class SweepResponse(BaseResponse):
    """清理任务响应"""
    released_count: int = Field(..., ge=0, description="释放的过期预占数量")
    purged_count: Optional[int] = Field(None, ge=0, description="删除的历史记录数量")


class CeleryTaskResponse(BaseResponse):
    """Celery任务响应"""
    task_id: Optional[str] = Field(None, description="任务ID")


class TaskStatusResponse(BaseModel):
    """任务状态响应"""
    task_id: str = Field(..., description="任务ID")
    status: str = Field(..., description="任务状态描述")
    state: str = Field(..., description="任务状态码")
