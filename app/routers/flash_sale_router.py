"""秒杀活动与库存预占 API 路由"""

from math import ceil
from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Path, Body

from app.core.dependencies import (
    get_expiry_sweeper,
    get_flash_sale_service,
    get_reservation_service,
)
from app.core.exceptions import ReservationError
from app.models.flash_sales import SaleStatus
from app.schemas.flash_sale_api import (
    CancelResponse,
    CancelSaleResponse,
    CeleryTaskResponse,
    FlashSaleCreate,
    FlashSaleListResponse,
    FlashSaleResponse,
    FlashSaleUpdate,
    ReservationResponse,
    ReserveRequest,
    ServerTimeResponse,
    StockResponse,
    SweepResponse,
    TaskStatusResponse,
)
from app.services.expiry_sweeper import ExpirySweeper
from app.services.flash_sale_service import FlashSaleService
from app.services.reservation_service import ReservationService
from celery_app import app as celery_app
from tasks.flash_sale_tasks import sweep_expired_reservations as celery_sweep_task

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/flash-sales",
    tags=["秒杀预占"],
    responses={
        400: {"description": "请求参数错误或活动不在进行中"},
        404: {"description": "资源未找到"},
        409: {"description": "库存不足 / 超出限购 / 预占已处理"},
        422: {"description": "请求验证失败"},
        500: {"description": "服务器内部错误"}
    }
)


# ==================== 公开接口 ====================

@router.get("/time", response_model=ServerTimeResponse, summary="服务器时间")
def get_server_time(service: FlashSaleService = Depends(get_flash_sale_service)):
    """服务器时间，供前端倒计时校准"""
    return {"success": True, "data": service.server_time()}


@router.get("/", response_model=FlashSaleListResponse, summary="进行中及即将开始的活动")
def list_active_sales(service: FlashSaleService = Depends(get_flash_sale_service)):
    try:
        sales = service.list_active_sales()
        return {"success": True, "count": len(sales), "data": sales}
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"查询活动列表失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== 预占接口（购物车 / 结算 / 支付调用） ====================

@router.post(
    "/{sale_id}/reserve",
    response_model=ReservationResponse,
    status_code=201,
    summary="预占秒杀库存",
    description="""原子预占秒杀商品库存，防止超卖。

    **特点：**
    - 单条带条件的 UPDATE 扣减剩余库存，无先读后写竞态
    - 同一事务内校验每人限购
    - 预占在保留时间（默认 5 分钟）后自动过期并归还库存
    """,
)
def reserve_stock(
    sale_id: int = Path(..., gt=0, description="秒杀活动ID"),
    request: ReserveRequest = Body(...),
    service: ReservationService = Depends(get_reservation_service),
):
    try:
        reservation = service.reserve(
            sale_id,
            request.product_id,
            request.user_id,
            request.quantity,
            loyalty_tier=request.loyalty_tier,
        )
        return {
            "success": True,
            "message": "预占成功，请在保留时间内完成支付",
            "data": reservation,
        }
    except ReservationError:
        # 业务异常交给全局处理器
        raise
    except Exception as e:
        logger.error(f"预占库存失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/reservations/{reservation_id}/confirm",
    response_model=ReservationResponse,
    summary="确认成交",
    description="支付成功后调用，预占状态变为 completed，数量计入已售。",
)
def confirm_purchase(
    reservation_id: int = Path(..., gt=0, description="预占ID"),
    service: ReservationService = Depends(get_reservation_service),
):
    try:
        reservation = service.confirm_purchase(reservation_id)
        return {"success": True, "message": "确认成功", "data": reservation}
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"确认成交失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/reservations/{reservation_id}/cancel",
    response_model=CancelResponse,
    summary="取消预占",
    description="用户放弃结算时调用，提前归还库存。已过期的预占视为已释放。",
)
def cancel_reservation(
    reservation_id: int = Path(..., gt=0, description="预占ID"),
    service: ReservationService = Depends(get_reservation_service),
):
    try:
        reservation, released = service.cancel(reservation_id)
        return {
            "success": True,
            "message": "释放成功" if released else "预占已过期",
            "data": reservation,
            "released": released,
        }
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"取消预占失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get(
    "/reservations/{reservation_id}",
    response_model=ReservationResponse,
    summary="查询预占记录",
)
def get_reservation(
    reservation_id: int = Path(..., gt=0, description="预占ID"),
    service: ReservationService = Depends(get_reservation_service),
):
    try:
        return {"success": True, "data": service.get_reservation(reservation_id)}
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"查询预占记录失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== 运营接口 ====================

@router.get("/admin/all", response_model=FlashSaleListResponse, summary="全部活动（分页）")
def list_all_sales(
    status: Optional[SaleStatus] = Query(None, description="按状态过滤"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: FlashSaleService = Depends(get_flash_sale_service),
):
    try:
        sales, total = service.list_sales(status=status, page=page, limit=limit)
        return {
            "success": True,
            "count": len(sales),
            "total": total,
            "page": page,
            "pages": ceil(total / limit),
            "data": sales,
        }
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"查询活动列表失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/", response_model=FlashSaleResponse, status_code=201, summary="创建秒杀活动")
def create_sale(
    request: FlashSaleCreate = Body(...),
    service: FlashSaleService = Depends(get_flash_sale_service),
):
    try:
        sale = service.create_sale(
            name=request.name,
            description=request.description,
            start_time=request.start_time,
            end_time=request.end_time,
            items=[item.model_dump() for item in request.items],
            early_access_tiers=request.early_access_tiers,
            early_access_minutes=request.early_access_minutes,
        )
        return {"success": True, "message": "秒杀活动创建成功", "data": sale}
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"创建秒杀活动失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== 运维接口 ====================

@router.post("/maintenance/sweep", response_model=SweepResponse, summary="手动触发过期清理")
def manual_sweep(
    batch_size: int = Query(500, ge=1, le=10000, description="批处理大小"),
    purge: bool = Query(False, description="同时删除超过保留期的历史记录"),
    sweeper: ExpirySweeper = Depends(get_expiry_sweeper),
):
    """手动触发清理任务（API 直接调用 Service）"""
    try:
        released = sweeper.sweep(batch_size)
        purged = sweeper.purge_finalized() if purge else None
        return {
            "success": True,
            "message": "手动清理完成",
            "released_count": released,
            "purged_count": purged,
        }
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"手动清理失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/maintenance/sweep/celery", response_model=CeleryTaskResponse, summary="提交异步清理任务")
def celery_sweep(batch_size: int = Query(500, ge=1, le=10000)):
    """触发 Celery 异步清理任务"""
    try:
        task = celery_sweep_task.delay(batch_size)
        return {"success": True, "message": "已提交异步清理任务", "task_id": task.id}
    except Exception as e:
        logger.error(f"Celery 任务提交失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/maintenance/tasks/{task_id}", response_model=TaskStatusResponse, summary="查询清理任务状态")
def get_task_status(task_id: str):
    try:
        task = celery_app.AsyncResult(task_id)

        if task.state == 'PENDING':
            status = "任务等待中"
        elif task.state == 'SUCCESS':
            status = f"任务完成: {task.result}"
        elif task.state == 'FAILURE':
            status = f"任务失败: {str(task.info)}"
        else:
            status = f"任务状态: {task.state}"

        return {"task_id": task_id, "status": status, "state": task.state}
    except Exception as e:
        logger.error(f"查询任务状态失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== 活动详情（路径参数路由放最后） ====================

@router.get(
    "/slug/{slug}",
    response_model=FlashSaleResponse,
    summary="按 slug 查询活动详情",
    description="店铺前台展示用，每个商品附带实时剩余库存 current_stock。",
)
def get_sale_by_slug(
    slug: str = Path(..., min_length=1, max_length=220),
    service: FlashSaleService = Depends(get_flash_sale_service),
):
    try:
        return {"success": True, "data": service.get_sale_by_slug(slug)}
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"查询活动失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{sale_id}", response_model=FlashSaleResponse, summary="活动详情")
def get_sale(
    sale_id: int = Path(..., gt=0),
    service: FlashSaleService = Depends(get_flash_sale_service),
):
    try:
        return {"success": True, "data": service.get_sale(sale_id)}
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"查询活动失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get(
    "/{sale_id}/products/{product_id}/stock",
    response_model=StockResponse,
    summary="查询活动商品剩余库存",
    description="""查询秒杀商品的剩余可抢数量。

    **缓存策略：**
    - 首先查询Redis缓存（短 TTL，陈旧时间有上限）
    - 缓存未命中则回收到期预占后查询数据库
    - 每次库存变更后主动失效缓存
    """,
)
def get_available_stock(
    sale_id: int = Path(..., gt=0),
    product_id: int = Path(..., gt=0),
    service: ReservationService = Depends(get_reservation_service),
):
    try:
        stock = service.get_available_stock(sale_id, product_id)
        return {
            "success": True,
            "sale_id": sale_id,
            "product_id": product_id,
            "available_stock": stock,
        }
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"查询库存失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/{sale_id}", response_model=FlashSaleResponse, summary="修改未开始的活动")
def update_sale(
    sale_id: int = Path(..., gt=0),
    request: FlashSaleUpdate = Body(...),
    service: FlashSaleService = Depends(get_flash_sale_service),
):
    try:
        sale = service.update_sale(sale_id, request.model_dump(exclude_unset=True))
        return {"success": True, "message": "秒杀活动更新成功", "data": sale}
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"修改秒杀活动失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{sale_id}/cancel", response_model=CancelSaleResponse, summary="取消秒杀活动")
def cancel_sale(
    sale_id: int = Path(..., gt=0),
    service: FlashSaleService = Depends(get_flash_sale_service),
):
    try:
        sale, released = service.cancel_sale(sale_id)
        return {
            "success": True,
            "message": "秒杀活动已取消",
            "data": sale,
            "released_count": released,
        }
    except ReservationError:
        raise
    except Exception as e:
        logger.error(f"取消秒杀活动失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
