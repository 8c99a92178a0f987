"""秒杀相关的 Celery 定时任务"""

from celery_app import app
from app.core.redis import redis_client, redlock
from app.db.session import SessionLocal
from app.services.expiry_sweeper import ExpirySweeper
from app.services.flash_sale_service import FlashSaleService
import logging

logger = logging.getLogger(__name__)

@app.task(name='tasks.flash_sale.sweep_expired_reservations')
def sweep_expired_reservations(batch_size: int = None):
    """释放到期未支付的预占

    Args:
        batch_size: 批处理大小，默认取配置 SWEEP_BATCH_SIZE

    Returns:
        清理结果描述
    """
    db = SessionLocal()
    try:
        sweeper = ExpirySweeper(db, redis_client, redlock)
        count = sweeper.sweep(batch_size)
        result = f"成功释放 {count} 条过期预占记录"
        logger.info(result)
        return result
    except Exception as e:
        logger.error(f"过期预占清理任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

@app.task(name='tasks.flash_sale.purge_finalized_reservations')
def purge_finalized_reservations():
    """删除超过保留期的终态预占记录"""
    db = SessionLocal()
    try:
        sweeper = ExpirySweeper(db, redis_client)
        count = sweeper.purge_finalized()
        return f"成功删除 {count} 条历史预占记录"
    except Exception as e:
        logger.error(f"历史预占清理任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

@app.task(name='tasks.flash_sale.refresh_sale_statuses')
def refresh_sale_statuses():
    """按时间推进活动状态"""
    db = SessionLocal()
    try:
        service = FlashSaleService(db, redis_client)
        return service.refresh_statuses()
    except Exception as e:
        logger.error(f"活动状态更新任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

# 导出任务
__all__ = [
    'sweep_expired_reservations',
    'purge_finalized_reservations',
    'refresh_sale_statuses'
]
