"""依赖注入配置模块"""

import logging

from fastapi import Depends
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

# 数据库会话依赖
from app.db.session import SessionLocal

# Redis 依赖
from app.core.redis import redis_client, redlock

from app.services.expiry_sweeper import ExpirySweeper
from app.services.flash_sale_service import FlashSaleService
from app.services.reservation_service import ReservationService

logger = logging.getLogger(__name__)


def get_redis():
    """获取同步 Redis 客户端，不可用时返回 None（退化为直接读库）"""
    try:
        redis_client.ping()
    except RedisError as e:
        logger.warning(f"Redis 不可用，跳过库存缓存: {e}")
        return None
    return redis_client

def get_redlock():
    """获取 Redlock 分布式锁实例"""
    if not redlock.servers:
        return None
    return redlock

def get_db() -> Session:
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_reservation_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
) -> ReservationService:
    return ReservationService(db=db, redis=redis)


def get_flash_sale_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
) -> FlashSaleService:
    return FlashSaleService(db=db, redis=redis)


def get_expiry_sweeper(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock),
) -> ExpirySweeper:
    return ExpirySweeper(db=db, redis=redis, rlock=rlock)
