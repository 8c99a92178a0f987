"""Celery 配置文件"""

from celery import Celery

from app.core.config import settings

# 创建 Celery 应用实例
app = Celery('flash_sale_worker', include=['tasks.flash_sale_tasks'])

# 配置 Redis 作为 broker 和 backend
app.conf.broker_url = f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/1"
app.conf.result_backend = f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/2"

# 任务序列化配置
app.conf.task_serializer = 'json'
app.conf.result_serializer = 'json'
app.conf.accept_content = ['json']

# 时区配置
app.conf.timezone = 'Asia/Shanghai'
app.conf.enable_utc = True

# 任务路由配置
app.conf.task_routes = {
    'tasks.flash_sale.*': {'queue': 'flash_sale'},
}

# 定时任务：过期预占清理、历史记录清理、活动状态推进
app.conf.beat_schedule = {
    'sweep-expired-reservations': {
        'task': 'tasks.flash_sale.sweep_expired_reservations',
        'schedule': settings.SWEEP_INTERVAL_SECONDS,
    },
    'purge-finalized-reservations': {
        'task': 'tasks.flash_sale.purge_finalized_reservations',
        'schedule': 3600.0,
    },
    'refresh-sale-statuses': {
        'task': 'tasks.flash_sale.refresh_sale_statuses',
        'schedule': settings.STATUS_REFRESH_SECONDS,
    },
}

# Worker 配置
app.conf.worker_prefetch_multiplier = 1
app.conf.task_acks_late = True

# 导出应用实例
__all__ = ['app']
