"""测试配置和 fixtures"""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import Mock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from redis import Redis
from redlock import Redlock

import app.models  # noqa: F401  注册全部模型
from app.db.base import Base
from app.models.flash_sales import FlashSale, SaleStatus
from app.models.sale_items import SaleItem


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def db_engine(tmp_path):
    """基于临时文件的 SQLite 引擎（支持多线程并发测试）"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'flash_sale.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
        echo=False,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    """创建数据库会话"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 6, 1, 12, 0, 0))


@pytest.fixture
def mock_redis():
    """创建模拟 Redis 客户端"""
    redis_mock = Mock(spec=Redis)
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.delete.return_value = 1
    return redis_mock


@pytest.fixture
def mock_redlock():
    """创建模拟 Redlock 分布式锁"""
    redlock_mock = Mock(spec=Redlock)
    lock_mock = Mock()
    redlock_mock.lock.return_value = lock_mock
    redlock_mock.unlock.return_value = True
    return redlock_mock


@pytest.fixture
def make_sale(db_session, clock):
    """直接写库创建秒杀活动，时间相对于 FakeClock"""

    def _make(
        stock_limit=5,
        per_user_limit=2,
        product_id=1,
        starts_in=timedelta(minutes=-10),
        duration=timedelta(hours=2),
        early_access_tiers=None,
        early_access_minutes=30,
        status=None,
        name="Croissant Rush",
    ):
        start = clock() + starts_in
        sale = FlashSale(
            name=name,
            slug=f"{name.lower().replace(' ', '-')}-{product_id}-{start.timestamp():.0f}",
            start_time=start,
            end_time=start + duration,
            early_access_tiers=early_access_tiers or [],
            early_access_minutes=early_access_minutes,
        )
        sale.items = [
            SaleItem(
                product_id=product_id,
                flash_price=Decimal("19.90"),
                original_price=Decimal("39.90"),
                stock_limit=stock_limit,
                remaining=stock_limit,
                reserved_count=0,
                sold_count=0,
                per_user_limit=per_user_limit,
            )
        ]
        sale.status = status or sale.effective_status(clock())
        db_session.add(sale)
        db_session.commit()
        return sale

    return _make
