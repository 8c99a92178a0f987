"""模型单元测试"""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy.exc import IntegrityError

from app.models.flash_sales import FlashSale, SaleStatus
from app.models.sale_items import SaleItem
from app.models.stock_reservations import StockReservation, ReservationStatus
from app.models.stock_logs import StockLog, ChangeType


START = datetime(2026, 6, 1, 20, 0, 0)


def new_sale(**overrides):
    values = dict(
        name="测试活动",
        slug="test-sale",
        start_time=START,
        end_time=START + timedelta(hours=1),
        early_access_tiers=[],
        early_access_minutes=30,
    )
    values.update(overrides)
    return FlashSale(**values)


def new_item(**overrides):
    values = dict(
        product_id=1,
        flash_price=Decimal("9.90"),
        original_price=Decimal("19.90"),
        stock_limit=10,
        remaining=10,
        reserved_count=0,
        sold_count=0,
        per_user_limit=2,
    )
    values.update(overrides)
    return SaleItem(**values)


class TestModels:
    """数据模型测试类"""

    def test_flash_sale_model(self, db_session):
        """测试秒杀活动模型"""
        sale = new_sale()
        sale.items = [new_item()]
        db_session.add(sale)
        db_session.commit()

        saved = db_session.query(FlashSale).first()
        assert saved.id is not None
        assert saved.slug == "test-sale"
        assert saved.status == SaleStatus.SCHEDULED
        assert saved.created_at is not None
        assert len(saved.items) == 1
        assert saved.items[0].flash_price == Decimal("9.90")

    def test_effective_status(self):
        """测试按时间推导活动状态"""
        sale = new_sale(status=SaleStatus.SCHEDULED)

        assert sale.effective_status(START - timedelta(seconds=1)) == SaleStatus.SCHEDULED
        assert sale.effective_status(START) == SaleStatus.ACTIVE
        assert sale.effective_status(START + timedelta(hours=1)) == SaleStatus.ENDED

        sale.status = SaleStatus.CANCELLED
        assert sale.effective_status(START + timedelta(minutes=5)) == SaleStatus.CANCELLED

    def test_early_access_window(self):
        """测试会员优先购时段"""
        sale = new_sale(early_access_minutes=30)

        assert sale.early_access_start == START - timedelta(minutes=30)
        assert sale.is_early_access_window(START - timedelta(minutes=10))
        assert not sale.is_early_access_window(START - timedelta(minutes=31))
        assert not sale.is_early_access_window(START)

    def test_find_item(self):
        sale = new_sale()
        sale.items = [new_item(product_id=1), new_item(product_id=2)]

        assert sale.find_item(2).product_id == 2
        assert sale.find_item(3) is None

    def test_sale_period_constraint(self, db_session):
        """测试结束时间必须晚于开始时间"""
        db_session.add(new_sale(end_time=START))

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_sale_item_unique_per_sale(self, db_session):
        """测试同一活动内商品唯一"""
        sale = new_sale()
        sale.items = [new_item(product_id=1), new_item(product_id=1)]
        db_session.add(sale)

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_sale_item_conservation_constraint(self, db_session):
        """测试 remaining + reserved_count + sold_count == stock_limit"""
        sale = new_sale()
        sale.items = [new_item(stock_limit=10, remaining=9, reserved_count=0, sold_count=0)]
        db_session.add(sale)

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_sale_item_remaining_non_negative(self, db_session):
        sale = new_sale()
        sale.items = [new_item(stock_limit=1, remaining=-1, reserved_count=2, sold_count=0)]
        db_session.add(sale)

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_stock_reservation_model(self, db_session):
        """测试预占记录模型"""
        sale = new_sale()
        sale.items = [new_item(remaining=8, reserved_count=2)]
        db_session.add(sale)
        db_session.flush()

        reservation = StockReservation(
            flash_sale_id=sale.id,
            sale_item_id=sale.items[0].id,
            product_id=1,
            user_id="u1",
            quantity=2,
            expires_at=START + timedelta(minutes=5),
        )
        db_session.add(reservation)
        db_session.commit()

        saved = db_session.query(StockReservation).first()
        assert saved.status == ReservationStatus.PENDING
        assert saved.is_pending
        assert saved.finalized_at is None

    def test_stock_reservation_quantity_positive(self, db_session):
        sale = new_sale()
        sale.items = [new_item()]
        db_session.add(sale)
        db_session.flush()

        db_session.add(
            StockReservation(
                flash_sale_id=sale.id,
                sale_item_id=sale.items[0].id,
                product_id=1,
                user_id="u1",
                quantity=0,
                expires_at=START,
            )
        )

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_stock_log_model(self, db_session):
        """测试库存流水模型"""
        log = StockLog(
            sale_item_id=1,
            reservation_id=1,
            change_type=ChangeType.RESERVE,
            quantity=-2,
            before_remaining=10,
            after_remaining=8,
            operator="user_u1",
            source="reservation_api",
        )
        db_session.add(log)
        db_session.commit()

        saved = db_session.query(StockLog).first()
        assert saved.change_type == ChangeType.RESERVE
        assert saved.before_remaining - saved.after_remaining == 2
        assert saved.created_at is not None
