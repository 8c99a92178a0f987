"""预占接口层测试（含并发防超卖）"""
import threading
import pytest
from datetime import timedelta
from sqlalchemy import select

from app.core.exceptions import (
    AlreadyTerminal,
    EarlyAccessOnly,
    InsufficientStock,
    InvalidRequest,
    LimitExceeded,
    SaleNotActive,
    SaleNotFound,
)
from app.models.flash_sales import SaleStatus
from app.models.sale_items import SaleItem
from app.models.stock_reservations import ReservationStatus
from app.services.reservation_service import ReservationService


def item_counters(db, item_id):
    item = db.execute(
        select(SaleItem)
        .where(SaleItem.id == item_id)
        .execution_options(populate_existing=True)
    ).scalar_one()
    return item.remaining, item.reserved_count, item.sold_count


class TestReservationService:

    def test_reserve_returns_id_and_expiry(self, db_session, make_sale, clock):
        sale = make_sale(stock_limit=5)
        service = ReservationService(db_session, clock=clock, hold_seconds=300)

        reservation = service.reserve(sale.id, 1, "u1", 1)

        assert reservation.id is not None
        assert reservation.expires_at == clock() + timedelta(minutes=5)
        assert service.get_available_stock(sale.id, 1) == 4

    def test_five_buyers_exhaust_stock(self, db_session, make_sale, clock):
        sale = make_sale(stock_limit=5, per_user_limit=2)
        service = ReservationService(db_session, clock=clock)

        for n in range(5):
            service.reserve(sale.id, 1, f"user-{n}", 1)
        with pytest.raises(InsufficientStock):
            service.reserve(sale.id, 1, "user-5", 1)

        assert service.get_available_stock(sale.id, 1) == 0
        assert item_counters(db_session, sale.items[0].id) == (0, 5, 0)

    def test_per_user_cap(self, db_session, make_sale, clock):
        sale = make_sale(stock_limit=10, per_user_limit=2)
        service = ReservationService(db_session, clock=clock)

        service.reserve(sale.id, 1, "u1", 1)
        service.reserve(sale.id, 1, "u1", 1)
        with pytest.raises(LimitExceeded):
            service.reserve(sale.id, 1, "u1", 1)

        assert service.get_available_stock(sale.id, 1) == 8

    def test_expiry_releases_stock(self, db_session, make_sale, clock):
        sale = make_sale(stock_limit=1)
        service = ReservationService(db_session, clock=clock, hold_seconds=300)
        service.reserve(sale.id, 1, "u1", 1)
        assert service.get_available_stock(sale.id, 1) == 0

        clock.advance(minutes=5, seconds=1)

        assert service.get_available_stock(sale.id, 1) == 1
        # 过期后其他用户可以抢到
        service.reserve(sale.id, 1, "u2", 1)

    def test_reserve_expires_due_holds_first(self, db_session, make_sale, clock):
        sale = make_sale(stock_limit=1, per_user_limit=1)
        service = ReservationService(db_session, clock=clock, hold_seconds=60)
        first = service.reserve(sale.id, 1, "u1", 1)

        clock.advance(seconds=61)
        again = service.reserve(sale.id, 1, "u1", 1)

        assert again.id != first.id
        assert service.get_reservation(first.id).status == ReservationStatus.EXPIRED

    def test_confirm_purchase(self, db_session, make_sale, clock):
        sale = make_sale(stock_limit=5)
        service = ReservationService(db_session, clock=clock)
        reservation = service.reserve(sale.id, 1, "u1", 2)

        confirmed = service.confirm_purchase(reservation.id)

        assert confirmed.status == ReservationStatus.COMPLETED
        assert item_counters(db_session, sale.items[0].id) == (3, 0, 2)

    def test_cancel_after_confirm_is_rejected(self, db_session, make_sale, clock):
        sale = make_sale(stock_limit=5)
        service = ReservationService(db_session, clock=clock)
        reservation = service.reserve(sale.id, 1, "u1", 1)
        service.confirm_purchase(reservation.id)

        with pytest.raises(AlreadyTerminal):
            service.cancel(reservation.id)

        assert item_counters(db_session, sale.items[0].id) == (4, 0, 1)

    def test_cancel_releases_early(self, db_session, make_sale, clock):
        sale = make_sale(stock_limit=5)
        service = ReservationService(db_session, clock=clock)
        reservation = service.reserve(sale.id, 1, "u1", 2)

        cancelled, released = service.cancel(reservation.id)

        assert released is True
        assert cancelled.status == ReservationStatus.EXPIRED
        assert service.get_available_stock(sale.id, 1) == 5

    def test_cancel_after_sweeper_is_benign(self, db_session, make_sale, clock):
        sale = make_sale(stock_limit=5)
        service = ReservationService(db_session, clock=clock)
        reservation = service.reserve(sale.id, 1, "u1", 1)
        service.ledger.release(reservation.id)

        cancelled, released = service.cancel(reservation.id)

        assert released is False
        assert cancelled.status == ReservationStatus.EXPIRED
        assert item_counters(db_session, sale.items[0].id) == (5, 0, 0)

    @pytest.mark.parametrize("quantity", [0, -1, 11])
    def test_reserve_rejects_bad_quantity(self, db_session, make_sale, clock, quantity):
        sale = make_sale()
        service = ReservationService(db_session, clock=clock)

        with pytest.raises(InvalidRequest):
            service.reserve(sale.id, 1, "u1", quantity)

    def test_reserve_unknown_sale_or_product(self, db_session, make_sale, clock):
        sale = make_sale()
        service = ReservationService(db_session, clock=clock)

        with pytest.raises(SaleNotFound):
            service.reserve(9999, 1, "u1", 1)
        with pytest.raises(SaleNotFound):
            service.reserve(sale.id, 42, "u1", 1)

    def test_reserve_before_start(self, db_session, make_sale, clock):
        sale = make_sale(starts_in=timedelta(hours=2))
        service = ReservationService(db_session, clock=clock)

        with pytest.raises(SaleNotActive) as exc_info:
            service.reserve(sale.id, 1, "u1", 1)
        assert "尚未开始" in exc_info.value.message

    def test_reserve_after_end(self, db_session, make_sale, clock):
        sale = make_sale(starts_in=timedelta(hours=-3), duration=timedelta(hours=1))
        service = ReservationService(db_session, clock=clock)

        with pytest.raises(SaleNotActive):
            service.reserve(sale.id, 1, "u1", 1)

    def test_reserve_on_cancelled_sale(self, db_session, make_sale, clock):
        sale = make_sale(status=SaleStatus.CANCELLED)
        service = ReservationService(db_session, clock=clock)

        with pytest.raises(SaleNotActive) as exc_info:
            service.reserve(sale.id, 1, "u1", 1)
        assert "取消" in exc_info.value.message

    def test_early_access_for_eligible_tier(self, db_session, make_sale, clock):
        sale = make_sale(
            starts_in=timedelta(minutes=15),
            early_access_tiers=["gold", "platinum"],
            early_access_minutes=30,
        )
        service = ReservationService(db_session, clock=clock)

        reservation = service.reserve(sale.id, 1, "u1", 1, loyalty_tier="Gold")
        assert reservation.status == ReservationStatus.PENDING

        with pytest.raises(EarlyAccessOnly) as exc_info:
            service.reserve(sale.id, 1, "u2", 1, loyalty_tier="bronze")
        assert exc_info.value.status_code == 403
        assert "15" in exc_info.value.message

    def test_no_oversell_under_concurrency(self, session_factory, make_sale, clock):
        stock = 4
        buyers = 12
        sale = make_sale(stock_limit=stock, per_user_limit=1)
        barrier = threading.Barrier(buyers)
        results = []
        lock = threading.Lock()

        def buy(n):
            db = session_factory()
            try:
                service = ReservationService(db, clock=clock)
                barrier.wait()
                try:
                    service.reserve(sale.id, 1, f"buyer-{n}", 1)
                    outcome = "ok"
                except InsufficientStock:
                    outcome = "sold_out"
                with lock:
                    results.append(outcome)
            finally:
                db.close()

        threads = [threading.Thread(target=buy, args=(n,)) for n in range(buyers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert len(results) == buyers
        assert results.count("ok") == stock
        assert results.count("sold_out") == buyers - stock

        db = session_factory()
        try:
            assert item_counters(db, sale.items[0].id) == (0, stock, 0)
        finally:
            db.close()

    def test_per_user_cap_under_concurrency(self, session_factory, make_sale, clock):
        per_user_limit = 2
        attempts = 8
        sale = make_sale(stock_limit=10, per_user_limit=per_user_limit)
        barrier = threading.Barrier(attempts)
        results = []
        lock = threading.Lock()

        def buy():
            db = session_factory()
            try:
                service = ReservationService(db, clock=clock)
                barrier.wait()
                try:
                    service.reserve(sale.id, 1, "same-user", 1)
                    outcome = "ok"
                except LimitExceeded:
                    outcome = "limited"
                with lock:
                    results.append(outcome)
            finally:
                db.close()

        threads = [threading.Thread(target=buy) for _ in range(attempts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert len(results) == attempts
        assert results.count("ok") == per_user_limit
        assert results.count("limited") == attempts - per_user_limit

        db = session_factory()
        try:
            # 被限购拒绝的请求已回滚扣减
            assert item_counters(db, sale.items[0].id) == (10 - per_user_limit, per_user_limit, 0)
        finally:
            db.close()
