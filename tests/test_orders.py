"""Tests for order placement: duplicate guard, stock transaction, concurrency."""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError

import core
from conftest import ADDRESS, line
from core import Book, Order, db, run_transaction, utcnow
from errors import (
    BookNotFoundError,
    DuplicateOrderError,
    InsufficientStockError,
    InvalidOrderError,
    InvalidOrderStatusError,
    TransactionConflictError,
)
from orders import (
    LineItem,
    ShippingAddress,
    create_order,
    get_all_orders,
    get_order,
    get_user_orders,
    is_duplicate_order,
    place_order,
    update_order_status,
)


def backdate(order_id, minutes):
    db.session.execute(
        update(Order)
        .where(Order.order_id == order_id)
        .values(created_at=utcnow() - timedelta(minutes=minutes))
    )
    db.session.commit()


class TestCreateOrder:
    def test_creates_pending_order_and_decrements_stock(self, ctx, make_book, stock_of):
        a = make_book("Sapiens", stock=5)
        b = make_book("Coraline", stock=2, category="Fiction")

        order_id = create_order("u1", [line(a, 2), line(b, 1)], Decimal("1490.00"), ADDRESS)

        order = get_order(order_id)
        assert order.status == "pending"
        assert order.user_id == "u1"
        assert order.total == Decimal("1490.00")
        assert order.created_at is not None and order.updated_at == order.created_at
        assert (order.name, order.city) == ("Ayesha Rahman", "Dhaka")
        assert stock_of(a) == 3
        assert stock_of(b) == 1

    def test_line_items_are_stored_as_submitted(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        b = make_book("Coraline", stock=5, category="Fiction")
        items = [
            LineItem(book_id=b, quantity=1, title="Coraline (cart copy)", author="N. Gaiman",
                     price=Decimal("399.99"), image="https://cdn.example.com/c.jpg"),
            LineItem(book_id=a, quantity=3, title="Sapiens", author="Harari", price=Decimal("650")),
        ]

        order = get_order(create_order("u1", items, "2349.99", ADDRESS))

        assert [(li.book_id, li.qty) for li in order.items] == [(b, 1), (a, 3)]
        assert order.items[0].title == "Coraline (cart copy)"
        assert order.items[0].price == Decimal("399.99")
        assert order.items[0].image == "https://cdn.example.com/c.jpg"
        assert order.items[1].price == Decimal("650.00")

    def test_missing_book_aborts_everything(self, ctx, make_book, stock_of):
        a = make_book("Sapiens", stock=5)

        with pytest.raises(BookNotFoundError) as excinfo:
            create_order("u1", [line(a, 1), line(9999, 1)], "200.00", ADDRESS)

        assert excinfo.value.book_id == 9999
        assert stock_of(a) == 5
        assert Order.query.count() == 0

    def test_insufficient_stock_leaves_every_book_unchanged(self, ctx, make_book, stock_of):
        plenty = make_book("Sapiens", stock=10)
        scarce = make_book("Coraline", stock=1, category="Fiction")

        with pytest.raises(InsufficientStockError) as excinfo:
            create_order("u1", [line(plenty, 2), line(scarce, 2)], "400.00", ADDRESS)

        assert excinfo.value.book_id == scarce
        assert excinfo.value.requested == 2
        assert excinfo.value.available == 1
        assert stock_of(plenty) == 10
        assert stock_of(scarce) == 1
        assert Order.query.count() == 0

    def test_repeated_lines_for_one_book_are_checked_together(self, ctx, make_book, stock_of):
        a = make_book("Sapiens", stock=3)

        with pytest.raises(InsufficientStockError) as excinfo:
            create_order("u1", [line(a, 2), line(a, 2)], "400.00", ADDRESS)

        assert excinfo.value.requested == 4
        assert stock_of(a) == 3

    def test_exact_stock_can_be_sold_out(self, ctx, make_book, stock_of):
        a = make_book("Sapiens", stock=2)

        create_order("u1", [line(a, 2)], "200.00", ADDRESS)

        assert stock_of(a) == 0

    def test_is_not_idempotent(self, ctx, make_book, stock_of):
        a = make_book("Sapiens", stock=5)

        first = create_order("u1", [line(a, 1)], "100.00", ADDRESS)
        second = create_order("u1", [line(a, 1)], "100.00", ADDRESS)

        assert first != second
        assert Order.query.count() == 2
        assert stock_of(a) == 3

    @pytest.mark.parametrize("items", [[], [LineItem(book_id=1, quantity=0)], [LineItem(book_id=1, quantity=-2)]])
    def test_rejects_empty_orders_and_bad_quantities(self, ctx, make_book, items):
        make_book("Sapiens", stock=5)

        with pytest.raises(InvalidOrderError):
            create_order("u1", items, "0.00", ADDRESS)

        assert Order.query.count() == 0

    def test_timestamps_come_from_the_database_clock(self, ctx, make_book, monkeypatch):
        monkeypatch.setattr(core, "utcnow", lambda: datetime(2001, 1, 1))
        a = make_book("Sapiens", stock=5)

        order = get_order(create_order("u1", [line(a, 1)], "100.00", ADDRESS))

        assert order.created_at.tzinfo is None
        assert abs(order.created_at - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(minutes=5)
        assert is_duplicate_order("u1", [line(a, 1)])

    def test_later_catalog_edits_do_not_change_placed_orders(self, ctx, make_book):
        a = make_book("Sapiens", stock=5, price="650.00")
        order_id = create_order("u1", [line(a, 1, price="650.00", title="Sapiens")], "840.00", ADDRESS)

        book = db.session.get(Book, a)
        book.title = "Sapiens (Anniversary Edition)"
        book.price = Decimal("999.00")
        db.session.commit()

        item = get_order(order_id).items[0]
        assert item.title == "Sapiens"
        assert item.price == Decimal("650.00")


class TestDuplicateGuard:
    def test_identical_recent_order_is_a_duplicate(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        create_order("u1", [line(a, 2)], "200.00", ADDRESS)

        assert is_duplicate_order("u1", [line(a, 2)])

    def test_line_order_price_and_title_are_ignored(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        b = make_book("Coraline", stock=5, category="Fiction")
        create_order("u1", [line(a, 1), line(b, 2)], "300.00", ADDRESS)

        assert is_duplicate_order("u1", [line(b, 2, price="1.00", title="x"), line(a, 1)])

    def test_changed_quantity_is_not_a_duplicate(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        create_order("u1", [line(a, 1)], "100.00", ADDRESS)

        assert not is_duplicate_order("u1", [line(a, 2)])

    def test_added_or_removed_item_is_not_a_duplicate(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        b = make_book("Coraline", stock=5, category="Fiction")
        create_order("u1", [line(a, 1)], "100.00", ADDRESS)
        create_order("u2", [line(a, 1), line(b, 1)], "200.00", ADDRESS)

        assert not is_duplicate_order("u1", [line(a, 1), line(b, 1)])
        assert not is_duplicate_order("u2", [line(a, 1)])

    def test_other_users_orders_do_not_count(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        create_order("u1", [line(a, 1)], "100.00", ADDRESS)

        assert not is_duplicate_order("u2", [line(a, 1)])

    def test_orders_older_than_the_window_do_not_count(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        order_id = create_order("u1", [line(a, 1)], "100.00", ADDRESS)
        backdate(order_id, 61)

        assert not is_duplicate_order("u1", [line(a, 1)])

    def test_window_is_configurable(self, app, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        order_id = create_order("u1", [line(a, 1)], "100.00", ADDRESS)
        backdate(order_id, 10)
        app.config["DUPLICATE_ORDER_WINDOW"] = timedelta(minutes=5)

        assert not is_duplicate_order("u1", [line(a, 1)])


class TestPlaceOrder:
    def test_resubmitting_the_same_cart_is_rejected(self, ctx, make_book, stock_of):
        b1 = make_book("Sapiens", stock=10)
        first = place_order("U", [line(b1, 1)], "100.00", ADDRESS)
        backdate(first, 5)

        with pytest.raises(DuplicateOrderError):
            place_order("U", [line(b1, 1)], "100.00", ADDRESS)

        assert stock_of(b1) == 9
        assert [o.order_id for o in get_user_orders("U")] == [first]

    def test_duplicate_check_runs_before_the_stock_check(self, ctx, make_book):
        a = make_book("Sapiens", stock=1)
        place_order("U", [line(a, 1)], "100.00", ADDRESS)

        # stock is now 0, yet the repeat is reported as a duplicate
        with pytest.raises(DuplicateOrderError):
            place_order("U", [line(a, 1)], "100.00", ADDRESS)

    def test_different_cart_goes_through(self, ctx, make_book, stock_of):
        a = make_book("Sapiens", stock=10)
        place_order("U", [line(a, 1)], "100.00", ADDRESS)

        place_order("U", [line(a, 2)], "200.00", ADDRESS)

        assert stock_of(a) == 7

    def test_same_cart_after_an_hour_goes_through(self, ctx, make_book):
        a = make_book("Sapiens", stock=10)
        first = place_order("U", [line(a, 1)], "100.00", ADDRESS)
        backdate(first, 90)

        place_order("U", [line(a, 1)], "100.00", ADDRESS)

        assert len(get_user_orders("U")) == 2


class TestConcurrentCheckout:
    def _race(self, app, user_ids, items):
        barrier = threading.Barrier(len(user_ids))
        results = {}

        def checkout(user_id):
            with app.app_context():
                barrier.wait()
                try:
                    results[user_id] = place_order(user_id, items, "200.00", ADDRESS)
                except Exception as exc:
                    results[user_id] = exc

        threads = [threading.Thread(target=checkout, args=(u,)) for u in user_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=120)
        return results

    def test_two_checkouts_for_the_last_copies(self, app, make_book, stock_of):
        a = make_book("Sapiens", stock=3)

        results = self._race(app, ["alice", "bob"], [line(a, 2)])

        placed = [r for r in results.values() if isinstance(r, str)]
        failed = [r for r in results.values() if not isinstance(r, str)]
        assert len(placed) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InsufficientStockError)
        assert failed[0].book_id == a
        assert stock_of(a) == 1
        with app.app_context():
            assert Order.query.count() == 1

    def test_stock_never_goes_negative_under_contention(self, app, make_book, stock_of):
        a = make_book("Sapiens", stock=3)

        results = self._race(app, [f"user{i}" for i in range(6)], [line(a, 1)])

        placed = [r for r in results.values() if isinstance(r, str)]
        failed = [r for r in results.values() if not isinstance(r, str)]
        assert len(placed) == 3
        assert all(isinstance(exc, InsufficientStockError) for exc in failed)
        assert stock_of(a) == 0
        with app.app_context():
            assert Order.query.count() == 3


class TestRunTransaction:
    @pytest.fixture(autouse=True)
    def no_backoff(self, monkeypatch):
        monkeypatch.setattr(core, "RETRY_BASE_DELAY", 0)

    def test_conflicts_are_retried(self, ctx):
        calls = []

        def work(session):
            calls.append(1)
            if len(calls) < 3:
                raise core.StaleWrite("stock moved")
            return "done"

        assert run_transaction(work, attempts=5) == "done"
        assert len(calls) == 3

    def test_locked_database_is_a_conflict(self, ctx):
        calls = []

        def work(session):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("UPDATE book", {}, Exception("database is locked"))
            return "done"

        assert run_transaction(work, attempts=2) == "done"

    def test_gives_up_after_the_retry_budget(self, ctx):
        def work(session):
            raise core.StaleWrite("stock moved")

        with pytest.raises(TransactionConflictError) as excinfo:
            run_transaction(work, attempts=3)

        assert excinfo.value.attempts == 3

    def test_other_database_errors_propagate_at_once(self, ctx):
        calls = []

        def work(session):
            calls.append(1)
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(IntegrityError):
            run_transaction(work, attempts=5)

        assert len(calls) == 1

    def test_failure_rolls_back_pending_writes(self, ctx):
        def work(session):
            session.add(Book(slug="x", title="X", author="Y", category="Fiction", price=Decimal("1.00"), stock=1))
            session.flush()
            raise ValueError("boom")

        with pytest.raises(ValueError):
            run_transaction(work, attempts=5)

        assert Book.query.count() == 0


class TestOrderAdministration:
    def test_status_update(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        order_id = create_order("u1", [line(a, 1)], "100.00", ADDRESS)

        order = update_order_status(order_id, "shipped")

        assert order.status == "shipped"
        assert order.updated_at >= order.created_at

    def test_status_update_does_not_touch_stock(self, ctx, make_book, stock_of):
        a = make_book("Sapiens", stock=5)
        order_id = create_order("u1", [line(a, 1)], "100.00", ADDRESS)

        update_order_status(order_id, "cancelled")

        assert stock_of(a) == 4

    def test_unknown_status_is_rejected(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        order_id = create_order("u1", [line(a, 1)], "100.00", ADDRESS)

        with pytest.raises(InvalidOrderStatusError):
            update_order_status(order_id, "lost")

        assert get_order(order_id).status == "pending"

    def test_search_matches_id_status_name_and_email(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        first = create_order("u1", [line(a, 1)], "100.00", ADDRESS)
        other = ShippingAddress(name="Rafiq Islam", email="rafiq@example.org", phone="0181",
                                street="1 Road", city="Khulna")
        second = create_order("u2", [line(a, 2)], "200.00", other)
        update_order_status(second, "completed")

        assert [o.order_id for o in get_all_orders("rafiq")] == [second]
        assert [o.order_id for o in get_all_orders("AYESHA@")] == [first]
        assert [o.order_id for o in get_all_orders("complete")] == [second]
        assert [o.order_id for o in get_all_orders(first.lower())] == [first]
        assert len(get_all_orders("")) == 2

    def test_user_orders_newest_first(self, ctx, make_book):
        a = make_book("Sapiens", stock=5)
        older = create_order("u1", [line(a, 1)], "100.00", ADDRESS)
        backdate(older, 120)
        newer = create_order("u1", [line(a, 1)], "100.00", ADDRESS)

        assert [o.order_id for o in get_user_orders("u1")] == [newer, older]
