# orders.py
"""Order placement.

``place_order`` is the checkout entry point and works in two layers:

1. ``is_duplicate_order`` is a best-effort read that rejects a repeat of one
   of the user's orders from the last hour. Two near-simultaneous identical
   submissions can both get past it; the stock invariant does not depend on it.
2. ``create_order`` is the only code path that creates an Order and
   decrements stock. Everything it does commits together or not at all. It is
   not idempotent: the same input twice gives two orders and two decrements.

Neither layer retries on its own. Conflict retries happen inside
``core.run_transaction``.
"""
from collections import Counter
from dataclasses import asdict, dataclass
from decimal import Decimal
import logging, uuid

from flask import current_app
from sqlalchemy import func, or_, select, update

from core import db, Book, Order, OrderItem, ORDER_STATUSES, StaleWrite, db_now, run_transaction
from errors import (
    BookNotFoundError,
    DuplicateOrderError,
    InsufficientStockError,
    InvalidOrderError,
    InvalidOrderStatusError,
    OrderNotFoundError,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
REQUIRED_ADDRESS_FIELDS = ("name", "email", "phone", "street", "city")


@dataclass(frozen=True)
class LineItem:
    book_id: int
    quantity: int
    title: str = ""
    author: str = ""
    price: Decimal = Decimal("0.00")
    image: str | None = None

    @classmethod
    def from_cart(cls, entry):
        return cls(
            book_id=int(entry["id"]),
            quantity=int(entry["quantity"]),
            title=entry.get("title", ""),
            author=entry.get("author", ""),
            price=Decimal(str(entry.get("price", "0"))),
            image=entry.get("image"),
        )


@dataclass(frozen=True)
class ShippingAddress:
    name: str
    email: str
    phone: str
    street: str
    city: str
    state: str = ""
    zip_code: str = ""

    @classmethod
    def from_form(cls, form):
        return cls(
            name=form.get("name", "").strip(),
            email=form.get("email", "").strip(),
            phone=form.get("phone", "").strip(),
            street=form.get("street", "").strip(),
            city=form.get("city", "").strip(),
            state=form.get("state", "").strip(),
            zip_code=form.get("zip_code", "").strip(),
        )

    def missing_fields(self):
        return [f for f in REQUIRED_ADDRESS_FIELDS if not getattr(self, f)]


def _validate(items):
    if not items:
        raise InvalidOrderError("Your cart is empty.")
    for item in items:
        qty = item.quantity
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise InvalidOrderError(f"Invalid quantity for book {item.book_id}: {qty!r}")


def _new_order_id():
    return uuid.uuid4().hex[:12].upper()


# --- Duplicate-submission guard ---
def is_duplicate_order(user_id, items, now=None):
    """True if the user placed an order with the same (book, quantity) lines recently.

    Lines are compared as a multiset; price, title and line order are ignored.
    """
    now = now or db_now()
    since = now - current_app.config["DUPLICATE_ORDER_WINDOW"]
    recent = (
        Order.query.filter(Order.user_id == user_id, Order.created_at >= since)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
    wanted = Counter((item.book_id, item.quantity) for item in items)
    for order in recent:
        if len(order.items) != len(items):
            continue
        if Counter((li.book_id, li.qty) for li in order.items) == wanted:
            logger.info("Order %s matches new submission from user %s", order.order_id, user_id)
            return True
    return False


# --- Stock-validated transaction ---
def create_order(user_id, items, total, shipping_address):
    """Create a pending order and take its books out of stock, atomically.

    Returns the public order id. Raises BookNotFoundError or
    InsufficientStockError (nothing written) or TransactionConflictError when
    concurrent checkouts kept invalidating the unit.
    """
    _validate(items)
    # the same book may appear on more than one line
    needed = Counter()
    for item in items:
        needed[item.book_id] += item.quantity
    total = Decimal(str(total)).quantize(CENT)

    def work(session):
        # reads
        stmt = (
            select(Book)
            .where(Book.id.in_(list(needed)))
            .order_by(Book.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        books = {book.id: book for book in session.scalars(stmt)}
        for book_id, qty in needed.items():
            book = books.get(book_id)
            if book is None:
                raise BookNotFoundError(book_id)
            if book.stock < qty:
                raise InsufficientStockError(book_id, qty, book.stock)

        # writes
        now = db_now(session)
        order = Order(
            order_id=_new_order_id(),
            user_id=user_id,
            total=total,
            status="pending",
            created_at=now,
            updated_at=now,
            **asdict(shipping_address),
        )
        order.items = [
            OrderItem(
                position=pos,
                book_id=item.book_id,
                title=item.title,
                author=item.author,
                price=Decimal(str(item.price)).quantize(CENT),
                qty=item.quantity,
                image=item.image,
            )
            for pos, item in enumerate(items)
        ]
        session.add(order)
        for book_id in sorted(needed):
            qty = needed[book_id]
            result = session.execute(
                update(Book)
                .where(Book.id == book_id, Book.stock >= qty)
                .values(stock=Book.stock - qty, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleWrite(f"stock of book {book_id} changed during checkout")
        return order.order_id

    order_id = run_transaction(work)
    logger.info("Order %s placed by user %s (%d lines, total %s)", order_id, user_id, len(items), total)
    return order_id


def place_order(user_id, items, total, shipping_address):
    """Checkout entry point: duplicate guard first, then the stock transaction."""
    _validate(items)
    if is_duplicate_order(user_id, items):
        logger.warning("Rejected duplicate order from user %s", user_id)
        raise DuplicateOrderError(user_id)
    return create_order(user_id, items, total, shipping_address)


# --- Queries ---
def get_order(order_id, user_id=None):
    query = Order.query.filter_by(order_id=order_id)
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    order = query.first()
    if order is None:
        raise OrderNotFoundError(order_id)
    return order


def get_user_orders(user_id):
    return Order.query.filter_by(user_id=user_id).order_by(Order.created_at.desc(), Order.id.desc()).all()


def get_all_orders(search=None):
    query = Order.query
    q = (search or "").strip().lower()
    if q:
        like = f"%{q}%"
        query = query.filter(
            or_(
                func.lower(Order.order_id).like(like),
                func.lower(Order.status).like(like),
                func.lower(Order.name).like(like),
                func.lower(Order.email).like(like),
            )
        )
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


# --- Administrative updates ---
def update_order_status(order_id, status):
    if status not in ORDER_STATUSES:
        raise InvalidOrderStatusError(status)
    order = get_order(order_id)
    previous = order.status
    order.status = status
    order.updated_at = db_now()
    db.session.commit()
    logger.info("Order %s status %s -> %s", order_id, previous, status)
    return order


def record_consignment(order_id, consignment):
    """Store the courier's ids on an order after it has been dispatched."""
    order = get_order(order_id)
    order.consignment_id = str(consignment["consignment_id"])
    order.tracking_code = consignment.get("tracking_code")
    order.courier_status = consignment.get("status")
    order.updated_at = db_now()
    db.session.commit()
    return order
