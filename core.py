# core.py
from flask import Flask, current_app
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging, os, random, time, uuid

from errors import TransactionConflictError

logger = logging.getLogger(__name__)

# --- DB handle (imported by blueprints) ---
db = SQLAlchemy()

# --- Constants shared across blueprints ---
DELIVERY_CHARGE = Decimal("180.00")
FREE_DELIVERY_MIN = Decimal("1000.00")   # delivery is free at or above this subtotal
COD_FEE = Decimal("10.00")               # cash-on-delivery handling fee
CATEGORY_ORDER = ["Fiction", "Non-Fiction", "Children's"]
ORDER_STATUSES = ["pending", "processing", "shipped", "completed", "cancelled"]

# Postgres serialization_failure / deadlock_detected
CONFLICT_SQLSTATES = {"40001", "40P01"}
RETRY_BASE_DELAY = 0.05  # seconds


def utcnow():
    """Naive UTC timestamp; SQLite drops tzinfo on the way in anyway."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def db_now(session=None):
    """The database server's clock as naive UTC, so every host stamps orders alike."""
    value = (session or db.session).scalar(select(func.now()))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def new_id():
    return uuid.uuid4().hex


# --- Models ---
class Book(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(120), unique=True, nullable=False)
    title = db.Column(db.String(200), nullable=False)
    author = db.Column(db.String(120), nullable=False)
    category = db.Column(db.String(40), nullable=False)  # Fiction, Non-Fiction, Children's
    price = db.Column(db.Numeric(10, 2), nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    image = db.Column(db.String(500), nullable=True)  # CDN url or path in /static
    description = db.Column(db.Text, nullable=True)
    featured = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (db.CheckConstraint("stock >= 0", name="ck_book_stock_non_negative"),)


class User(db.Model):
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    email = db.Column(db.String(200), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class Cart(db.Model):
    """Stored cart of a signed-in user; anonymous carts live in the session."""
    user_id = db.Column(db.String(32), primary_key=True)
    items = db.Column(db.JSON, nullable=False, default=list)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(12), unique=True, nullable=False)
    user_id = db.Column(db.String(32), nullable=False, index=True)
    total = db.Column(db.Numeric(10, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    # shipping address
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(200), nullable=False)
    phone = db.Column(db.String(40), nullable=False)
    street = db.Column(db.String(200), nullable=False)
    city = db.Column(db.String(80), nullable=False)
    state = db.Column(db.String(80), nullable=True)
    zip_code = db.Column(db.String(20), nullable=True)
    # courier
    consignment_id = db.Column(db.String(40), nullable=True)
    tracking_code = db.Column(db.String(40), nullable=True)
    courier_status = db.Column(db.String(40), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, nullable=False)

    items = db.relationship(
        "OrderItem", order_by="OrderItem.position", cascade="all, delete-orphan", lazy="selectin"
    )


class OrderItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id_fk = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    book_id = db.Column(db.Integer, nullable=False)  # by value; the book may be edited or deleted later
    title = db.Column(db.String(200), nullable=False)
    author = db.Column(db.String(120), nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    qty = db.Column(db.Integer, nullable=False)
    image = db.Column(db.String(500), nullable=True)


# --- Transactions ---
class StaleWrite(Exception):
    """A guarded write matched no row because a concurrent commit got there first."""


def is_conflict(exc):
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in CONFLICT_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


def run_transaction(work, attempts=None):
    """Run ``work(session)`` and commit it as one all-or-nothing unit.

    Conflicting concurrent commits roll the unit back and run it again from
    its first read, up to ``attempts`` times in total. Anything else rolls
    back and propagates unchanged.
    """
    attempts = attempts or current_app.config["ORDER_TRANSACTION_ATTEMPTS"]
    for attempt in range(1, attempts + 1):
        try:
            result = work(db.session)
            db.session.commit()
            return result
        except StaleWrite as exc:
            db.session.rollback()
            logger.warning("Transaction conflict (attempt %d/%d): %s", attempt, attempts, exc)
        except DBAPIError as exc:
            db.session.rollback()
            if not is_conflict(exc):
                raise
            logger.warning("Transaction conflict (attempt %d/%d): %s", attempt, attempts, exc.orig)
        except Exception:
            db.session.rollback()
            raise
        if attempt < attempts:
            time.sleep(RETRY_BASE_DELAY * attempt * (1 + random.random()))
    raise TransactionConflictError(attempts)


def seed_if_empty():
    """Seed initial books on first run."""
    if Book.query.count() > 0:
        return
    books = [
        # Children's
        {"slug": "where-the-wild-things-are", "title": "Where the Wild Things Are", "author": "Maurice Sendak",
         "category": "Children's", "price": Decimal("350.00"), "stock": 12},
        {"slug": "the-very-hungry-caterpillar", "title": "The Very Hungry Caterpillar", "author": "Eric Carle",
         "category": "Children's", "price": Decimal("320.00"), "stock": 15},
        # Fiction
        {"slug": "the-phantom-tollbooth", "title": "The Phantom Tollbooth", "author": "Norton Juster",
         "category": "Fiction", "price": Decimal("450.00"), "stock": 8, "featured": True},
        {"slug": "coraline", "title": "Coraline", "author": "Neil Gaiman",
         "category": "Fiction", "price": Decimal("420.00"), "stock": 10},
        # Non-Fiction
        {"slug": "sapiens", "title": "Sapiens", "author": "Yuval Noah Harari",
         "category": "Non-Fiction", "price": Decimal("650.00"), "stock": 6, "featured": True},
        {"slug": "atomic-habits", "title": "Atomic Habits", "author": "James Clear",
         "category": "Non-Fiction", "price": Decimal("550.00"), "stock": 9},
    ]
    for b in books:
        db.session.add(Book(**b))
    db.session.commit()


def create_app(config=None):
    app = Flask(__name__)

    # --- Config ---
    BASE_DIR = os.path.abspath(os.path.dirname(__file__))
    DB_PATH = os.path.join(BASE_DIR, "bookstore.db")
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev-secret-change-me"),
        SQLALCHEMY_DATABASE_URI=os.environ.get("DATABASE_URL", f"sqlite:///{DB_PATH}"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        ADMIN_PASSWORD=os.environ.get("ADMIN_PASSWORD", "admin123"),
        DUPLICATE_ORDER_WINDOW=timedelta(hours=1),
        ORDER_TRANSACTION_ATTEMPTS=5,
        STEADFAST_API_URL=os.environ.get("STEADFAST_API_URL", "https://portal.steadfast.com.bd/api/v1"),
        STEADFAST_API_KEY=os.environ.get("STEADFAST_API_KEY", ""),
        STEADFAST_SECRET_KEY=os.environ.get("STEADFAST_SECRET_KEY", ""),
        COURIER_TIMEOUT=15,
        SEED_CATALOG=True,
    )
    if config:
        app.config.update(config)

    db.init_app(app)

    # Register blueprints (import inside to avoid circular imports)
    from shop import shop_bp
    from admin import admin_bp
    app.register_blueprint(shop_bp)          # storefront at /
    app.register_blueprint(admin_bp, url_prefix="/admin")

    # Ensure tables exist at startup
    with app.app_context():
        db.create_all()
        if app.config["SEED_CATALOG"]:
            seed_if_empty()

    logger.info("Bookstore app created (seed_catalog=%s)", app.config["SEED_CATALOG"])
    return app
