"""Pytest fixtures for bookstore tests."""

from decimal import Decimal

import pytest

from core import Book, create_app, db
from orders import LineItem, ShippingAddress


ADDRESS = ShippingAddress(
    name="Ayesha Rahman",
    email="ayesha@example.com",
    phone="01700000000",
    street="12 Lake Road",
    city="Dhaka",
    state="Dhaka",
    zip_code="1205",
)


def line(book_id, qty=1, price="100.00", title="Some Book"):
    return LineItem(book_id=book_id, quantity=qty, title=title, author="Some Author", price=Decimal(price))


@pytest.fixture
def app(tmp_path):
    """App on a throwaway SQLite file, shared by every thread of a test."""
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'bookstore.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False, "timeout": 30}},
        "SEED_CATALOG": False,
        "ADMIN_PASSWORD": "letmein",
        "ORDER_TRANSACTION_ATTEMPTS": 20,
        "STEADFAST_API_KEY": "",
        "STEADFAST_SECRET_KEY": "",
    })
    yield app
    with app.app_context():
        db.engine.dispose()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_book(app):
    """Create a book in its own app context and return its id."""

    def _make(title="Sapiens", stock=5, price="650.00", category="Non-Fiction", **extra):
        slug = extra.pop("slug", "-".join(title.lower().split()))
        with app.app_context():
            book = Book(
                slug=slug,
                title=title,
                author=extra.pop("author", "Yuval Noah Harari"),
                category=category,
                price=Decimal(price),
                stock=stock,
                **extra,
            )
            db.session.add(book)
            db.session.commit()
            return book.id

    return _make


@pytest.fixture
def stock_of(app):
    def _stock(book_id):
        with app.app_context():
            return db.session.get(Book, book_id).stock

    return _stock


@pytest.fixture
def signed_in(client):
    """Client signed in as a storefront user."""
    client.post("/login", data={"email": "ayesha@example.com", "name": "Ayesha"})
    return client


@pytest.fixture
def admin_client(client):
    client.post("/admin/login", data={"password": "letmein"})
    return client
