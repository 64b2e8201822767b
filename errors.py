# errors.py
"""Exceptions raised by the bookstore.

Messages are written to be flashed to the user as-is.
"""


class BookstoreError(Exception):
    """Base exception for all bookstore errors."""


class CheckoutError(BookstoreError):
    """A checkout attempt failed and nothing was written."""


class DuplicateOrderError(CheckoutError):
    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(
            "Similar order detected within the last hour. "
            "Please wait before placing identical orders."
        )


class BookNotFoundError(CheckoutError):
    def __init__(self, book_id):
        self.book_id = book_id
        super().__init__(f"Book {book_id} is no longer available.")


class InsufficientStockError(CheckoutError):
    def __init__(self, book_id, requested, available):
        self.book_id = book_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for book {book_id}: "
            f"requested {requested}, only {available} left."
        )


class TransactionConflictError(CheckoutError):
    """The store could not serialize the order after retrying."""

    def __init__(self, attempts):
        self.attempts = attempts
        super().__init__("The store is busy right now. Please try again.")


class InvalidOrderError(CheckoutError):
    pass


class OrderNotFoundError(BookstoreError):
    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class InvalidOrderStatusError(BookstoreError):
    def __init__(self, status):
        self.status = status
        super().__init__(f"Invalid order status: {status}")


class CourierError(BookstoreError):
    """The courier API rejected a request or could not be reached."""
