# shop.py
from flask import Blueprint, render_template, redirect, url_for, session, request, flash, abort
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from decimal import Decimal
import logging

from core import db, Book, Cart, User, DELIVERY_CHARGE, FREE_DELIVERY_MIN, COD_FEE, CATEGORY_ORDER
from errors import CheckoutError, OrderNotFoundError
from orders import LineItem, ShippingAddress, place_order, get_order, get_user_orders

logger = logging.getLogger(__name__)

shop_bp = Blueprint("shop", __name__)

CENT = Decimal("0.01")


# --- Helpers (storefront-specific) ---
def featured_books():
    books = Book.query.filter_by(featured=True).order_by(Book.title).all()
    return books or Book.query.order_by(Book.created_at.desc()).limit(4).all()


def current_user_id():
    return session.get("user_id")


def require_user():
    if current_user_id():
        return None
    return redirect(url_for("shop.login", next=request.path))


def load_cart():
    """Cart entries as dicts: id, title, author, price, image, quantity."""
    user_id = current_user_id()
    if user_id:
        cart = db.session.get(Cart, user_id)
        entries = cart.items if cart else []
    else:
        entries = session.get("cart", [])
    # copies, so in-place edits never alias the stored JSON
    return [dict(entry) for entry in entries]


def save_cart(items):
    user_id = current_user_id()
    if not user_id:
        session["cart"] = items
        return
    cart = db.session.get(Cart, user_id)
    if cart is None:
        cart = Cart(user_id=user_id)
        db.session.add(cart)
    cart.items = items
    db.session.commit()


def transfer_cart(user_id):
    """Move the anonymous session cart onto the user's stored cart."""
    local = session.pop("cart", [])
    if not local:
        return
    cart = db.session.get(Cart, user_id)
    if cart is None:
        cart = Cart(user_id=user_id)
        db.session.add(cart)
    cart.items = local
    db.session.commit()


def add_to_cart_items(items, book, quantity=1):
    for entry in items:
        if entry["id"] == book.id:
            entry["quantity"] = int(entry["quantity"]) + quantity
            return items
    items.append({
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "price": str(book.price),
        "image": book.image,
        "quantity": quantity,
    })
    return items


def shipping_cost(subtotal):
    if subtotal >= FREE_DELIVERY_MIN:
        return Decimal("0.00")
    return DELIVERY_CHARGE


def cart_totals(items):
    subtotal = sum(
        (Decimal(entry["price"]) * int(entry["quantity"]) for entry in items), Decimal("0.00")
    ).quantize(CENT)
    ship = shipping_cost(subtotal)
    total = (subtotal + ship + COD_FEE).quantize(CENT)
    return {"subtotal": subtotal, "shipping": ship, "cod_fee": COD_FEE, "total": total}


# --- Routes: Storefront ---
@shop_bp.route("/")
def index():
    return render_template("index.html", featured=featured_books(), categories=CATEGORY_ORDER)


@shop_bp.route("/category/<category>")
def category(category):
    books = Book.query.filter(func.lower(Book.category) == category.lower()).order_by(Book.title).all()
    if not books and category not in CATEGORY_ORDER:
        abort(404)
    return render_template("category.html", category=category, books=books, categories=CATEGORY_ORDER)


@shop_bp.route("/search")
def search():
    q = request.args.get("q", "").strip()
    results = []
    if q:
        like = f"%{q.lower()}%"
        results = Book.query.filter(
            func.lower(Book.title).like(like)
            | func.lower(Book.author).like(like)
            | func.lower(Book.category).like(like)
        ).all()
    return render_template("search.html", q=q, results=results, categories=CATEGORY_ORDER)


@shop_bp.route("/book/<slug>")
def book_detail(slug):
    book = Book.query.filter_by(slug=slug).first_or_404()
    return render_template("book.html", book=book, categories=CATEGORY_ORDER)


@shop_bp.route("/add/<slug>", methods=["POST"])
def add_to_cart(slug):
    book = Book.query.filter_by(slug=slug).first()
    if not book:
        flash("Book not found.", "error")
        return redirect(url_for("shop.index"))
    if book.stock < 1:
        flash(f"Sorry, '{book.title}' is out of stock.", "error")
        return redirect(request.referrer or url_for("shop.index"))
    try:
        qty = max(1, int(request.form.get("quantity", 1)))
    except ValueError:
        qty = 1
    save_cart(add_to_cart_items(load_cart(), book, qty))
    flash(f"Added '{book.title}' to cart.", "success")
    return redirect(request.referrer or url_for("shop.index"))


@shop_bp.route("/cart", methods=["GET", "POST"])
def cart_view():
    if request.method == "POST":
        items = []
        for entry in load_cart():
            val = request.form.get(f"qty-{entry['id']}")
            if val is None:
                items.append(entry)
                continue
            try:
                qty = int(val)
            except ValueError:
                qty = int(entry["quantity"])
            # 0 removes the line; anything else is at least 1
            if qty != 0:
                entry["quantity"] = max(1, qty)
                items.append(entry)
        save_cart(items)
        flash("Cart updated.", "success")
        return redirect(url_for("shop.cart_view"))

    items = load_cart()
    return render_template("cart.html", items=items, categories=CATEGORY_ORDER, **cart_totals(items))


@shop_bp.route("/remove/<int:book_id>", methods=["POST"])
def remove(book_id):
    save_cart([entry for entry in load_cart() if entry["id"] != book_id])
    flash("Item removed.", "success")
    return redirect(url_for("shop.cart_view"))


# --- Routes: Sign-in (identity is trusted as given) ---
@shop_bp.route("/login", methods=["GET", "POST"])
def login():
    next_url = request.args.get("next", "")
    if not next_url.startswith("/") or next_url.startswith("//"):
        next_url = url_for("shop.index")
    if request.method == "POST":
        email = request.form.get("email", "").strip().lower()
        name = request.form.get("name", "").strip()
        if not email:
            flash("Please provide your email.", "error")
            return redirect(url_for("shop.login", next=next_url))
        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(email=email, name=name or email.split("@")[0])
            db.session.add(user)
            db.session.commit()
            logger.info("New user %s signed up", user.id)
        session["user_id"] = user.id
        transfer_cart(user.id)
        flash(f"Welcome, {user.name}!", "success")
        return redirect(next_url)
    return render_template("login.html", next=next_url, categories=CATEGORY_ORDER)


@shop_bp.route("/logout")
def logout():
    session.pop("user_id", None)
    flash("Signed out.", "success")
    return redirect(url_for("shop.index"))


# --- Routes: Checkout & orders ---
@shop_bp.route("/checkout", methods=["GET", "POST"])
def checkout():
    if require_user(): return require_user()
    items = load_cart()
    if not items:
        flash("Your cart is empty.", "error")
        return redirect(url_for("shop.index"))
    totals = cart_totals(items)

    if request.method == "POST":
        address = ShippingAddress.from_form(request.form)
        missing = address.missing_fields()
        if missing:
            flash(f"Please provide: {', '.join(missing)}.", "error")
            return redirect(url_for("shop.checkout"))
        user_id = current_user_id()
        try:
            order_id = place_order(user_id, [LineItem.from_cart(entry) for entry in items], totals["total"], address)
        except CheckoutError as exc:
            flash(str(exc), "error")
            return redirect(url_for("shop.checkout"))
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Checkout failed for user %s", user_id)
            flash("Failed to place order. Please try again.", "error")
            return redirect(url_for("shop.checkout"))
        save_cart([])
        session["last_order_id"] = order_id
        flash("Order placed successfully!", "success")
        return redirect(url_for("shop.receipt", order_id=order_id))

    return render_template("checkout.html", items=items, categories=CATEGORY_ORDER, **totals)


@shop_bp.route("/receipt/<order_id>")
def receipt(order_id):
    if require_user(): return require_user()
    try:
        order = get_order(order_id, user_id=current_user_id())
    except OrderNotFoundError:
        flash("Receipt not found.", "error")
        return redirect(url_for("shop.index"))
    return render_template("receipt.html", order=order, items=order.items, categories=CATEGORY_ORDER)


@shop_bp.route("/orders")
def my_orders():
    if require_user(): return require_user()
    return render_template("orders.html", orders=get_user_orders(current_user_id()), categories=CATEGORY_ORDER)
