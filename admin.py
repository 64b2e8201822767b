# admin.py
from flask import Blueprint, current_app, render_template, redirect, url_for, session, request, flash
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from decimal import Decimal, InvalidOperation
import logging

from core import db, Book, Order, User, CATEGORY_ORDER, ORDER_STATUSES, utcnow
from courier import SteadfastClient
from errors import CourierError, InvalidOrderStatusError, OrderNotFoundError
from orders import get_all_orders, get_order, record_consignment, update_order_status

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)


def require_admin():
    if session.get("is_admin"):
        return None
    return redirect(url_for("admin.admin_login"))


def courier_client():
    return SteadfastClient.from_config(current_app.config)


def parse_count(value):
    """Non-negative integer from a form field; blank means 0."""
    n = int((value or "0").strip())
    if n < 0:
        raise ValueError(value)
    return n


def parse_book_form(form):
    """Return (fields, None) or (None, error message)."""
    title = form.get("title", "").strip()
    author = form.get("author", "").strip()
    category = form.get("category", "").strip()
    if not title or not author or category not in CATEGORY_ORDER:
        return None, "Please provide title, author, and valid category."
    try:
        price = Decimal(form.get("price", "").strip())
        if not price.is_finite() or price < 0:
            raise InvalidOperation
    except InvalidOperation:
        return None, "Invalid price."
    return {
        "title": title,
        "author": author,
        "category": category,
        "price": price.quantize(Decimal("0.01")),
        "slug": form.get("slug", "").strip() or "-".join(title.lower().split()),
        "image": form.get("image", "").strip() or None,
        "description": form.get("description", "").strip() or None,
        "featured": form.get("featured") == "on",
    }, None


def restock(book_id, quantity):
    """Add copies to a book's stock in one statement; never decrements."""
    db.session.execute(
        update(Book)
        .where(Book.id == book_id)
        .values(stock=Book.stock + quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    logger.info("Book %s restocked by %d", book_id, quantity)


# --- Auth ---
@admin_bp.route("/login", methods=["GET", "POST"])
def admin_login():
    if request.method == "POST":
        pwd = request.form.get("password", "")
        if pwd == current_app.config["ADMIN_PASSWORD"]:
            session["is_admin"] = True
            return redirect(url_for("admin.admin"))
        else:
            logger.warning("Failed admin sign-in from %s", request.remote_addr)
            flash("Incorrect password.", "error")
    return render_template("admin_login.html", categories=CATEGORY_ORDER)


@admin_bp.route("/logout")
def admin_logout():
    session.pop("is_admin", None)
    flash("Logged out.", "success")
    return redirect(url_for("shop.index"))


# --- Books ---
@admin_bp.route("/")
def admin():
    if require_admin(): return require_admin()
    books = Book.query.order_by(Book.category, Book.title).all()
    return render_template("admin.html", books=books, categories=CATEGORY_ORDER)


@admin_bp.route("/new", methods=["GET", "POST"])
def admin_new():
    if require_admin(): return require_admin()
    if request.method == "POST":
        fields, error = parse_book_form(request.form)
        if error:
            flash(error, "error")
            return redirect(url_for("admin.admin_new"))
        try:
            stock = parse_count(request.form.get("stock"))
        except ValueError:
            flash("Invalid stock.", "error")
            return redirect(url_for("admin.admin_new"))
        if Book.query.filter_by(slug=fields["slug"]).first():
            flash("Slug already in use.", "error")
            return redirect(url_for("admin.admin_new"))
        db.session.add(Book(stock=stock, **fields))
        db.session.commit()
        flash("Book created.", "success")
        return redirect(url_for("admin.admin"))
    return render_template("admin_edit.html", book=None, categories=CATEGORY_ORDER)


@admin_bp.route("/edit/<int:book_id>", methods=["GET", "POST"])
def admin_edit(book_id):
    if require_admin(): return require_admin()
    bk = db.get_or_404(Book, book_id)
    if request.method == "POST":
        fields, error = parse_book_form(request.form)
        if error:
            flash(error, "error")
            return redirect(url_for("admin.admin_edit", book_id=bk.id))
        try:
            added = parse_count(request.form.get("add_stock"))
        except ValueError:
            flash("Invalid restock quantity.", "error")
            return redirect(url_for("admin.admin_edit", book_id=bk.id))
        clash = Book.query.filter(Book.slug == fields["slug"], Book.id != bk.id).first()
        if clash:
            flash("Slug already in use.", "error")
            return redirect(url_for("admin.admin_edit", book_id=bk.id))
        for key, value in fields.items():
            setattr(bk, key, value)
        db.session.commit()
        if added:
            restock(bk.id, added)
        flash("Book updated.", "success")
        return redirect(url_for("admin.admin"))
    return render_template("admin_edit.html", book=bk, categories=CATEGORY_ORDER)


@admin_bp.route("/delete/<int:book_id>", methods=["POST"])
def admin_delete(book_id):
    if require_admin(): return require_admin()
    bk = db.get_or_404(Book, book_id)
    db.session.delete(bk)
    db.session.commit()
    flash("Book deleted.", "success")
    return redirect(url_for("admin.admin"))


# --- Orders ---
@admin_bp.route("/orders")
def admin_orders():
    if require_admin(): return require_admin()
    q = request.args.get("q", "").strip()
    return render_template(
        "admin_orders.html", orders=get_all_orders(q), q=q, statuses=ORDER_STATUSES, categories=CATEGORY_ORDER
    )


@admin_bp.route("/orders/<order_id>/status", methods=["POST"])
def admin_order_status(order_id):
    if require_admin(): return require_admin()
    try:
        update_order_status(order_id, request.form.get("status", ""))
    except (InvalidOrderStatusError, OrderNotFoundError) as exc:
        flash(str(exc), "error")
    else:
        flash("Order status updated successfully.", "success")
    return redirect(url_for("admin.admin_orders"))


@admin_bp.route("/orders/<order_id>/courier", methods=["POST"])
def admin_dispatch(order_id):
    if require_admin(): return require_admin()
    try:
        order = get_order(order_id)
    except OrderNotFoundError as exc:
        flash(str(exc), "error")
        return redirect(url_for("admin.admin_orders"))
    if order.consignment_id:
        flash(f"Order {order_id} was already dispatched ({order.consignment_id}).", "error")
        return redirect(url_for("admin.admin_orders"))
    try:
        consignment = courier_client().create_order(order)
    except CourierError as exc:
        flash(f"Courier dispatch failed: {exc}", "error")
        return redirect(url_for("admin.admin_orders"))
    try:
        record_consignment(order_id, consignment)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception(
            "Order %s dispatched as consignment %s (tracking %s) but not recorded",
            order_id, consignment["consignment_id"], consignment.get("tracking_code"),
        )
        flash(
            f"Courier accepted order {order_id} as consignment {consignment['consignment_id']}, "
            "but it could not be saved. Do not dispatch it again.",
            "error",
        )
        return redirect(url_for("admin.admin_orders"))
    flash(consignment["message"], "success")
    return redirect(url_for("admin.admin_orders"))


# --- Courier ---
@admin_bp.route("/courier", methods=["GET", "POST"])
def admin_courier():
    if require_admin(): return require_admin()
    balance = tracking = quote = bulk = None
    consignment_id = request.values.get("consignment_id", "").strip()
    bulk_ids = request.form.get("consignment_ids", "").strip()
    try:
        client = courier_client()
        if request.method == "POST":
            action = request.form.get("action")
            if action == "bulk":
                ids = [cid.strip() for cid in bulk_ids.replace("\n", ",").split(",") if cid.strip()]
                if ids:
                    bulk = client.bulk_status(ids)
            elif action == "cancel" and consignment_id:
                flash(client.cancel(consignment_id) or "Consignment cancelled.", "success")
            elif action == "charge":
                quote = client.delivery_charge(
                    request.form.get("city", "").strip(),
                    parse_count(request.form.get("cod_amount")),
                )
        if consignment_id:
            tracking = client.status(consignment_id)
        balance = client.balance()
    except CourierError as exc:
        flash(str(exc), "error")
    except ValueError:
        flash("Invalid cash-on-delivery amount.", "error")
    return render_template(
        "admin_courier.html",
        balance=balance,
        tracking=tracking,
        quote=quote,
        bulk=bulk,
        bulk_ids=bulk_ids,
        consignment_id=consignment_id,
        categories=CATEGORY_ORDER,
    )


# --- Users ---
@admin_bp.route("/users")
def admin_users():
    if require_admin(): return require_admin()
    rows = (
        db.session.query(User, func.count(Order.id))
        .outerjoin(Order, Order.user_id == User.id)
        .group_by(User.id)
        .order_by(User.created_at.desc())
        .all()
    )
    return render_template("admin_users.html", rows=rows, categories=CATEGORY_ORDER)
