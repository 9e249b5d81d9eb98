"""Cart operations and the cart-to-order conversion.

``create_order`` is the only multi-step write in the application. It runs in
one session transaction: the cart is read and validated, the order and its
line snapshots are written, stock is decremented with a conditional UPDATE
(``stock_quantity >= quantity``), the cart is emptied and the audit row is
added, then everything is committed once. Any failure rolls all of it back.
"""
import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from . import audit, crud, models, schemas
from .errors import NotFoundError, RuleError, UnavailableError
from .utils import line_total, round_amount

log = logging.getLogger(__name__)


# -------------------- Cart --------------------

def find_cart(db: Session, user_id: int) -> Optional[models.Cart]:
    return db.query(models.Cart).filter(models.Cart.user_id == user_id).first()


def _ensure_cart(db: Session, user_id: int) -> models.Cart:
    cart = find_cart(db, user_id)
    if cart is None:
        cart = models.Cart(user_id=user_id)
        db.add(cart)
        db.flush()
    return cart


def cart_lines(db: Session, cart_id: int) -> list[tuple[models.CartItem, models.Product]]:
    return (
        db.query(models.CartItem, models.Product)
        .join(models.Product, models.Product.id == models.CartItem.product_id)
        .filter(models.CartItem.cart_id == cart_id)
        .order_by(models.CartItem.id)
        .all()
    )


def cart_total(lines) -> Decimal:
    return round_amount(sum((line_total(i.quantity, p.price, p.discount) for i, p in lines), Decimal(0)))


def get_cart(db: Session, user_id: int) -> dict[str, Any]:
    """Return the caller's cart aggregate, creating an empty cart on first access."""
    cart = find_cart(db, user_id)
    if cart is None:
        cart = models.Cart(user_id=user_id)
        db.add(cart)
        db.commit()
        db.refresh(cart)
    lines = cart_lines(db, cart.id)
    return {
        "id": cart.id,
        "user_id": cart.user_id,
        "items": [
            {
                "id": item.id,
                "cart_id": item.cart_id,
                "product_id": item.product_id,
                "quantity": item.quantity,
                "product": schemas.ProductSummary.model_validate(product),
            }
            for item, product in lines
        ],
        "total": cart_total(lines),
    }


def add_to_cart(db: Session, user_id: int, product_id: int, quantity: int = 1) -> models.CartItem:
    product = db.get(models.Product, product_id)
    if not product:
        raise NotFoundError("Product not found")
    if not product.is_available or product.stock_quantity < quantity:
        raise UnavailableError("Product is not available in the requested quantity")

    cart = _ensure_cart(db, user_id)
    item = (
        db.query(models.CartItem)
        .filter(models.CartItem.cart_id == cart.id, models.CartItem.product_id == product_id)
        .first()
    )
    if item:
        new_quantity = item.quantity + quantity
        if new_quantity > product.stock_quantity:
            raise UnavailableError("Requested quantity exceeds available stock")
        item.quantity = new_quantity
    else:
        item = models.CartItem(cart_id=cart.id, product_id=product_id, quantity=quantity)
        db.add(item)
        db.flush()

    audit.record(db, user_id, "add_to_cart", "cart_item", item.id, {"product_id": product_id, "quantity": quantity})
    db.commit()
    db.refresh(item)
    return item


def _owned_line(db: Session, user_id: int, item_id: int) -> tuple[models.CartItem, models.Product]:
    # Lines in someone else's cart look exactly like missing ones
    row = (
        db.query(models.CartItem, models.Product)
        .join(models.Cart, models.Cart.id == models.CartItem.cart_id)
        .join(models.Product, models.Product.id == models.CartItem.product_id)
        .filter(models.CartItem.id == item_id, models.Cart.user_id == user_id)
        .first()
    )
    if row is None:
        raise NotFoundError("Cart item not found")
    return row


def update_cart_item(db: Session, user_id: int, item_id: int, quantity: int) -> models.CartItem:
    item, product = _owned_line(db, user_id, item_id)
    if quantity > product.stock_quantity:
        raise UnavailableError("Requested quantity exceeds available stock")
    item.quantity = quantity
    audit.record(db, user_id, "update_cart_item", "cart_item", item.id, {"quantity": quantity})
    db.commit()
    db.refresh(item)
    return item


def remove_cart_item(db: Session, user_id: int, item_id: int):
    item, _ = _owned_line(db, user_id, item_id)
    db.delete(item)
    audit.record(db, user_id, "remove_from_cart", "cart_item", item_id)
    db.commit()


def clear_cart(db: Session, user_id: int):
    cart = find_cart(db, user_id)
    if cart is None:
        raise NotFoundError("Cart not found")
    db.execute(
        delete(models.CartItem)
        .where(models.CartItem.cart_id == cart.id)
        .execution_options(synchronize_session="fetch")
    )
    audit.record(db, user_id, "clear_cart", "cart", cart.id)
    db.commit()


# -------------------- Orders --------------------

def _unavailable(product: models.Product) -> UnavailableError:
    return UnavailableError(f"Product {product.name} is not available in the requested quantity")


def check_lines(lines):
    for item, product in lines:
        if not product.is_available or product.stock_quantity < item.quantity:
            raise _unavailable(product)


def _resolve_address(db: Session, user_id: int, data: schemas.OrderCreate) -> models.Address:
    if data.shipping_address is not None:
        return crud.add_address(db, user_id, data.shipping_address)
    address = (
        db.query(models.Address)
        .filter(models.Address.id == data.address_id, models.Address.user_id == user_id)
        .first()
    )
    if not address:
        raise NotFoundError("Shipping address not found")
    return address


def _decrement_stock(db: Session, product: models.Product, quantity: int):
    # Conditional decrement: a concurrent order that already took the stock
    # makes this match zero rows instead of going negative.
    result = db.execute(
        update(models.Product)
        .where(
            models.Product.id == product.id,
            models.Product.is_available.is_(True),
            models.Product.stock_quantity >= quantity,
        )
        .values(stock_quantity=models.Product.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise _unavailable(product)
    db.expire(product, ["stock_quantity"])


def create_order(db: Session, user_id: int, data: schemas.OrderCreate) -> dict[str, Any]:
    cart = find_cart(db, user_id)
    lines = cart_lines(db, cart.id) if cart else []
    if not lines:
        raise RuleError("Cart is empty")
    check_lines(lines)
    total = cart_total(lines)

    try:
        address = _resolve_address(db, user_id, data)
        order = models.Order(
            user_id=user_id,
            address_id=address.id,
            total_amount=total,
            status="pending",
            payment_method=data.payment_method,
            payment_details=data.payment_details,
        )
        db.add(order)
        db.flush()

        for item, product in lines:
            db.add(models.OrderItem(
                order_id=order.id,
                product_id=product.id,
                product_name=product.name,
                quantity=item.quantity,
                price=product.price,
                discount=product.discount,
            ))
            _decrement_stock(db, product, item.quantity)

        db.execute(
            delete(models.CartItem)
            .where(models.CartItem.cart_id == cart.id)
            .execution_options(synchronize_session="fetch")
        )
        audit.record(db, user_id, "create_order", "order", order.id, {"total_amount": str(total)})
        db.commit()
    except Exception:
        db.rollback()
        raise

    log.info("order %s placed by user %s, total %s", order.id, user_id, total)
    db.refresh(order)
    return order_detail(db, order)


def order_detail(db: Session, order: models.Order) -> dict[str, Any]:
    rows = (
        db.query(models.OrderItem, models.Product)
        .outerjoin(models.Product, models.Product.id == models.OrderItem.product_id)
        .filter(models.OrderItem.order_id == order.id)
        .order_by(models.OrderItem.id)
        .all()
    )
    address = db.get(models.Address, order.address_id) if order.address_id else None
    return {
        **_order_row(order, db.get(models.User, order.user_id)),
        "payment_details": order.payment_details,
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "price": item.price,
                "discount": item.discount,
                "product": schemas.ProductSummary.model_validate(product) if product else None,
            }
            for item, product in rows
        ],
        "address": schemas.AddressRead.model_validate(address) if address else None,
    }


def _order_row(order: models.Order, user: Optional[models.User]) -> dict[str, Any]:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "address_id": order.address_id,
        "total_amount": order.total_amount,
        "status": order.status,
        "payment_method": order.payment_method,
        "created_at": order.created_at,
        "user": crud.user_summary(user),
    }


def get_order(db: Session, order_id: int, user_id: Optional[int] = None) -> dict[str, Any]:
    """Order aggregate by id; with ``user_id`` only that user's orders are visible."""
    query = db.query(models.Order).filter(models.Order.id == order_id)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    order = query.first()
    if not order:
        raise NotFoundError("Order not found")
    return order_detail(db, order)


def list_user_orders(db: Session, user_id: int) -> list[dict[str, Any]]:
    orders = (
        db.query(models.Order)
        .filter(models.Order.user_id == user_id)
        .order_by(models.Order.created_at.desc(), models.Order.id.desc())
        .all()
    )
    return [order_detail(db, order) for order in orders]


def list_orders(db: Session, page: int, limit: int, status: Optional[str] = None):
    query = db.query(models.Order, models.User).outerjoin(models.User, models.User.id == models.Order.user_id)
    if status:
        query = query.filter(models.Order.status == status)
    query = query.order_by(models.Order.created_at.desc(), models.Order.id.desc())
    rows, pagination = crud.paginate(query, page, limit)
    return [_order_row(order, user) for order, user in rows], pagination


def update_order_status(db: Session, actor_id: int, order_id: int, status: str) -> dict[str, Any]:
    if status not in models.ORDER_STATUSES:
        raise RuleError(f"Invalid order status: {status}")
    order = db.get(models.Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    previous = order.status
    order.status = status
    audit.record(db, actor_id, "update_order_status", "order", order.id, {"status": status, "previous": previous})
    db.commit()
    db.refresh(order)
    return _order_row(order, db.get(models.User, order.user_id))
