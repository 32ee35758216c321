from __future__ import annotations

from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from canteen.models import CartItem, Product


def cart_item_to_dict(item: CartItem) -> dict:
    return {
        'id': item.id,
        'product_id': item.product_id,
        'name': item.product_name,
        'price': item.product_price,
        'quantity': item.product_quantity,
        'image': item.product_image,
        'count': item.count,
        'subtotal': item.product_price * item.count,
    }


def list_cart(db: Session, *, user_id: int) -> list[CartItem]:
    return db.execute(
        select(CartItem).where(CartItem.user_id == user_id).order_by(CartItem.created_at.asc(), CartItem.id.asc())
    ).scalars().all()


def cart_totals(lines: list[CartItem]) -> tuple[int, Decimal]:
    total_items = sum(line.count for line in lines)
    total_price = sum((line.product_price * line.count for line in lines), Decimal('0'))
    return total_items, total_price


def _get_line(db: Session, *, user_id: int, product_id: int) -> CartItem | None:
    return db.execute(
        select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
    ).scalar_one_or_none()


def add_to_cart(db: Session, *, user_id: int, product_id: int, count: int = 1) -> CartItem:
    if count < 1:
        raise ValueError('Quantity must be at least 1')

    existing = _get_line(db, user_id=user_id, product_id=product_id)
    if existing:
        existing.count += count
        db.flush()
        return existing

    product = db.execute(
        select(Product).where(Product.id == product_id, Product.active.is_(True))
    ).scalar_one_or_none()
    if not product:
        raise ValueError('Product not found')

    line = CartItem(
        user_id=user_id,
        product_id=product.id,
        product_name=product.name,
        product_price=product.price,
        product_quantity=product.quantity_label,
        product_image=product.image_url,
        count=count,
    )
    db.add(line)
    db.flush()
    return line


def update_quantity(db: Session, *, user_id: int, product_id: int, count: int) -> CartItem | None:
    if count <= 0:
        remove_from_cart(db, user_id=user_id, product_id=product_id)
        return None
    line = _get_line(db, user_id=user_id, product_id=product_id)
    if not line:
        raise ValueError('Item is not in the cart')
    line.count = count
    db.flush()
    return line


def remove_from_cart(db: Session, *, user_id: int, product_id: int) -> None:
    db.execute(delete(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id))


def clear_cart(db: Session, *, user_id: int) -> int:
    result = db.execute(delete(CartItem).where(CartItem.user_id == user_id))
    return result.rowcount or 0
