# storefront/services/inventory.py
import logging

from sqlalchemy import update

from ..errors import InsufficientStock
from ..extensions import db
from ..model import Product

log = logging.getLogger(__name__)


def reserve_stock(product: Product, quantity: int):
    """
    Decrement stock only if enough is left, in a single UPDATE.
    Raises InsufficientStock when the guard matches no row.
    """
    if not product.track_quantity:
        return
    stmt = (
        update(Product)
        .where(Product.id == product.id, Product.quantity >= quantity)
        .values(quantity=Product.quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    db.session.expire(product, ["quantity"])
    if result.rowcount != 1:
        log.info("stock reservation refused for product %s (requested %s)", product.id, quantity)
        raise InsufficientStock(product.name, available=product.quantity, requested=quantity)


def restore_stock(product_id: int, quantity: int):
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.track_quantity.is_(True))
        .values(quantity=Product.quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(stmt)
    product = db.session.get(Product, product_id)
    if product is not None:
        db.session.expire(product, ["quantity"])
