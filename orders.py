"""
Order placement, stock adjustment and order administration.

``create_order`` validates every cart line against live product state,
prices the cart, reserves stock with conditional per-product decrements
and then stores an immutable snapshot of the order. Stock is never taken
below zero: a decrement only matches while ``in_stock >= quantity``, and a
failed reservation or insert releases whatever the request already took.
"""
import logging
import secrets
import string
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import serialize_doc, to_object_id
from errors import AppError
from schemas import Address, Customer, Order, OrderItem

logger = logging.getLogger(__name__)

TAX_RATE = 0.08
FREE_SHIPPING_THRESHOLD = 500
SHIPPING_FEE = 25
ORDER_NUMBER_ATTEMPTS = 5

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits

# Allowed status changes when ENFORCE_STATUS_TRANSITIONS is on.
STATUS_TRANSITIONS = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": {"refunded"},
    "cancelled": {"refunded"},
    "refunded": set(),
}


def generate_order_number(now_ms: Optional[int] = None) -> str:
    """``LUX-<last 8 digits of epoch millis>-<4 random A-Z0-9>``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(4))
    return f"LUX-{str(now_ms)[-8:]}-{suffix}"


def calculate_totals(subtotal: float) -> Dict[str, float]:
    tax = round(subtotal * TAX_RATE, 2)
    shipping = 0 if subtotal >= FREE_SHIPPING_THRESHOLD else SHIPPING_FEE
    return {
        "subtotal": round(subtotal, 2),
        "tax": tax,
        "shipping": float(shipping),
        "discount": 0.0,
        "total": round(subtotal + tax + shipping, 2),
    }


def validate_items(db: Database, items: List[Dict[str, Any]]) -> Tuple[List[OrderItem], float]:
    """Check each cart line in order; the first failure aborts the whole cart."""
    processed: List[OrderItem] = []
    subtotal = 0.0
    for item in items:
        product = db["product"].find_one({"_id": to_object_id(item["product"])})
        if not product:
            raise AppError(f"Product not found: {item['product']}", 404)
        title = product.get("title")
        if not product.get("is_active", True):
            raise AppError(f"Product is not available: {title}", 400)
        if product.get("in_stock", 0) < item["quantity"]:
            raise AppError(f"Insufficient stock for product: {title}", 400)
        if item["size"] not in product.get("sizes", []):
            raise AppError(f"Invalid size for product: {title}", 400)
        if not any(c.get("name") == item["color"] for c in product.get("colors", [])):
            raise AppError(f"Invalid color for product: {title}", 400)

        processed.append(OrderItem(
            product=product["_id"],
            title=title,
            price=product["price"],
            quantity=item["quantity"],
            size=item["size"],
            color=item["color"],
            image=(product.get("images") or [""])[0],
        ))
        subtotal += product["price"] * item["quantity"]
    return processed, subtotal


def reserve_stock(db: Database, items: List[OrderItem]) -> None:
    taken: List[OrderItem] = []
    try:
        for item in items:
            result = db["product"].update_one(
                {"_id": item.product, "in_stock": {"$gte": item.quantity}},
                {"$inc": {"in_stock": -item.quantity}},
            )
            if result.matched_count == 0:
                raise AppError(f"Insufficient stock for product: {item.title}", 400)
            taken.append(item)
    except Exception:
        release_stock(db, taken)
        raise


def release_stock(db: Database, items: List[OrderItem]) -> None:
    for item in items:
        db["product"].update_one({"_id": item.product}, {"$inc": {"in_stock": item.quantity}})
    if items:
        logger.warning("Released stock for %d order line(s)", len(items))


def _insert_order(db: Database, doc: dict, generated_number: bool) -> ObjectId:
    attempts = ORDER_NUMBER_ATTEMPTS if generated_number else 1
    for attempt in range(1, attempts + 1):
        now = datetime.utcnow()
        doc["created_at"] = now
        doc["updated_at"] = now
        try:
            return db["order"].insert_one(doc).inserted_id
        except DuplicateKeyError:
            doc.pop("_id", None)
            if attempt == attempts:
                raise
            logger.info("Order number %s already taken, regenerating", doc["order_number"])
            doc["order_number"] = generate_order_number()


def create_order(db: Database, data: Dict[str, Any], user: Optional[dict] = None) -> dict:
    items, subtotal = validate_items(db, data["items"])
    totals = calculate_totals(subtotal)

    shipping_address = Address(**data["shipping_address"])
    billing = data.get("billing_address")
    billing_address = Address(**billing) if billing else shipping_address

    customer = Customer(
        user=user["_id"] if user else None,
        name=f"{shipping_address.first_name} {shipping_address.last_name}",
        email=str(shipping_address.email).lower(),
        phone=shipping_address.phone,
    )

    order_number = data.get("order_number")
    generated = not order_number
    order = Order(
        order_number=(order_number or generate_order_number()).strip().upper(),
        customer=customer,
        items=items,
        payment_method=data["payment_method"],
        shipping_address=shipping_address,
        billing_address=billing_address,
        notes=data.get("notes"),
        **totals,
    )
    doc = order.model_dump()

    reserve_stock(db, items)
    try:
        order_id = _insert_order(db, doc, generated)
    except Exception:
        release_stock(db, items)
        raise

    logger.info("Order %s created: %d item(s), total %.2f", doc["order_number"], len(items), doc["total"])
    return present_order(db, db["order"].find_one({"_id": order_id}))


# Reads

def present_orders(db: Database, orders: List[dict], with_user: bool = False) -> List[dict]:
    """Expand item product references (and optionally customer users) for display."""
    product_ids = {it["product"] for o in orders for it in o.get("items", [])}
    products = {}
    if product_ids:
        cursor = db["product"].find({"_id": {"$in": list(product_ids)}}, {"title": 1, "slug": 1, "images": 1})
        products = {p["_id"]: p for p in cursor}

    users = {}
    if with_user:
        user_ids = {o["customer"].get("user") for o in orders if o.get("customer", {}).get("user")}
        if user_ids:
            cursor = db["user"].find({"_id": {"$in": list(user_ids)}}, {"name": 1, "email": 1})
            users = {u["_id"]: u for u in cursor}

    out = []
    for order in orders:
        o = dict(order)
        o["items"] = [dict(it, product=products.get(it["product"])) for it in order.get("items", [])]
        if with_user and o.get("customer", {}).get("user"):
            o["customer"] = dict(o["customer"], user=users.get(o["customer"]["user"]))
        out.append(serialize_doc(o))
    return out


def present_order(db: Database, order: dict, with_user: bool = False) -> dict:
    return present_orders(db, [order], with_user=with_user)[0]


def _date_filter(filt: dict, start_date: Optional[datetime], end_date: Optional[datetime]) -> None:
    if start_date or end_date:
        filt["created_at"] = {}
        if start_date:
            filt["created_at"]["$gte"] = start_date
        if end_date:
            filt["created_at"]["$lte"] = end_date


def _page(db: Database, filt: dict, page: int, limit: int, with_user: bool) -> Tuple[List[dict], int]:
    total = db["order"].count_documents(filt)
    cursor = db["order"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return present_orders(db, list(cursor), with_user=with_user), total


def list_orders(db: Database, page: int = 1, limit: int = 10, status: Optional[str] = None,
                payment_status: Optional[str] = None, customer: Optional[str] = None,
                start_date: Optional[datetime] = None, end_date: Optional[datetime] = None):
    filt: Dict[str, Any] = {}
    if status:
        filt["status"] = status
    if payment_status:
        filt["payment_status"] = payment_status
    if customer:
        filt["$or"] = [
            {"customer.email": {"$regex": customer, "$options": "i"}},
            {"customer.name": {"$regex": customer, "$options": "i"}},
            {"order_number": {"$regex": customer, "$options": "i"}},
        ]
    _date_filter(filt, start_date, end_date)
    return _page(db, filt, page, limit, with_user=True)


def list_user_orders(db: Database, user_id: ObjectId, page: int = 1, limit: int = 10,
                     status: Optional[str] = None, start_date: Optional[datetime] = None,
                     end_date: Optional[datetime] = None):
    filt: Dict[str, Any] = {"customer.user": user_id}
    if status:
        filt["status"] = status
    _date_filter(filt, start_date, end_date)
    return _page(db, filt, page, limit, with_user=False)


def get_order_by_id(db: Database, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise AppError("Order not found", 404)
    return present_order(db, order, with_user=True)


def get_order_by_number(db: Database, order_number: str) -> dict:
    order = db["order"].find_one({"order_number": order_number.strip().upper()})
    if not order:
        raise AppError("Order not found", 404)
    return present_order(db, order, with_user=True)


# Admin mutations

def check_transition(current: str, new: str) -> None:
    if current == new:
        return
    if new not in STATUS_TRANSITIONS.get(current, set()):
        raise AppError(f"Cannot change order status from {current} to {new}", 400)


def update_order_status(db: Database, order_id: str, status: str, tracking_number: Optional[str] = None) -> dict:
    """Set any status value; the transition table applies only when enforced in config."""
    oid = to_object_id(order_id)
    order = db["order"].find_one({"_id": oid}, {"status": 1})
    if not order:
        raise AppError("Order not found", 404)
    current = order.get("status", "pending")

    update: Dict[str, Any] = {"status": status, "updated_at": datetime.utcnow()}
    if tracking_number:
        update["tracking_number"] = tracking_number.strip().upper()

    filt: Dict[str, Any] = {"_id": oid}
    if config.ENFORCE_STATUS_TRANSITIONS:
        check_transition(current, status)
        # The checked status must still be current when the write lands.
        filt["status"] = current
    result = db["order"].update_one(filt, {"$set": update})
    if result.matched_count == 0:
        if config.ENFORCE_STATUS_TRANSITIONS:
            raise AppError("Order status changed concurrently, please retry", 409)
        raise AppError("Order not found", 404)
    logger.info("Order %s status %s -> %s", order_id, current, status)
    return present_order(db, db["order"].find_one({"_id": oid}))


def update_payment_status(db: Database, order_id: str, payment_status: str, payment_id: Optional[str] = None) -> dict:
    oid = to_object_id(order_id)
    update: Dict[str, Any] = {"payment_status": payment_status, "updated_at": datetime.utcnow()}
    if payment_id:
        update["payment_id"] = payment_id.strip()
    result = db["order"].update_one({"_id": oid}, {"$set": update})
    if result.matched_count == 0:
        raise AppError("Order not found", 404)
    return present_order(db, db["order"].find_one({"_id": oid}))


def get_order_stats(db: Database) -> Dict[str, Any]:
    stats = {
        "total_orders": 0,
        "total_revenue": 0,
        "average_order_value": 0,
        "pending_orders": 0,
        "processing_orders": 0,
        "shipped_orders": 0,
        "delivered_orders": 0,
    }
    overall = list(db["order"].aggregate([
        {"$group": {
            "_id": None,
            "total_orders": {"$sum": 1},
            "total_revenue": {"$sum": "$total"},
            "average_order_value": {"$avg": "$total"},
        }}
    ]))
    if overall:
        stats["total_orders"] = overall[0]["total_orders"]
        stats["total_revenue"] = round(overall[0]["total_revenue"], 2)
        stats["average_order_value"] = round(overall[0]["average_order_value"] or 0, 2)

    for row in db["order"].aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        key = f"{row['_id']}_orders"
        if key in stats:
            stats[key] = row["count"]
    return stats
