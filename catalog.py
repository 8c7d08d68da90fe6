"""
Product and category services.

Functions take the database handle first and return serialized documents
ready for the response envelope.
"""
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from database import create_document, serialize_doc, to_object_id
from errors import AppError
from schemas import Category, Product

PRODUCT_SORT_FIELDS = {"created_at", "updated_at", "price", "title", "in_stock", "featured"}


def parse_sort(sort: Optional[str], default: str = "-created_at") -> List[Tuple[str, int]]:
    """Turn ``"-price,title"`` into a pymongo sort spec."""
    spec = []
    for part in (sort or default).split(","):
        part = part.strip()
        if not part:
            continue
        direction = DESCENDING if part.startswith("-") else ASCENDING
        field = part.lstrip("-+")
        if field in PRODUCT_SORT_FIELDS:
            spec.append((field, direction))
    return spec or parse_sort(default)


def discount_percentage(price: float, compare_price: Optional[float]) -> int:
    if not compare_price or compare_price <= price:
        return 0
    return round((compare_price - price) / compare_price * 100)


def _category_refs(db: Database, ids) -> Dict[Any, dict]:
    ids = list({i for i in ids if i is not None})
    if not ids:
        return {}
    cursor = db["category"].find({"_id": {"$in": ids}}, {"name": 1, "slug": 1})
    return {c["_id"]: c for c in cursor}


def present_products(db: Database, docs: List[dict]) -> List[dict]:
    categories = _category_refs(db, [d.get("category") for d in docs])
    out = []
    for doc in docs:
        d = dict(doc)
        d["category"] = categories.get(d.get("category"))
        d["is_available"] = bool(d.get("is_active")) and d.get("in_stock", 0) > 0
        d["discount_percentage"] = discount_percentage(d.get("price", 0), d.get("compare_price"))
        out.append(serialize_doc(d))
    return out


def present_product(db: Database, doc: dict) -> dict:
    return present_products(db, [doc])[0]


# Products

def list_products(db: Database, page: int = 1, limit: int = 12, category: Optional[str] = None,
                  featured: Optional[bool] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, sizes: Optional[List[str]] = None,
                  colors: Optional[List[str]] = None, search: Optional[str] = None,
                  sort: Optional[str] = None) -> Tuple[List[dict], int]:
    filt: Dict[str, Any] = {"is_active": True}
    if category:
        cat = db["category"].find_one({"slug": category})
        if cat:
            filt["category"] = cat["_id"]
    if featured is not None:
        filt["featured"] = featured
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    if sizes:
        filt["sizes"] = {"$in": sizes}
    if colors:
        filt["colors.name"] = {"$in": colors}
    if search:
        pattern = re.escape(search)
        filt["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]

    total = db["product"].count_documents(filt)
    cursor = db["product"].find(filt).sort(parse_sort(sort)).skip((page - 1) * limit).limit(limit)
    return present_products(db, list(cursor)), total


def get_product_by_slug(db: Database, slug: str) -> dict:
    doc = db["product"].find_one({"slug": slug, "is_active": True})
    if not doc:
        raise AppError("Product not found", 404)
    return present_product(db, doc)


def get_product_by_id(db: Database, product_id: str) -> dict:
    doc = db["product"].find_one({"_id": to_object_id(product_id)})
    if not doc:
        raise AppError("Product not found", 404)
    return present_product(db, doc)


def _check_product_refs(db: Database, data: dict, exclude_id=None) -> None:
    if data.get("category") is not None:
        if not db["category"].find_one({"_id": data["category"]}):
            raise AppError("Category not found", 404)
    for field in ("sku", "slug"):
        if data.get(field):
            query: Dict[str, Any] = {field: data[field]}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            if db["product"].find_one(query):
                raise AppError(f"Product with this {field.upper() if field == 'sku' else field} already exists", 400)


def create_product(db: Database, data: dict) -> dict:
    data = dict(data)
    data["category"] = to_object_id(data["category"])
    product = Product(**data)
    doc = product.model_dump()
    _check_product_refs(db, doc)
    inserted_id = create_document(db, "product", doc)
    return get_product_by_id(db, inserted_id)


def update_product(db: Database, product_id: str, data: dict) -> dict:
    oid = to_object_id(product_id)
    existing = db["product"].find_one({"_id": oid})
    if not existing:
        raise AppError("Product not found", 404)
    data = dict(data)
    if data.get("category") is not None:
        data["category"] = to_object_id(data["category"])
    if data.get("sku"):
        data["sku"] = data["sku"].strip().upper()
    _check_product_refs(db, data, exclude_id=oid)

    merged = {k: v for k, v in existing.items() if k in Product.model_fields}
    merged.update(data)
    # Re-validate the whole document so cross-field rules hold after a partial update.
    doc = Product(**merged).model_dump()
    doc["updated_at"] = datetime.utcnow()
    db["product"].update_one({"_id": oid}, {"$set": doc})
    return get_product_by_id(db, product_id)


def delete_product(db: Database, product_id: str) -> None:
    result = db["product"].delete_one({"_id": to_object_id(product_id)})
    if result.deleted_count == 0:
        raise AppError("Product not found", 404)


def get_featured_products(db: Database, limit: int = 8) -> List[dict]:
    cursor = db["product"].find({"featured": True, "is_active": True}).sort("created_at", DESCENDING).limit(limit)
    return present_products(db, list(cursor))


def get_related_products(db: Database, product_id: str, category_id: str, limit: int = 4) -> List[dict]:
    cursor = db["product"].find({
        "_id": {"$ne": to_object_id(product_id)},
        "category": to_object_id(category_id),
        "is_active": True,
    }).sort("created_at", DESCENDING).limit(limit)
    return present_products(db, list(cursor))


# Categories

def _with_count(db: Database, category: dict) -> dict:
    d = serialize_doc(category)
    d["products_count"] = db["product"].count_documents({"category": category["_id"], "is_active": True})
    return d


def list_categories(db: Database) -> List[dict]:
    cursor = db["category"].find({"is_active": True}).sort([("sort_order", ASCENDING), ("name", ASCENDING)])
    return [_with_count(db, c) for c in cursor]


def get_category_by_slug(db: Database, slug: str) -> dict:
    category = db["category"].find_one({"slug": slug, "is_active": True})
    if not category:
        raise AppError("Category not found", 404)
    return _with_count(db, category)


def create_category(db: Database, data: dict) -> dict:
    category = Category(**data)
    if db["category"].find_one({"slug": category.slug}):
        raise AppError("Category with this slug already exists", 400)
    inserted_id = create_document(db, "category", category)
    return _with_count(db, db["category"].find_one({"_id": to_object_id(inserted_id)}))


def update_category(db: Database, category_id: str, data: dict) -> dict:
    oid = to_object_id(category_id)
    if data.get("slug") and db["category"].find_one({"slug": data["slug"], "_id": {"$ne": oid}}):
        raise AppError("Category with this slug already exists", 400)
    update = dict(data)
    update["updated_at"] = datetime.utcnow()
    result = db["category"].update_one({"_id": oid}, {"$set": update})
    if result.matched_count == 0:
        raise AppError("Category not found", 404)
    return _with_count(db, db["category"].find_one({"_id": oid}))


def delete_category(db: Database, category_id: str) -> None:
    result = db["category"].delete_one({"_id": to_object_id(category_id)})
    if result.deleted_count == 0:
        raise AppError("Category not found", 404)
