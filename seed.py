"""
Demo data for the storefront.

Run ``python seed.py`` to wipe and reseed the configured database.
"""
import logging
import random
import re
from datetime import datetime

import config
from database import ensure_indexes
from security import hash_password

logger = logging.getLogger(__name__)

CATEGORIES = [
    {"name": "Women", "slug": "women", "description": "Elegant fashion for the modern woman", "sort_order": 1},
    {"name": "Men", "slug": "men", "description": "Sophisticated style for the discerning gentleman", "sort_order": 2},
    {"name": "Kids", "slug": "kids", "description": "Luxury fashion for the little ones", "sort_order": 3},
]

BASE_PRODUCTS = {
    "women": [
        ("Silk Evening Dress", 899, "Luxurious silk evening dress with intricate beadwork"),
        ("Cashmere Blazer", 1299, "Premium cashmere blazer with tailored fit"),
        ("Designer Handbag", 2199, "Handcrafted leather handbag with gold hardware"),
        ("Pearl Necklace", 599, "Elegant freshwater pearl necklace"),
        ("Luxury Scarf", 299, "Silk scarf with exclusive print design"),
    ],
    "men": [
        ("Italian Wool Suit", 2899, "Handtailored Italian wool suit with peak lapels"),
        ("Luxury Watch", 4999, "Swiss-made luxury timepiece with automatic movement"),
        ("Leather Oxford Shoes", 799, "Handcrafted leather Oxford shoes"),
        ("Cashmere Overcoat", 1899, "Premium cashmere overcoat for winter"),
        ("Silk Tie Collection", 199, "Set of three premium silk ties"),
    ],
    "kids": [
        ("Designer Kids Dress", 299, "Adorable designer dress for special occasions"),
        ("Kids Formal Suit", 399, "Miniature version of our adult suits"),
        ("Luxury Sneakers", 199, "Premium kids sneakers with comfort design"),
        ("Cashmere Sweater", 249, "Soft cashmere sweater for kids"),
        ("Designer Backpack", 149, "Stylish and functional kids backpack"),
    ],
}

SIZES = {
    "women": ["XS", "S", "M", "L", "XL"],
    "men": ["S", "M", "L", "XL", "XXL"],
    "kids": ["2T", "3T", "4T", "5T", "6", "7", "8"],
}

COLORS = [
    {"name": "Midnight Black", "hex": "#0D0D0D"},
    {"name": "Champagne Gold", "hex": "#C5A880"},
    {"name": "Rich Burgundy", "hex": "#6A1B1A"},
]

IMAGES = [
    "https://images.pexels.com/photos/1536619/pexels-photo-1536619.jpeg",
    "https://images.pexels.com/photos/1462637/pexels-photo-1462637.jpeg",
]

ADMIN_USER = {"name": "Admin User", "email": "admin@luxora.com", "password": "admin123"}


def slugify(title: str) -> str:
    slug = re.sub(r"[^\w\s-]", "", title.lower())
    return re.sub(r"\s+", "-", slug.strip())


def build_products(category_id, slug: str):
    now = datetime.utcnow()
    products = []
    for index, (title, price, description) in enumerate(BASE_PRODUCTS[slug]):
        products.append({
            "title": title,
            "slug": slugify(title),
            "description": description,
            "price": float(price),
            "images": list(IMAGES),
            "category": category_id,
            "sizes": list(SIZES[slug]),
            "colors": [dict(c) for c in COLORS],
            "in_stock": random.randint(10, 59),
            "sku": f"LUX-{slug.upper()}-{index + 1:03d}",
            "featured": index < 2,
            "is_active": True,
            "tags": ["luxury", "premium", slug],
            "created_at": now,
            "updated_at": now,
        })
    return products


def seed_database(db, reset: bool = False) -> dict:
    if reset:
        for name in ("user", "category", "product", "order"):
            db[name].delete_many({})
        logger.info("Cleared existing data")

    now = datetime.utcnow()
    if not db["user"].find_one({"email": ADMIN_USER["email"]}):
        db["user"].insert_one({
            "name": ADMIN_USER["name"],
            "email": ADMIN_USER["email"],
            "hashed_password": hash_password(ADMIN_USER["password"]),
            "is_admin": True,
            "token_version": 0,
            "created_at": now,
            "updated_at": now,
        })

    product_count = 0
    for category in CATEGORIES:
        existing = db["category"].find_one({"slug": category["slug"]})
        if existing:
            category_id = existing["_id"]
        else:
            doc = dict(category, is_active=True, created_at=now, updated_at=now)
            category_id = db["category"].insert_one(doc).inserted_id
        products = build_products(category_id, category["slug"])
        db["product"].insert_many(products)
        product_count += len(products)

    logger.info("Seeded %d categories and %d products", len(CATEGORIES), product_count)
    return {"categories": len(CATEGORIES), "products": product_count}


if __name__ == "__main__":
    from database import db

    logging.basicConfig(level=config.LOG_LEVEL)
    if db is None:
        raise SystemExit("DATABASE_URL is not set")
    ensure_indexes(db)
    result = seed_database(db, reset=True)
    print(f"Seeded {result['categories']} categories and {result['products']} products")
