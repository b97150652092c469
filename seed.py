"""
Catalog seeding.

Imports an external catalog export (a JSON list of rows) into categories, brands
and products. Running it again over the same data creates nothing new: categories
are matched by slug, brands by name and products by their derived slug.

    python seed.py catalog_data.json [--clear] [--admin-username NAME --admin-password PW]
"""
import argparse
import json
import logging
import random
import re
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from auth import hash_password
from database import Database
from schemas import AdminPermissionName, CatalogItem, SeedSummary
from storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_SLUG = "general-health"
DEFAULT_BRAND = "Generic"
DEFAULT_DOSAGE = "As directed"

CATEGORIES = [
    {"name": "Vitamins & Multivitamins", "slug": "vitamins-multivitamins", "description": "Essential vitamins and multivitamin supplements for daily health"},
    {"name": "Probiotics & Digestive Health", "slug": "probiotics-digestive-health", "description": "Probiotic supplements and digestive health products"},
    {"name": "Dietary Supplements", "slug": "dietary-supplements", "description": "General dietary and nutritional supplements"},
    {"name": "Joint, Bone & Muscle Support", "slug": "joint-bone-muscle-support", "description": "Supplements for joint, bone and muscle health"},
    {"name": "Hair, Skin & Nails", "slug": "hair-skin-nails", "description": "Beauty supplements for hair, skin and nail health"},
    {"name": "Pain Relief", "slug": "pain-relief", "description": "Over-the-counter pain relief medications"},
    {"name": "Cold, Cough & Allergy", "slug": "cold-cough-allergy", "description": "Cold, cough and allergy relief medications"},
    {"name": "Urinary Health & Cranberry", "slug": "urinary-health-cranberry", "description": "Urinary tract health and cranberry supplements"},
    {"name": "Skin Care & Acne", "slug": "skin-care-acne", "description": "Topical skin care and acne treatment products"},
    {"name": "Women's Health & Feminine Care", "slug": "womens-health-feminine-care", "description": "Women's health and feminine care products"},
    {"name": "First Aid & Wound Care", "slug": "first-aid-wound-care", "description": "First aid supplies and wound care products"},
    {"name": "Digestive & Antacid", "slug": "digestive-antacid", "description": "Digestive aids and antacid medications"},
    {"name": "Heart Health & CoQ10", "slug": "heart-health-coq10", "description": "Heart health supplements including CoQ10"},
    {"name": "Oral Care", "slug": "oral-care", "description": "Oral and dental care products"},
    {"name": "Minerals & Trace Elements", "slug": "minerals-trace-elements", "description": "Important minerals and trace elements for optimal body function"},
    {"name": "Herbal & Natural Supplements", "slug": "herbal-natural-supplements", "description": "Natural herbal supplements and botanical extracts"},
    {"name": "General Health", "slug": DEFAULT_CATEGORY_SLUG, "description": "General health and wellness products"},
]

PRESCRIPTION_KEYWORDS = ("prescription", "rx", "antibiotic", "steroid")
DOSAGE_PATTERN = re.compile(r"\d+\s*(mg|mcg|g|ml|tablets?|capsules?|count|ct)", re.IGNORECASE)


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "-", value.lower())
    return re.sub(r"-+", "-", slug)


def extract_dosage(name: str) -> str:
    match = DOSAGE_PATTERN.search(name)
    return match.group(0) if match else DEFAULT_DOSAGE


def requires_prescription(name: str) -> bool:
    lowered = name.lower()
    return any(keyword in lowered for keyword in PRESCRIPTION_KEYWORDS)


def short_description(name: str) -> str:
    return name[:50] + "..." if len(name) > 50 else name


def seed_catalog(storage: Storage, items: Iterable[Dict[str, Any]], rng: Optional[random.Random] = None) -> SeedSummary:
    rng = rng or random.Random()
    rows = [CatalogItem.model_validate(item) for item in items]
    logger.info("Seeding catalog with %d rows", len(rows))

    created = {"categories": 0, "brands": 0, "products": 0}

    categories = {}
    for definition in CATEGORIES:
        category = storage.get_category_by_slug(definition["slug"])
        if category is None:
            category = storage.create_category(**definition)
            created["categories"] += 1
        categories[definition["slug"]] = category
    categories_by_name = {c.name: c for c in categories.values()}

    brands = {}
    brand_names = [row.brand or DEFAULT_BRAND for row in rows]
    for name in dict.fromkeys(brand_names):
        slug = slugify(name)
        if slug in brands:
            continue
        brand = storage.get_brand_by_name(name)
        if brand is None:
            brand = storage.create_brand(name=name, description=f"Quality {name} pharmaceutical products")
            created["brands"] += 1
        brands[slug] = brand

    seen = set()
    position = 0
    for row in rows:
        name = row.product_name or "Unknown Product"
        brand_name = row.brand or DEFAULT_BRAND
        price = row.price if row.price is not None else Decimal("0")

        key = (name, brand_name, price)
        if key in seen:
            continue
        seen.add(key)

        # Position among distinct rows keeps slugs stable across runs
        slug = f"{slugify(name)[:100]}-{position}"
        position += 1
        if storage.get_product_by_slug(slug) is not None:
            continue

        category = categories_by_name.get(row.category or "") or categories[DEFAULT_CATEGORY_SLUG]
        brand = brands[slugify(brand_name)]

        storage.create_product(
            name=name,
            slug=slug,
            description=f"{name} - Premium {brand_name} product for your health needs.",
            short_description=short_description(name),
            price=price,
            dosage=extract_dosage(name),
            category_id=category.id,
            brand_id=brand.id,
            image_url=row.image_url or "",
            stock_quantity=rng.randint(50, 199),
            requires_prescription=requires_prescription(name),
            rating=Decimal(str(round(rng.uniform(3, 5), 1))),
            review_count=rng.randint(50, 549),
        )
        created["products"] += 1
        logger.debug("Created product: %s", name)

    summary = SeedSummary(**created)
    logger.info(
        "Seeded %d categories, %d brands, %d products",
        summary.categories,
        summary.brands,
        summary.products,
    )
    return summary


def ensure_admin(storage: Storage, username: str, password: str) -> None:
    """Create (or promote) an admin account holding every permission."""
    user = storage.get_user_by_username(username)
    if user is None:
        user = storage.create_user(username=username, password=hash_password(password), is_admin=True)
    storage.set_user_admin(user.id, True, "super_admin")
    for permission in AdminPermissionName:
        if not storage.has_admin_permission(user.id, permission.value):
            storage.add_admin_permission(user.id, permission.value)
    logger.info("Admin account ready: %s", username)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Seed the pharmacy catalog")
    parser.add_argument("catalog", help="path to the catalog JSON export")
    parser.add_argument("--clear", action="store_true", help="wipe catalog, carts and orders first")
    parser.add_argument("--admin-username")
    parser.add_argument("--admin-password")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    with open(args.catalog, encoding="utf-8") as fh:
        items = json.load(fh)

    database = Database()
    database.create_all()
    try:
        with database.session() as session:
            storage = Storage(session)
            if args.clear:
                storage.clear_all_data()
            summary = seed_catalog(storage, items)
            if args.admin_username and args.admin_password:
                ensure_admin(storage, args.admin_username, args.admin_password)
        print(json.dumps(summary.model_dump()))
    finally:
        database.dispose()


if __name__ == "__main__":
    main()
