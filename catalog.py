"""
Catalog queries: product lookup, variation resolution and category checks.

Collections used: product, productvariation, variationsize, variationtype,
variationbeans, category.
"""

import re
import time
from typing import Optional

from pymongo.database import Database

from database import as_object_id
from pricing import discounted_price

VARIATION_COLLECTIONS = {
    "sizes": "variationsize",
    "types": "variationtype",
    "beans": "variationbeans",
}


class AmbiguousVariation(Exception):
    """More than one active variation matches the requested combination."""

    def __init__(self, product_id: str, count: int):
        super().__init__(f"{count} active variations of product {product_id} match the same combination")
        self.product_id = product_id
        self.count = count


class CategoryCycleError(ValueError):
    pass


def find_product(db: Database, slug_or_id: str) -> Optional[dict]:
    """Find a product by id, slug, or the permissive name/SKU fallback.

    The fallback turns dashes back into spaces and does a case-insensitive
    substring match on the English and Arabic names. When several products
    match, the first one in natural order is returned; that order is whatever
    the store yields and is not guaranteed to be stable.
    """
    if not slug_or_id:
        return None
    oid = as_object_id(slug_or_id)
    if oid is not None:
        product = db["product"].find_one({"_id": oid})
        if product:
            return product
    product = db["product"].find_one({"slug": slug_or_id})
    if product:
        return product
    possible_name = re.escape(slug_or_id.replace("-", " ").strip())
    return db["product"].find_one({
        "$or": [
            {"name": {"$regex": possible_name, "$options": "i"}},
            {"name_ar": {"$regex": possible_name, "$options": "i"}},
            {"sku": slug_or_id},
        ]
    })


def resolve_variation(db: Database, product_id: str, size_id: Optional[str],
                      type_id: Optional[str] = None, beans_id: Optional[str] = None) -> Optional[dict]:
    """Exact match on every dimension among active variations.

    A dimension left out of the request must also be absent on the
    variation. There is no nearest-match substitution: no match returns None.
    """
    query = {
        "product_id": str(product_id),
        "size_id": size_id,
        "type_id": type_id or None,
        "beans_id": beans_id or None,
        "is_active": True,
    }
    matches = list(db["productvariation"].find(query).limit(2))
    if not matches:
        return None
    if len(matches) > 1:
        raise AmbiguousVariation(str(product_id), len(matches))
    return matches[0]


def product_variations(db: Database, product_id: str, active_only: bool = False) -> list:
    query = {"product_id": str(product_id)}
    if active_only:
        query["is_active"] = True
    return list(db["productvariation"].find(query))


def has_active_variations(db: Database, product_id: str) -> bool:
    return db["productvariation"].count_documents({"product_id": str(product_id), "is_active": True}) > 0


def unit_price(product: dict, variation: Optional[dict] = None) -> float:
    """Selling price for a product or one of its variations."""
    price = product.get("price", 0)
    discount = product.get("discount")
    discount_type = product.get("discount_type") or "PERCENTAGE"
    if variation:
        if variation.get("price") is not None:
            price = variation["price"]
        if variation.get("discount"):
            discount = variation["discount"]
            discount_type = variation.get("discount_type") or "PERCENTAGE"
    return discounted_price(price, discount, discount_type)


def variation_label(db: Database, variation: dict) -> str:
    """Human readable "250g / Cardamom / Espresso" style label."""
    parts = []
    for key, collection in (("size_id", "variationsize"), ("type_id", "variationtype"), ("beans_id", "variationbeans")):
        oid = as_object_id(variation.get(key))
        if oid is None:
            continue
        option = db[collection].find_one({"_id": oid})
        if option:
            parts.append(option.get("display_name") or option.get("name"))
    return " / ".join(parts)


def ensure_not_own_ancestor(db: Database, category_id: Optional[str], parent_id: Optional[str]) -> None:
    """Raise CategoryCycleError if making parent_id the parent would create a loop."""
    if not parent_id:
        return
    seen = set()
    current = parent_id
    while current:
        if category_id and current == category_id:
            raise CategoryCycleError("A category cannot be its own ancestor")
        if current in seen:
            raise CategoryCycleError("Category tree already contains a cycle")
        seen.add(current)
        oid = as_object_id(current)
        parent = db["category"].find_one({"_id": oid}) if oid else None
        if not parent:
            return
        current = parent.get("parent_id")


def search_variation_options(db: Database, query: Optional[str], limit: int = 5) -> dict:
    results = {"beans": [], "types": [], "sizes": []}
    if not query or not query.strip():
        return results
    pattern = {"$regex": re.escape(query.strip()), "$options": "i"}
    for key in ("beans", "types"):
        cursor = db[VARIATION_COLLECTIONS[key]].find({
            "is_active": True,
            "$or": [{"name": pattern}, {"name_ar": pattern}, {"description": pattern}],
        }).sort("name", 1).limit(limit)
        results[key] = list(cursor)
    results["sizes"] = list(db["variationsize"].find({
        "is_active": True,
        "$or": [{"name": pattern}, {"display_name": pattern}],
    }).sort("value", 1).limit(limit))
    return results


def generate_sku(product: dict, category: Optional[dict], size: Optional[dict],
                 type_: Optional[dict] = None, beans: Optional[dict] = None) -> str:
    product_code = (product.get("name") or "PRD")[:3].upper()
    category_code = ((category or {}).get("name") or "CAT")[:3].upper()
    size_code = re.sub(r"[^0-9]", "", (size or {}).get("display_name") or "") or "SZ"
    type_code = f"-{(type_['name'] or 'TP')[:2].upper()}" if type_ else ""
    beans_code = f"-{(beans['name'] or 'BN')[:2].upper()}" if beans else ""
    suffix = str(int(time.time() * 1000))[-4:]
    return f"{product_code}-{category_code}-{size_code}{type_code}{beans_code}-{suffix}"
