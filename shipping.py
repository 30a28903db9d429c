"""
Shipping cost calculation.

A rule lookup picks the shipping rule for an order; `calculate_shipping`
wraps any lookup and falls back to a fixed tariff when the lookup cannot
answer, so checkout keeps working while the rule service is down.
"""

import logging
import os
from typing import List, Optional

import requests
from pydantic import BaseModel
from pymongo.database import Database

from pricing import round_money

logger = logging.getLogger(__name__)

FALLBACK_FREE_SHIPPING_THRESHOLD = 200.0
FALLBACK_SHIPPING_COST = 25.0

# PICKUP has to be chosen explicitly by the customer
AUTOMATIC_RULE_ORDER = ("STANDARD", "EXPRESS")


class ShippingRuleUnavailable(Exception):
    """The rule lookup could not produce a rule for this order."""


class ShippingQuote(BaseModel):
    shipping_cost: float
    rule: Optional[dict] = None
    free_shipping_threshold: Optional[float] = None
    amount_to_free_shipping: Optional[float] = None
    fallback: bool = False


def _serialize_rule(rule: dict) -> dict:
    out = {k: v for k, v in rule.items() if k not in ("_id", "created_at", "updated_at")}
    if "_id" in rule:
        out["id"] = str(rule["_id"])
    return out


def _applies_to_city(rule: dict, city: Optional[str]) -> bool:
    cities = rule.get("cities") or []
    if not cities:
        return True
    if not city:
        return False
    return city.strip().lower() in {c.strip().lower() for c in cities}


def _threshold_met(rule: dict, order_total: float) -> bool:
    threshold = rule.get("free_shipping_threshold")
    return threshold is not None and order_total >= threshold


def quote_from_rules(rules: List[dict], order_total: float, city: Optional[str] = None) -> ShippingQuote:
    """Pick a rule from `rules` (already filtered to active ones) and price it."""
    candidates = [r for r in rules if _applies_to_city(r, city)]
    # City specific rules first, then general ones
    candidates.sort(key=lambda r: 0 if r.get("cities") else 1)

    chosen = None
    shipping_cost = 0.0
    for rule in candidates:
        if rule.get("type") == "FREE" and (rule.get("free_shipping_threshold") is None or _threshold_met(rule, order_total)):
            chosen = rule
            shipping_cost = 0.0
            break
    if chosen is None:
        for rule_type in AUTOMATIC_RULE_ORDER:
            typed = [r for r in candidates if r.get("type") == rule_type]
            if not typed:
                continue
            chosen = min(typed, key=lambda r: (0 if r.get("cities") else 1, float(r.get("cost") or 0)))
            shipping_cost = 0.0 if _threshold_met(chosen, order_total) else float(chosen.get("cost") or 0)
            break
    if chosen is None:
        raise ShippingRuleUnavailable(f"No shipping rule applies to city={city!r}")

    thresholds = [
        float(r["free_shipping_threshold"]) for r in candidates
        if r.get("type") == "FREE" and r.get("free_shipping_threshold") is not None
        and r["free_shipping_threshold"] > order_total
    ]
    threshold = min(thresholds) if thresholds and shipping_cost > 0 else None
    return ShippingQuote(
        shipping_cost=round_money(shipping_cost),
        rule=_serialize_rule(chosen),
        free_shipping_threshold=threshold,
        amount_to_free_shipping=round_money(max(0.0, threshold - order_total)) if threshold is not None else None,
    )


class DatabaseShippingRuleLookup:
    """Reads active rules from the `shippingrule` collection."""

    def __init__(self, db: Optional[Database]):
        self.db = db

    def lookup(self, order_total: float, items: list, city: Optional[str] = None) -> ShippingQuote:
        if self.db is None:
            raise ShippingRuleUnavailable("Database not available")
        rules = list(self.db["shippingrule"].find({"is_active": True}))
        return quote_from_rules(rules, order_total, city)


class RemoteShippingRuleLookup:
    """Asks a separate shipping service over HTTP."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def lookup(self, order_total: float, items: list, city: Optional[str] = None) -> ShippingQuote:
        response = requests.post(
            self.url,
            json={"orderTotal": order_total, "items": items, "city": city},
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        return ShippingQuote(
            shipping_cost=round_money(data["shippingCost"]),
            rule=data.get("shippingRule"),
            free_shipping_threshold=data.get("freeShippingThreshold"),
            amount_to_free_shipping=data.get("amountToFreeShipping"),
        )


def default_lookup(db: Optional[Database]):
    url = os.getenv("SHIPPING_SERVICE_URL")
    if url:
        return RemoteShippingRuleLookup(url, timeout=float(os.getenv("SHIPPING_SERVICE_TIMEOUT", "5")))
    return DatabaseShippingRuleLookup(db)


def fallback_quote(order_total: float) -> ShippingQuote:
    cost = 0.0 if order_total >= FALLBACK_FREE_SHIPPING_THRESHOLD else FALLBACK_SHIPPING_COST
    return ShippingQuote(shipping_cost=cost, rule=None, fallback=True)


def calculate_shipping(order_total: float, items: list, lookup, city: Optional[str] = None) -> ShippingQuote:
    """Shipping for an order. Never raises: lookup failures use the fallback tariff."""
    try:
        return lookup.lookup(order_total, items, city)
    except Exception as e:
        logger.warning(f"Shipping rule lookup failed, using fallback rate: {e}")
        return fallback_quote(order_total)
