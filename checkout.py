"""
Checkout: cart snapshots, the three step checkout session and order totals.

The cart only ever holds price snapshots for display. Every amount that is
charged is recomputed here from persisted catalog prices.
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel
from pymongo.database import Database

from catalog import find_product, resolve_variation, has_active_variations, unit_price, variation_label
from database import as_object_id
from orders import create_order, DuplicateOrder, OrderCreationError, OrderResult
from payments import PaymentError, build_metadata
from pricing import CURRENCY, line_total, round_money
from schemas import Cart, CartItem, CartItemAdd, CustomerInfo, ShippingInfo, OrderItem, OrderTotals
from shipping import calculate_shipping, ShippingQuote

logger = logging.getLogger(__name__)

CART_ROUTE = "/cart"
CONFIRMATION_ROUTE = "/checkout/thank-you"

EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")
PHONE_SEPARATORS_RE = re.compile(r"[\s\-().]")
PHONE_RE = re.compile(r"^\+?\d+$")
PHONE_MIN_DIGITS = 7
PHONE_MAX_DIGITS = 20
MIN_ADDRESS_LENGTH = 10

EMIRATE_CITIES = {
    "Abu Dhabi": ["Abu Dhabi", "Al Ain", "Madinat Zayed", "Ruwais"],
    "Dubai": ["Dubai", "Hatta", "Jebel Ali"],
    "Sharjah": ["Sharjah", "Khor Fakkan", "Kalba", "Dibba Al-Hisn"],
    "Ajman": ["Ajman", "Masfout"],
    "Umm Al Quwain": ["Umm Al Quwain"],
    "Ras Al Khaimah": ["Ras Al Khaimah", "Al Jazirah Al Hamra"],
    "Fujairah": ["Fujairah", "Dibba Al-Fujairah"],
}


class CheckoutStep(str, Enum):
    CUSTOMER_INFO = "CUSTOMER_INFO"
    SHIPPING_INFO = "SHIPPING_INFO"
    PAYMENT = "PAYMENT"


STEP_ORDER = [CheckoutStep.CUSTOMER_INFO, CheckoutStep.SHIPPING_INFO, CheckoutStep.PAYMENT]


class StepOrderError(Exception):
    def __init__(self, expected: CheckoutStep, actual: CheckoutStep):
        super().__init__(f"Checkout is at {actual.value}, expected {expected.value}")
        self.expected = expected
        self.actual = actual


class ItemUnavailable(Exception):
    """A product or variation cannot be sold as requested."""

    def __init__(self, code: str, product_id: Optional[str] = None):
        super().__init__(f"{code}: {product_id}")
        self.code = code
        self.product_id = product_id


class CartEmpty(Exception):
    pass


# -------------------- Validation --------------------

def validate_customer_info(info: CustomerInfo) -> dict:
    """Field -> translation key for every invalid field; empty when valid."""
    errors = {}
    if not info.full_name.strip():
        errors["full_name"] = "required_field"

    email = info.email.strip()
    if not email:
        errors["email"] = "required_field"
    elif not EMAIL_RE.match(email):
        errors["email"] = "valid_email"

    phone = PHONE_SEPARATORS_RE.sub("", info.phone.strip())
    if not phone:
        errors["phone"] = "required_field"
    elif not PHONE_RE.match(phone):
        errors["phone"] = "valid_phone"
    elif not PHONE_MIN_DIGITS <= len(phone.lstrip("+")) <= PHONE_MAX_DIGITS:
        errors["phone"] = "phone_length"
    return errors


def validate_shipping_info(info: ShippingInfo) -> dict:
    errors = {}
    cities = EMIRATE_CITIES.get(info.emirate)
    if cities is None:
        errors["emirate"] = "select_emirate_required"
        errors["city"] = "select_emirate_first" if info.city else "select_city_required"
    elif info.city not in cities:
        errors["city"] = "select_city_required"

    address = info.address.strip()
    if not address:
        errors["address"] = "address_required"
    elif len(address) < MIN_ADDRESS_LENGTH:
        errors["address"] = "complete_address"
    return errors


# -------------------- Checkout session --------------------

class CheckoutSession(BaseModel):
    session_id: str
    step: CheckoutStep = CheckoutStep.CUSTOMER_INFO
    customer_info: CustomerInfo = CustomerInfo()
    shipping_info: ShippingInfo = ShippingInfo()
    payment_intent_id: Optional[str] = None
    payment_amount: Optional[float] = None
    order_completing: bool = False
    order_id: Optional[str] = None
    # Captured payment whose order could not be written, kept for support
    failed_payment_ref: Optional[str] = None

    def require_step(self, step: CheckoutStep) -> None:
        if self.step != step:
            raise StepOrderError(step, self.step)

    def submit_customer_info(self, info: CustomerInfo) -> dict:
        self.require_step(CheckoutStep.CUSTOMER_INFO)
        errors = validate_customer_info(info)
        self.customer_info = info
        if not errors:
            self.step = CheckoutStep.SHIPPING_INFO
        return errors

    def select_emirate(self, emirate: str) -> None:
        if emirate != self.shipping_info.emirate:
            self.shipping_info = ShippingInfo(emirate=emirate, city="", address=self.shipping_info.address)

    def submit_shipping_info(self, info: ShippingInfo) -> dict:
        self.require_step(CheckoutStep.SHIPPING_INFO)
        errors = validate_shipping_info(info)
        self.shipping_info = info
        if not errors:
            self.step = CheckoutStep.PAYMENT
        return errors

    def go_back(self) -> None:
        index = STEP_ORDER.index(self.step)
        if index == 0:
            raise StepOrderError(CheckoutStep.SHIPPING_INFO, self.step)
        self.step = STEP_ORDER[index - 1]
        # Leaving the payment step invalidates the prepared charge
        self.payment_intent_id = None
        self.payment_amount = None


def load_session(db: Database, session_id: str) -> CheckoutSession:
    doc = db["checkoutsession"].find_one({"session_id": session_id})
    if not doc:
        return CheckoutSession(session_id=session_id)
    return CheckoutSession(**{k: v for k, v in doc.items() if k in CheckoutSession.model_fields})


def save_session(db: Database, session: CheckoutSession) -> None:
    data = session.model_dump(mode="json")
    data["updated_at"] = datetime.now(timezone.utc)
    db["checkoutsession"].update_one({"session_id": session.session_id}, {"$set": data}, upsert=True)


def entry_redirect(cart: Cart, session: CheckoutSession) -> Optional[str]:
    """Where to send a visitor who opens checkout, or None to let them in.

    Clearing the cart is part of completing an order, so an in-flight
    completion must not bounce the customer back to the cart.
    """
    if session.order_completing:
        return CONFIRMATION_ROUTE if session.order_id else None
    if not cart.items:
        return CART_ROUTE
    return None


# -------------------- Cart --------------------

def get_cart(db: Database, session_id: str) -> Cart:
    doc = db["cart"].find_one({"session_id": session_id})
    if not doc:
        return Cart(session_id=session_id)
    return Cart(session_id=session_id, items=doc.get("items", []), subtotal=doc.get("subtotal", 0.0))


def save_cart(db: Database, cart: Cart) -> Cart:
    cart.subtotal = round_money(sum(line_total(i.unit_price, i.quantity) for i in cart.items))
    data = cart.model_dump()
    data["updated_at"] = datetime.now(timezone.utc)
    db["cart"].update_one({"session_id": cart.session_id}, {"$set": data}, upsert=True)
    return cart


def clear_cart(db: Database, session_id: str) -> None:
    db["cart"].delete_one({"session_id": session_id})


def _load_line(db: Database, product_id: str, variation_id: Optional[str]) -> tuple[dict, Optional[dict]]:
    product = find_product(db, product_id)
    if not product:
        raise ItemUnavailable("product_not_found", product_id)
    variation = None
    if variation_id:
        oid = as_object_id(variation_id)
        variation = db["productvariation"].find_one({"_id": oid, "product_id": str(product["_id"])}) if oid else None
        if not variation or not variation.get("is_active", True):
            raise ItemUnavailable("variation_not_found", product_id)
    elif has_active_variations(db, str(product["_id"])):
        raise ItemUnavailable("variation_not_found", product_id)
    return product, variation


def _check_stock(product: dict, variation: Optional[dict], quantity: int) -> None:
    if variation is not None:
        if int(variation.get("stock_quantity", 0)) < quantity:
            raise ItemUnavailable("out_of_stock", str(product["_id"]))
    elif not product.get("in_stock", True):
        raise ItemUnavailable("out_of_stock", str(product["_id"]))


def _display_name(db: Database, product: dict, variation: Optional[dict]) -> str:
    if not variation:
        return product["name"]
    label = variation_label(db, variation)
    return f"{product['name']} ({label})" if label else product["name"]


def add_to_cart(db: Database, session_id: str, payload: CartItemAdd) -> Cart:
    product = find_product(db, payload.product_id)
    if not product:
        raise ItemUnavailable("product_not_found", payload.product_id)
    product_id = str(product["_id"])
    variation = None
    if payload.size_id or has_active_variations(db, product_id):
        variation = resolve_variation(db, product_id, payload.size_id, payload.type_id, payload.beans_id)
        if variation is None:
            raise ItemUnavailable("variation_not_found", product_id)
    variation_id = str(variation["_id"]) if variation else None

    cart = get_cart(db, session_id)
    existing = next((i for i in cart.items if i.product_id == product_id and i.variation_id == variation_id), None)
    quantity = payload.quantity + (existing.quantity if existing else 0)
    _check_stock(product, variation, quantity)

    if existing:
        existing.quantity = quantity
        existing.unit_price = unit_price(product, variation)
    else:
        cart.items.append(CartItem(
            product_id=product_id,
            variation_id=variation_id,
            name=_display_name(db, product, variation),
            name_ar=product.get("name_ar"),
            image=product.get("image_url"),
            unit_price=unit_price(product, variation),
            quantity=payload.quantity,
        ))
    return save_cart(db, cart)


def update_cart_item(db: Database, session_id: str, index: int, quantity: int) -> Cart:
    cart = get_cart(db, session_id)
    if not 0 <= index < len(cart.items):
        raise IndexError(index)
    item = cart.items[index]
    product, variation = _load_line(db, item.product_id, item.variation_id)
    _check_stock(product, variation, quantity)
    item.quantity = quantity
    return save_cart(db, cart)


def remove_cart_item(db: Database, session_id: str, index: int) -> Cart:
    cart = get_cart(db, session_id)
    if not 0 <= index < len(cart.items):
        raise IndexError(index)
    cart.items.pop(index)
    return save_cart(db, cart)


def recompute_cart(db: Database, session_id: str) -> Cart:
    """Refresh every snapshot from the catalog, dropping lines that can no longer be sold."""
    cart = get_cart(db, session_id)
    kept = []
    for item in cart.items:
        try:
            product, variation = _load_line(db, item.product_id, item.variation_id)
        except ItemUnavailable as e:
            logger.info(f"Dropping cart line {item.product_id}/{item.variation_id} from {session_id}: {e.code}")
            continue
        item.unit_price = unit_price(product, variation)
        item.name = _display_name(db, product, variation)
        kept.append(item)
    cart.items = kept
    return save_cart(db, cart)


# -------------------- Totals --------------------

def price_order_lines(db: Database, lines: list, check_stock: bool = True) -> List[OrderItem]:
    """Order items priced from the catalog. `lines` need product_id, variation_id and quantity."""
    items = []
    for line in lines:
        product, variation = _load_line(db, line.product_id, line.variation_id)
        if check_stock:
            _check_stock(product, variation, line.quantity)
        price = round_money(unit_price(product, variation))
        items.append(OrderItem(
            product_id=str(product["_id"]),
            variation_id=str(variation["_id"]) if variation else None,
            name=_display_name(db, product, variation),
            name_ar=product.get("name_ar"),
            image=product.get("image_url"),
            unit_price=price,
            quantity=line.quantity,
            subtotal=line_total(price, line.quantity),
        ))
    return items


def compute_totals(items: List[OrderItem], lookup, city: Optional[str] = None,
                   coupon_code: Optional[str] = None) -> tuple[OrderTotals, ShippingQuote]:
    subtotal = round_money(sum(i.subtotal for i in items))
    quote = calculate_shipping(
        subtotal,
        [{"product_id": i.product_id, "quantity": i.quantity, "price": i.unit_price} for i in items],
        lookup,
        city=city,
    )
    if coupon_code:
        logger.info(f"Coupon code {coupon_code!r} submitted; coupons are not applied")
    discount = 0.0
    total = round_money(subtotal + quote.shipping_cost - discount)
    return OrderTotals(subtotal=subtotal, shipping_cost=quote.shipping_cost, discount=discount, total=total), quote


def prepare_payment(db: Database, session: CheckoutSession, gateway, lookup,
                    coupon_code: Optional[str] = None) -> dict:
    """Price the cart and open a fresh payment intent for the total."""
    session.require_step(CheckoutStep.PAYMENT)
    cart = get_cart(db, session.session_id)
    if not cart.items:
        raise CartEmpty(session.session_id)
    items = price_order_lines(db, cart.items)
    totals, quote = compute_totals(items, lookup, city=session.shipping_info.city, coupon_code=coupon_code)
    intent = gateway.create_payment_intent(
        totals.total,
        CURRENCY,
        build_metadata(session.customer_info.model_dump(), session.shipping_info.model_dump(),
                       [i.model_dump() for i in items], totals.model_dump()),
    )
    session.payment_intent_id = intent.id
    session.payment_amount = totals.total
    save_session(db, session)
    return {
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.id,
        "totals": totals.model_dump(),
        "shipping": quote.model_dump(),
        "items": [i.model_dump() for i in items],
    }


def pay(db: Database, session: CheckoutSession, gateway, lookup, payment_method: str,
        notifier=None, coupon_code: Optional[str] = None) -> OrderResult:
    """Charge the prepared intent and write the order.

    PaymentError leaves the session on the payment step; the failed intent
    is dropped so a retry opens a new one. OrderCreationError means money
    was taken without an order record; the reference stays on the session as
    `failed_payment_ref`. After an order the session starts over at the
    first step with no intent.
    """
    session.require_step(CheckoutStep.PAYMENT)
    if not session.payment_intent_id:
        raise PaymentError("Payment has not been initialised", code="payment_not_prepared")
    cart = get_cart(db, session.session_id)
    if not cart.items:
        raise CartEmpty(session.session_id)
    items = price_order_lines(db, cart.items)
    totals, _ = compute_totals(items, lookup, city=session.shipping_info.city, coupon_code=coupon_code)
    if session.payment_amount is None or round_money(session.payment_amount) != totals.total:
        session.payment_intent_id = None
        session.payment_amount = None
        save_session(db, session)
        raise PaymentError("Your order total changed, please review it and pay again", code="amount_mismatch")

    payment_ref = session.payment_intent_id
    try:
        gateway.confirm_payment(payment_ref, payment_method)
    except PaymentError:
        session.payment_intent_id = None
        session.payment_amount = None
        save_session(db, session)
        raise

    session.order_completing = True
    save_session(db, session)
    try:
        result = create_order(db, session.customer_info, session.shipping_info, items, totals, payment_ref, notifier)
    except OrderCreationError:
        session.order_completing = False
        session.failed_payment_ref = payment_ref
        session.payment_intent_id = None
        session.payment_amount = None
        save_session(db, session)
        raise
    except DuplicateOrder as e:
        logger.error(f"Payment {payment_ref} already has order {e.order_id}")
        session.order_id = e.order_id
        session.step = CheckoutStep.CUSTOMER_INFO
        session.payment_intent_id = None
        session.payment_amount = None
        save_session(db, session)
        raise
    clear_cart(db, session.session_id)
    # The intent is spent; a refilled cart has to go through checkout again
    session.order_id = result.order_id
    session.step = CheckoutStep.CUSTOMER_INFO
    session.payment_intent_id = None
    session.payment_amount = None
    save_session(db, session)
    return result
