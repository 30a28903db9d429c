"""
Order writer: persists a paid order and links it to a customer account.

By the time `create_order` runs the payment has already been captured. A
failure here leaves money taken without an order record, so every error is
logged with the payment reference for manual reconciliation.
"""

import hashlib
import json
import logging
import secrets
import string
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import as_object_id
from payments import PaymentIntent
from pricing import line_total, round_money
from notifications import EmailNotifier
from schemas import CustomerInfo, ShippingInfo, OrderItem, OrderTotals, Order, User

logger = logging.getLogger(__name__)

PASSWORD_CHARSET = string.ascii_letters + string.digits


class OrderCreationError(Exception):
    def __init__(self, message: str, payment_ref: Optional[str] = None):
        super().__init__(message)
        self.payment_ref = payment_ref


class DuplicateOrder(Exception):
    """An order already exists for this payment reference."""

    def __init__(self, payment_ref: str, order_id: str):
        super().__init__(f"Order {order_id} already exists for payment {payment_ref}")
        self.payment_ref = payment_ref
        self.order_id = order_id


class OrderResult(BaseModel):
    order_id: str
    is_new_customer: bool
    order: dict


def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return secrets.compare_digest(h, expected_hash)


def generate_password(length: int = 8) -> str:
    return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))


def get_or_create_customer(db: Database, customer_info: CustomerInfo, shipping_info: ShippingInfo) -> tuple[dict, bool, Optional[str]]:
    """Return (user, is_new_customer, temporary_password)."""
    email = customer_info.email.strip().lower()
    now = datetime.now(timezone.utc)
    user = db["user"].find_one({"email": email})
    if user:
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_new_customer": False, "updated_at": now}})
        return user, False, None

    temporary_password = generate_password()
    pw_hash, salt = hash_password(temporary_password)
    doc = User(
        name=customer_info.full_name.strip(),
        email=email,
        phone=customer_info.phone,
        city=shipping_info.city,
        address=shipping_info.address,
        password_hash=pw_hash,
        salt=salt,
    ).model_dump()
    doc["created_at"] = now
    doc["updated_at"] = now
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc, True, temporary_password


def decrement_stock(db: Database, items: List[OrderItem]) -> List[str]:
    """Take ordered quantities off variation stock. Returns variation ids that lacked stock."""
    conflicts = []
    for item in items:
        oid = as_object_id(item.variation_id)
        if oid is None:
            continue
        res = db["productvariation"].update_one(
            {"_id": oid, "stock_quantity": {"$gte": item.quantity}},
            {"$inc": {"stock_quantity": -item.quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        )
        if res.matched_count == 0:
            conflicts.append(item.variation_id)
    return conflicts


def create_order(db: Database, customer_info: CustomerInfo, shipping_info: ShippingInfo,
                 items: List[OrderItem], totals: OrderTotals, payment_ref: str,
                 notifier: Optional[EmailNotifier] = None) -> OrderResult:
    existing = db["order"].find_one({"payment_ref": payment_ref}, {"_id": 1})
    if existing:
        raise DuplicateOrder(payment_ref, str(existing["_id"]))
    try:
        user, is_new_customer, temporary_password = get_or_create_customer(db, customer_info, shipping_info)
        now = datetime.now(timezone.utc)
        order = Order(
            user_id=str(user["_id"]),
            customer_name=customer_info.full_name.strip(),
            customer_email=customer_info.email.strip().lower(),
            customer_phone=customer_info.phone,
            emirate=shipping_info.emirate,
            city=shipping_info.city,
            shipping_address=shipping_info.address.strip(),
            items=items,
            subtotal=totals.subtotal,
            shipping_cost=totals.shipping_cost,
            discount=totals.discount,
            total=totals.total,
            status="NEW",
            payment_ref=payment_ref,
            created_at=now,
            updated_at=now,
        )
        order_doc = order.model_dump()
        order_id = db["order"].insert_one(order_doc).inserted_id
        db["payment"].insert_one({
            "order_id": str(order_id),
            "user_id": str(user["_id"]),
            "payment_ref": payment_ref,
            "amount": totals.total,
            "currency": order.currency,
            "status": "SUCCEEDED",
            "created_at": now,
        })
        conflicts = decrement_stock(db, items)
        if conflicts:
            logger.error(f"Order {order_id} paid ({payment_ref}) but stock was short for variations {conflicts}")
            db["order"].update_one({"_id": order_id}, {"$set": {"stock_conflict": True}})
            order_doc["stock_conflict"] = True
    except PyMongoError as e:
        logger.error(f"Order creation failed after payment {payment_ref}: {e}")
        raise OrderCreationError("Order creation failed", payment_ref=payment_ref)

    notifier = notifier or EmailNotifier()
    if is_new_customer:
        sent = notifier.send_welcome_email(order.customer_name, order.customer_email, temporary_password, str(order_id))
    else:
        sent = notifier.send_thank_you_email(
            order.customer_name, order.customer_email, str(order_id), order.total,
            [i.model_dump() for i in items],
        )
    if sent:
        db["order"].update_one({"_id": order_id}, {"$set": {"email_sent": True}})
        order_doc["email_sent"] = True

    order_doc["_id"] = order_id
    logger.info(f"Order {order_id} created for {order.customer_email} (new customer: {is_new_customer})")
    return OrderResult(order_id=str(order_id), is_new_customer=is_new_customer, order=order_doc)


def _metadata_amount(metadata: dict, key: str) -> float:
    try:
        return round_money(float(metadata.get(key) or 0))
    except ValueError:
        return 0.0


def order_from_intent(db: Database, intent: PaymentIntent, notifier: Optional[EmailNotifier] = None) -> OrderResult:
    """Write the order for a succeeded intent that has none, from the metadata saved at checkout.

    Item prices and totals are the ones that were charged, not current catalog prices.
    """
    metadata = intent.metadata or {}
    try:
        lines = json.loads(metadata.get("orderItems") or "[]")
    except json.JSONDecodeError:
        raise OrderCreationError("Payment metadata has no readable order items", payment_ref=intent.id)
    if not lines or not metadata.get("customerEmail"):
        raise OrderCreationError("Payment metadata does not describe an order", payment_ref=intent.id)

    customer_info = CustomerInfo(
        full_name=metadata.get("customerName", ""),
        email=metadata["customerEmail"],
        phone=metadata.get("customerPhone", ""),
    )
    shipping_info = ShippingInfo(
        emirate=metadata.get("shippingEmirate", ""),
        city=metadata.get("shippingCity", ""),
        address=metadata.get("shippingAddress", ""),
    )
    items = []
    for line in lines:
        price = round_money(float(line.get("price") or 0))
        quantity = int(line.get("quantity") or 1)
        items.append(OrderItem(
            product_id=line["id"],
            variation_id=line.get("variationId"),
            name=line.get("name") or line["id"],
            unit_price=price,
            quantity=quantity,
            subtotal=line_total(price, quantity),
        ))
    totals = OrderTotals(
        subtotal=_metadata_amount(metadata, "subtotal"),
        shipping_cost=_metadata_amount(metadata, "shippingCost"),
        discount=_metadata_amount(metadata, "discount"),
        total=_metadata_amount(metadata, "total"),
    )
    if totals.total != intent.amount:
        logger.warning(f"Metadata total {totals.total} differs from charged amount {intent.amount} for {intent.id}")
        totals.total = intent.amount
    logger.info(f"Recovering order for payment {intent.id}")
    return create_order(db, customer_info, shipping_info, items, totals, intent.id, notifier)


PAYMENT_EVENT_STATUS = {
    "payment_intent.succeeded": "SUCCEEDED",
    "payment_intent.payment_failed": "FAILED",
    "payment_intent.canceled": "CANCELLED",
}


def apply_payment_event(db: Database, event_type: str, intent: Optional[PaymentIntent],
                        notifier: Optional[EmailNotifier] = None) -> Optional[str]:
    """Bring payment and order records in line with a gateway event. Returns the order id, if any."""
    status = PAYMENT_EVENT_STATUS.get(event_type)
    if status is None or intent is None:
        logger.info(f"Unhandled payment event type: {event_type}")
        return None
    now = datetime.now(timezone.utc)
    update = {"status": status, "updated_at": now}
    if status == "FAILED":
        update["failure_reason"] = "Payment failed"
    db["payment"].update_many({"payment_ref": intent.id}, {"$set": update})
    order = db["order"].find_one({"payment_ref": intent.id})

    if status != "SUCCEEDED":
        if order:
            db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": "CANCELLED", "updated_at": now}})
        logger.info(f"Payment intent {intent.id} {status.lower()}")
        return str(order["_id"]) if order else None

    if order:
        return str(order["_id"])
    try:
        return order_from_intent(db, intent, notifier).order_id
    except DuplicateOrder as e:
        return e.order_id
