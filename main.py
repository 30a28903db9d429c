import os
import logging
import re
from datetime import datetime, timedelta, timezone
import secrets
from typing import List, Literal, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr
from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from catalog import (
    AmbiguousVariation, CategoryCycleError, VARIATION_COLLECTIONS,
    ensure_not_own_ancestor, find_product, generate_sku, product_variations,
    resolve_variation, search_variation_options, unit_price,
)
from checkout import (
    CONFIRMATION_ROUTE, EMIRATE_CITIES, CartEmpty, CheckoutSession, ItemUnavailable, StepOrderError,
    add_to_cart, entry_redirect, get_cart, load_session, pay, prepare_payment, price_order_lines,
    compute_totals, recompute_cart, remove_cart_item, save_session, update_cart_item,
    validate_customer_info, validate_shipping_info,
)
from i18n import Translator, normalize_locale
from notifications import EmailNotifier
from orders import (
    DuplicateOrder, OrderCreationError, apply_payment_event, create_order, order_from_intent, verify_password,
)
from payments import PaymentError, StripeGateway
from pricing import round_money
from schemas import (
    UserLogin, TokenResponse, AdminLogin, AdminLoginResponse,
    CategoryCreate, CategoryUpdate, ProductCreate, ProductUpdate,
    VariationSizeCreate, VariationOptionCreate, VariationCreate, VariationUpdate,
    ShippingRuleCreate, ShippingRuleUpdate, ShippingCalculationRequest,
    CartItemAdd, CartItemUpdate, CustomerInfo, ShippingInfo, PaymentRequest,
    OrderCreate, OrderStatusUpdate, NewsletterSubscribe,
    PromotionCreate, PromotionUpdate, RecoverPaymentRequest,
)
from shipping import calculate_shipping, default_lookup

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Roastery Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "password123")
SESSION_TTL_HOURS = int(os.getenv("ADMIN_SESSION_TTL_HOURS", "24"))

# -------------------- Helpers --------------------

def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id format")


def doc_to_json(doc: dict) -> dict:
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = v.isoformat()
        elif isinstance(v, dict):
            out[k] = doc_to_json(v)
        elif isinstance(v, list):
            out[k] = [doc_to_json(x) if isinstance(x, dict) else (str(x) if isinstance(x, ObjectId) else x) for x in v]
        else:
            out[k] = v
    return out


def get_db() -> Database:
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return database.db


def get_gateway() -> StripeGateway:
    return StripeGateway()


def get_shipping_lookup(db: Database = Depends(get_db)):
    return default_lookup(db)


def get_notifier() -> EmailNotifier:
    return EmailNotifier()


def get_translator(lang: Optional[str] = Query(None), accept_language: Optional[str] = Header(None)) -> Translator:
    return Translator(normalize_locale(lang or accept_language))


def unavailable(e: ItemUnavailable, tr: Translator) -> HTTPException:
    status = 409 if e.code == "out_of_stock" else 404
    return HTTPException(status_code=status, detail={"code": e.code, "message": tr.t(e.code), "product_id": e.product_id})


def ambiguous(e: AmbiguousVariation, tr: Translator) -> HTTPException:
    logger.error(str(e))
    return HTTPException(status_code=409, detail={"code": "variation_ambiguous", "message": tr.t("variation_ambiguous")})


def step_conflict(e: StepOrderError, tr: Translator) -> HTTPException:
    return HTTPException(status_code=409, detail={
        "code": "step_order", "message": tr.t("step_order"), "step": e.actual.value,
    })


def localized(doc: dict, tr: Translator) -> dict:
    out = doc_to_json(doc)
    if "name" in doc:
        out["display_name"] = tr.content_by_lang(doc.get("name"), doc.get("name_ar"))
    return out


class AuthUser(BaseModel):
    id: str
    email: EmailStr
    name: str


async def auth_dependency(authorization: Optional[str] = Header(None), db: Database = Depends(get_db)) -> AuthUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")
    token = authorization.split(" ", 1)[1]
    user = db["user"].find_one({"token": token})
    if not user or _as_utc(user.get("token_expires")) <= datetime.now(timezone.utc):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return AuthUser(id=str(user["_id"]), email=user["email"], name=user.get("name", ""))


def require_admin(x_admin_token: Optional[str] = Header(None), db: Database = Depends(get_db)) -> bool:
    if not x_admin_token:
        raise HTTPException(status_code=401, detail="Missing admin token")
    session = db["adminsession"].find_one({"token": x_admin_token})
    if not session:
        raise HTTPException(status_code=401, detail="Invalid token")
    if session.get("expires_at") and _as_utc(session["expires_at"]) < datetime.now(timezone.utc):
        raise HTTPException(status_code=401, detail="Session expired")
    return True


def _as_utc(value: Optional[datetime]) -> datetime:
    # Mongo hands datetimes back naive unless the client is tz_aware
    if value is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# -------------------- Health & Test --------------------

@app.get("/")
def read_root():
    return {"message": "Roastery Storefront API is running"}


@app.get("/test")
def test_database():
    db = database.db
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name if hasattr(db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# -------------------- Auth --------------------

@app.post("/auth/login", response_model=TokenResponse)
def login(payload: UserLogin, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not verify_password(payload.password, user.get("salt", ""), user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = secrets.token_urlsafe(32)
    expires = datetime.now(timezone.utc) + timedelta(days=7)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "token": token, "token_expires": expires, "last_login_at": datetime.now(timezone.utc),
    }})
    return TokenResponse(access_token=token)


@app.get("/me", response_model=AuthUser)
def me(user: AuthUser = Depends(auth_dependency)):
    return user


@app.get("/api/customer/orders", response_model=List[dict])
def my_orders(user: AuthUser = Depends(auth_dependency), db: Database = Depends(get_db)):
    orders = db["order"].find({"user_id": user.id}).sort("created_at", -1)
    return [doc_to_json(o) for o in orders]


@app.post("/api/admin/login", response_model=AdminLoginResponse)
def admin_login(payload: AdminLogin, db: Database = Depends(get_db)):
    if payload.username != ADMIN_USERNAME or payload.password != ADMIN_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = uuid4().hex
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=SESSION_TTL_HOURS)
    db["adminsession"].insert_one({"token": token, "created_at": now, "expires_at": expires_at})
    return AdminLoginResponse(token=token, expires_at=expires_at)


# -------------------- Categories --------------------

@app.get("/api/categories", response_model=List[dict])
def list_categories(db: Database = Depends(get_db), tr: Translator = Depends(get_translator)):
    cats = db["category"].find({"is_active": {"$ne": False}}).sort("name", 1)
    return [localized(c, tr) for c in cats]


@app.post("/api/categories", response_model=dict)
def create_category(payload: CategoryCreate, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    if db["category"].find_one({"slug": payload.slug}):
        raise HTTPException(status_code=400, detail="Slug already exists")
    if payload.parent_id and not db["category"].find_one({"_id": to_object_id(payload.parent_id)}):
        raise HTTPException(status_code=400, detail="Parent category does not exist")
    new_id = database.create_document("category", payload, database=db)
    return doc_to_json(db["category"].find_one({"_id": ObjectId(new_id)}))


@app.put("/api/categories/{category_id}", response_model=dict)
def update_category(category_id: str, payload: CategoryUpdate, authorized: bool = Depends(require_admin),
                    db: Database = Depends(get_db)):
    data = payload.model_dump(exclude_none=True)
    if not data:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "slug" in data and db["category"].find_one({"slug": data["slug"], "_id": {"$ne": to_object_id(category_id)}}):
        raise HTTPException(status_code=400, detail="Slug already exists")
    if "parent_id" in data:
        try:
            ensure_not_own_ancestor(db, category_id, data["parent_id"])
        except CategoryCycleError as e:
            raise HTTPException(status_code=400, detail=str(e))
    data["updated_at"] = datetime.now(timezone.utc)
    res = db["category"].update_one({"_id": to_object_id(category_id)}, {"$set": data})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Category not found")
    return doc_to_json(db["category"].find_one({"_id": to_object_id(category_id)}))


@app.delete("/api/categories/{category_id}", response_model=dict)
def delete_category(category_id: str, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    if db["product"].count_documents({"category_id": category_id}) > 0:
        raise HTTPException(status_code=400, detail="Category still has products")
    if db["category"].count_documents({"parent_id": category_id}) > 0:
        raise HTTPException(status_code=400, detail="Category still has subcategories")
    res = db["category"].delete_one({"_id": to_object_id(category_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"ok": True}


# -------------------- Products --------------------

@app.get("/api/products", response_model=List[dict])
def list_products(q: Optional[str] = Query(None), category: Optional[str] = Query(None),
                  db: Database = Depends(get_db), tr: Translator = Depends(get_translator)):
    filter_query = {}
    if category:
        cat = db["category"].find_one({"slug": category})
        filter_query["category_id"] = str(cat["_id"]) if cat else category
    if q:
        pattern = re.escape(q.strip())
        filter_query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"name_ar": {"$regex": pattern, "$options": "i"}},
            {"sku": q},
        ]
    products = db["product"].find(filter_query).sort("created_at", -1)
    out = []
    for p in products:
        item = localized(p, tr)
        item["final_price"] = round_money(unit_price(p))
        out.append(item)
    return out


@app.get("/api/products/{slug}", response_model=dict)
def get_product(slug: str, db: Database = Depends(get_db), tr: Translator = Depends(get_translator)):
    product = find_product(db, slug)
    if not product:
        raise HTTPException(status_code=404, detail=tr.t("product_not_found"))
    out = localized(product, tr)
    out["final_price"] = round_money(unit_price(product))
    variations = []
    for v in product_variations(db, str(product["_id"]), active_only=True):
        item = doc_to_json(v)
        item["final_price"] = round_money(unit_price(product, v))
        variations.append(item)
    out["variations"] = variations
    return out


@app.get("/api/products/{slug}/variation", response_model=dict)
def get_product_variation(slug: str, size_id: str = Query(...), type_id: Optional[str] = Query(None),
                          beans_id: Optional[str] = Query(None),
                          db: Database = Depends(get_db), tr: Translator = Depends(get_translator)):
    product = find_product(db, slug)
    if not product:
        raise HTTPException(status_code=404, detail=tr.t("product_not_found"))
    try:
        variation = resolve_variation(db, str(product["_id"]), size_id, type_id, beans_id)
    except AmbiguousVariation as e:
        raise ambiguous(e, tr)
    if variation is None:
        raise HTTPException(status_code=404, detail=tr.t("variation_not_found"))
    out = doc_to_json(variation)
    out["final_price"] = round_money(unit_price(product, variation))
    out["available"] = int(variation.get("stock_quantity", 0)) > 0
    return out


@app.post("/api/products", response_model=dict)
def create_product(payload: ProductCreate, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    if db["product"].find_one({"slug": payload.slug}):
        raise HTTPException(status_code=400, detail="Slug already in use")
    if payload.sku and db["product"].find_one({"sku": payload.sku}):
        raise HTTPException(status_code=400, detail="SKU already in use")
    if payload.category_id and not db["category"].find_one({"_id": to_object_id(payload.category_id)}):
        raise HTTPException(status_code=400, detail="Category does not exist")
    pid = database.create_document("product", payload, database=db)
    return {"id": pid, **payload.model_dump()}


@app.patch("/api/products/{product_id}", response_model=dict)
def update_product(product_id: str, payload: ProductUpdate, authorized: bool = Depends(require_admin),
                   db: Database = Depends(get_db)):
    prod = find_product(db, product_id)
    if not prod:
        raise HTTPException(status_code=404, detail="Product not found")
    update = payload.model_dump(exclude_none=True)
    if "slug" in update and db["product"].find_one({"slug": update["slug"], "_id": {"$ne": prod["_id"]}}):
        raise HTTPException(status_code=400, detail="Slug already in use")
    if "sku" in update and db["product"].find_one({"sku": update["sku"], "_id": {"$ne": prod["_id"]}}):
        raise HTTPException(status_code=400, detail="SKU already in use")
    update["updated_at"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": prod["_id"]}, {"$set": update})
    return doc_to_json(db["product"].find_one({"_id": prod["_id"]}))


@app.delete("/api/products/{product_id}", response_model=dict)
def delete_product(product_id: str, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    prod = db["product"].find_one({"_id": to_object_id(product_id)})
    if not prod:
        raise HTTPException(status_code=404, detail="Product not found")
    # Product first: leftover variations of a missing product can never be resolved or sold
    db["product"].delete_one({"_id": prod["_id"]})
    try:
        removed = db["productvariation"].delete_many({"product_id": product_id}).deleted_count
    except PyMongoError as e:
        logger.error(f"Deleted product {product_id} but its variations remain: {e}")
        raise HTTPException(status_code=500, detail="Product deleted, variation cleanup failed")
    logger.info(f"Deleted product {product_id} and {removed} variations")
    return {"ok": True, "variations_deleted": removed}


# -------------------- Variation options --------------------

VariationKind = Literal["sizes", "types", "beans"]


@app.get("/api/variations/search", response_model=dict)
def search_variations(query: Optional[str] = Query(None), db: Database = Depends(get_db)):
    results = search_variation_options(db, query)
    return {k: [doc_to_json(d) for d in v] for k, v in results.items()}


@app.get("/api/variations/products", response_model=List[dict])
def list_product_variations(product_id: str = Query(...), db: Database = Depends(get_db)):
    return [doc_to_json(v) for v in product_variations(db, product_id)]


@app.post("/api/variations/products", response_model=dict)
def create_variation(payload: VariationCreate, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    product = db["product"].find_one({"_id": to_object_id(payload.product_id)})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    size = db["variationsize"].find_one({"_id": to_object_id(payload.size_id)})
    if not size:
        raise HTTPException(status_code=400, detail="Size does not exist")
    type_ = db["variationtype"].find_one({"_id": to_object_id(payload.type_id)}) if payload.type_id else None
    beans = db["variationbeans"].find_one({"_id": to_object_id(payload.beans_id)}) if payload.beans_id else None
    if payload.type_id and not type_:
        raise HTTPException(status_code=400, detail="Type does not exist")
    if payload.beans_id and not beans:
        raise HTTPException(status_code=400, detail="Beans do not exist")
    if payload.is_active:
        try:
            taken = resolve_variation(db, payload.product_id, payload.size_id, payload.type_id, payload.beans_id)
        except AmbiguousVariation as e:
            logger.error(str(e))
            taken = True
        if taken:
            raise HTTPException(status_code=400, detail="An active variation with this combination already exists")
    data = payload.model_dump()
    if data["sku"]:
        if db["productvariation"].find_one({"sku": data["sku"]}):
            raise HTTPException(status_code=400, detail="SKU already in use")
    else:
        category = db["category"].find_one({"_id": to_object_id(product["category_id"])}) if product.get("category_id") else None
        data["sku"] = generate_sku(product, category, size, type_, beans)
    vid = database.create_document("productvariation", data, database=db)
    return doc_to_json(db["productvariation"].find_one({"_id": ObjectId(vid)}))


@app.patch("/api/variations/products/{variation_id}", response_model=dict)
def update_variation(variation_id: str, payload: VariationUpdate, authorized: bool = Depends(require_admin),
                     db: Database = Depends(get_db)):
    variation = db["productvariation"].find_one({"_id": to_object_id(variation_id)})
    if not variation:
        raise HTTPException(status_code=404, detail="Variation not found")
    update = payload.model_dump(exclude_none=True)
    if "sku" in update and db["productvariation"].find_one({"sku": update["sku"], "_id": {"$ne": variation["_id"]}}):
        raise HTTPException(status_code=400, detail="SKU already in use")
    if update.get("is_active") and not variation.get("is_active"):
        clash = db["productvariation"].find_one({
            "product_id": variation["product_id"], "size_id": variation["size_id"],
            "type_id": variation.get("type_id"), "beans_id": variation.get("beans_id"),
            "is_active": True, "_id": {"$ne": variation["_id"]},
        })
        if clash:
            raise HTTPException(status_code=400, detail="An active variation with this combination already exists")
    update["updated_at"] = datetime.now(timezone.utc)
    db["productvariation"].update_one({"_id": variation["_id"]}, {"$set": update})
    return doc_to_json(db["productvariation"].find_one({"_id": variation["_id"]}))


@app.delete("/api/variations/products/{variation_id}", response_model=dict)
def delete_variation(variation_id: str, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    res = db["productvariation"].delete_one({"_id": to_object_id(variation_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Variation not found")
    return {"ok": True}


@app.get("/api/variations/{kind}", response_model=List[dict])
def list_variation_options(kind: VariationKind, db: Database = Depends(get_db), tr: Translator = Depends(get_translator)):
    sort_key = "value" if kind == "sizes" else "name"
    docs = db[VARIATION_COLLECTIONS[kind]].find({"is_active": {"$ne": False}}).sort(sort_key, 1)
    return [localized(d, tr) for d in docs]


@app.post("/api/variations/sizes", response_model=dict)
def create_size(payload: VariationSizeCreate, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    new_id = database.create_document("variationsize", payload, database=db)
    return {"id": new_id, **payload.model_dump()}


@app.post("/api/variations/{kind}", response_model=dict)
def create_variation_option(kind: Literal["types", "beans"], payload: VariationOptionCreate,
                            authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    new_id = database.create_document(VARIATION_COLLECTIONS[kind], payload, database=db)
    return {"id": new_id, **payload.model_dump()}


@app.delete("/api/variations/{kind}/{option_id}", response_model=dict)
def delete_variation_option(kind: VariationKind, option_id: str, authorized: bool = Depends(require_admin),
                            db: Database = Depends(get_db)):
    field = {"sizes": "size_id", "types": "type_id", "beans": "beans_id"}[kind]
    if db["productvariation"].count_documents({field: option_id}) > 0:
        raise HTTPException(status_code=400, detail="Option is used by product variations")
    res = db[VARIATION_COLLECTIONS[kind]].delete_one({"_id": to_object_id(option_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Variation option not found")
    return {"ok": True}


# -------------------- Shipping --------------------

@app.get("/api/shipping", response_model=List[dict])
def list_shipping_rules(db: Database = Depends(get_db), tr: Translator = Depends(get_translator)):
    return [localized(r, tr) for r in db["shippingrule"].find({}).sort("cost", 1)]


@app.post("/api/shipping", response_model=dict)
def create_shipping_rule(payload: ShippingRuleCreate, authorized: bool = Depends(require_admin),
                         db: Database = Depends(get_db)):
    data = payload.model_dump()
    if data["type"] == "FREE":
        data["cost"] = 0
    rid = database.create_document("shippingrule", data, database=db)
    return doc_to_json(db["shippingrule"].find_one({"_id": ObjectId(rid)}))


@app.put("/api/shipping/{rule_id}", response_model=dict)
def update_shipping_rule(rule_id: str, payload: ShippingRuleUpdate, authorized: bool = Depends(require_admin),
                         db: Database = Depends(get_db)):
    data = payload.model_dump(exclude_none=True)
    if not data:
        raise HTTPException(status_code=400, detail="No fields to update")
    if data.get("type") == "FREE":
        data["cost"] = 0
    data["updated_at"] = datetime.now(timezone.utc)
    res = db["shippingrule"].update_one({"_id": to_object_id(rule_id)}, {"$set": data})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Shipping rule not found")
    return doc_to_json(db["shippingrule"].find_one({"_id": to_object_id(rule_id)}))


@app.delete("/api/shipping/{rule_id}", response_model=dict)
def delete_shipping_rule(rule_id: str, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    res = db["shippingrule"].delete_one({"_id": to_object_id(rule_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Shipping rule not found")
    return {"ok": True}


@app.post("/api/shipping/calculate", response_model=dict)
def shipping_calculate(payload: ShippingCalculationRequest, lookup=Depends(get_shipping_lookup)):
    quote = calculate_shipping(payload.order_total, [i.model_dump() for i in payload.items], lookup, city=payload.city)
    return quote.model_dump()


# -------------------- Cart --------------------

@app.get("/api/cart/{session_id}", response_model=dict)
def cart_detail(session_id: str, db: Database = Depends(get_db)):
    return get_cart(db, session_id).model_dump()


@app.post("/api/cart/{session_id}/items", response_model=dict)
def cart_add(session_id: str, payload: CartItemAdd, db: Database = Depends(get_db),
             tr: Translator = Depends(get_translator)):
    try:
        return add_to_cart(db, session_id, payload).model_dump()
    except ItemUnavailable as e:
        raise unavailable(e, tr)
    except AmbiguousVariation as e:
        raise ambiguous(e, tr)


@app.patch("/api/cart/{session_id}/items/{index}", response_model=dict)
def cart_update(session_id: str, index: int, payload: CartItemUpdate, db: Database = Depends(get_db),
                tr: Translator = Depends(get_translator)):
    try:
        return update_cart_item(db, session_id, index, payload.quantity).model_dump()
    except IndexError:
        raise HTTPException(status_code=404, detail="Cart item not found")
    except ItemUnavailable as e:
        raise unavailable(e, tr)


@app.delete("/api/cart/{session_id}/items/{index}", response_model=dict)
def cart_remove(session_id: str, index: int, db: Database = Depends(get_db)):
    try:
        return remove_cart_item(db, session_id, index).model_dump()
    except IndexError:
        raise HTTPException(status_code=404, detail="Cart item not found")


@app.post("/api/cart/{session_id}/recompute", response_model=dict)
def cart_recompute(session_id: str, db: Database = Depends(get_db)):
    return recompute_cart(db, session_id).model_dump()


# -------------------- Checkout --------------------

def _checkout_state(session: CheckoutSession, cart) -> dict:
    return {
        "session_id": session.session_id,
        "step": session.step.value,
        "customer_info": session.customer_info.model_dump(),
        "shipping_info": session.shipping_info.model_dump(),
        "cart": cart.model_dump(),
        "order_id": session.order_id,
    }


@app.get("/api/checkout/emirates", response_model=dict)
def list_emirates():
    return EMIRATE_CITIES


@app.get("/api/checkout/{session_id}", response_model=dict)
def checkout_enter(session_id: str, db: Database = Depends(get_db)):
    cart = get_cart(db, session_id)
    session = load_session(db, session_id)
    if session.order_id and cart.items:
        # Previous order is done; this is a new checkout
        session = CheckoutSession(session_id=session_id)
        save_session(db, session)
    redirect = entry_redirect(cart, session)
    if redirect:
        return {"redirect": redirect, "order_id": session.order_id}
    return _checkout_state(session, cart)


def _validation_failed(session: CheckoutSession, errors: dict, tr: Translator) -> HTTPException:
    return HTTPException(status_code=422, detail={"step": session.step.value, "errors": tr.field_errors(errors)})


@app.post("/api/checkout/{session_id}/customer-info", response_model=dict)
def checkout_customer_info(session_id: str, payload: CustomerInfo, db: Database = Depends(get_db),
                           tr: Translator = Depends(get_translator)):
    session = load_session(db, session_id)
    try:
        errors = session.submit_customer_info(payload)
    except StepOrderError as e:
        raise step_conflict(e, tr)
    save_session(db, session)
    if errors:
        raise _validation_failed(session, errors, tr)
    return _checkout_state(session, get_cart(db, session_id))


@app.post("/api/checkout/{session_id}/emirate", response_model=dict)
def checkout_select_emirate(session_id: str, emirate: str = Query(...), db: Database = Depends(get_db)):
    if emirate not in EMIRATE_CITIES:
        raise HTTPException(status_code=400, detail="Unknown emirate")
    session = load_session(db, session_id)
    session.select_emirate(emirate)
    save_session(db, session)
    return {"emirate": emirate, "cities": EMIRATE_CITIES[emirate], "shipping_info": session.shipping_info.model_dump()}


@app.post("/api/checkout/{session_id}/shipping-info", response_model=dict)
def checkout_shipping_info(session_id: str, payload: ShippingInfo, db: Database = Depends(get_db),
                           tr: Translator = Depends(get_translator)):
    session = load_session(db, session_id)
    try:
        errors = session.submit_shipping_info(payload)
    except StepOrderError as e:
        raise step_conflict(e, tr)
    save_session(db, session)
    if errors:
        raise _validation_failed(session, errors, tr)
    return _checkout_state(session, get_cart(db, session_id))


@app.post("/api/checkout/{session_id}/back", response_model=dict)
def checkout_back(session_id: str, db: Database = Depends(get_db), tr: Translator = Depends(get_translator)):
    session = load_session(db, session_id)
    try:
        session.go_back()
    except StepOrderError as e:
        raise step_conflict(e, tr)
    save_session(db, session)
    return _checkout_state(session, get_cart(db, session_id))


@app.post("/api/checkout/{session_id}/payment-intent", response_model=dict)
def checkout_payment_intent(session_id: str, coupon_code: Optional[str] = Query(None),
                            db: Database = Depends(get_db), gateway: StripeGateway = Depends(get_gateway),
                            lookup=Depends(get_shipping_lookup), tr: Translator = Depends(get_translator)):
    session = load_session(db, session_id)
    try:
        return prepare_payment(db, session, gateway, lookup, coupon_code=coupon_code)
    except StepOrderError as e:
        raise step_conflict(e, tr)
    except CartEmpty:
        raise HTTPException(status_code=400, detail={"code": "cart_empty", "message": tr.t("cart_empty")})
    except ItemUnavailable as e:
        raise unavailable(e, tr)
    except PaymentError as e:
        raise HTTPException(status_code=502, detail={"code": e.code, "message": e.message})


@app.post("/api/checkout/{session_id}/pay", response_model=dict)
def checkout_pay(session_id: str, payload: PaymentRequest, db: Database = Depends(get_db),
                 gateway: StripeGateway = Depends(get_gateway), lookup=Depends(get_shipping_lookup),
                 notifier: EmailNotifier = Depends(get_notifier), tr: Translator = Depends(get_translator)):
    session = load_session(db, session_id)
    try:
        result = pay(db, session, gateway, lookup, payload.payment_method, notifier, coupon_code=payload.coupon_code)
    except StepOrderError as e:
        raise step_conflict(e, tr)
    except CartEmpty:
        raise HTTPException(status_code=400, detail={"code": "cart_empty", "message": tr.t("cart_empty")})
    except ItemUnavailable as e:
        raise unavailable(e, tr)
    except PaymentError as e:
        raise HTTPException(status_code=402, detail={"code": e.code, "message": e.message, "step": "PAYMENT"})
    except OrderCreationError as e:
        raise HTTPException(status_code=500, detail={
            "code": "order_failed", "message": tr.t("order_failed"), "payment_ref": e.payment_ref,
        })
    except DuplicateOrder as e:
        raise HTTPException(status_code=409, detail={"code": "order_exists", "order_id": e.order_id})
    return {
        "success": True,
        "order_id": result.order_id,
        "is_new_customer": result.is_new_customer,
        "message": tr.t("order_created_new" if result.is_new_customer else "order_created"),
        "redirect": CONFIRMATION_ROUTE,
        "order": doc_to_json(result.order),
    }


# -------------------- Orders --------------------

@app.post("/api/orders", response_model=dict)
def orders_create(payload: OrderCreate, db: Database = Depends(get_db), gateway: StripeGateway = Depends(get_gateway),
                  lookup=Depends(get_shipping_lookup), notifier: EmailNotifier = Depends(get_notifier),
                  tr: Translator = Depends(get_translator)):
    errors = {**validate_customer_info(payload.customer_info), **validate_shipping_info(payload.shipping_info)}
    if errors:
        raise HTTPException(status_code=422, detail={"errors": tr.field_errors(errors)})
    if db["order"].find_one({"payment_ref": payload.payment_ref}):
        raise HTTPException(status_code=400, detail="Duplicate order detected")
    try:
        intent = gateway.retrieve(payload.payment_ref)
    except PaymentError as e:
        raise HTTPException(status_code=400, detail=e.message)
    if not intent.succeeded:
        raise HTTPException(status_code=400, detail="Payment not completed")
    try:
        # Stock was already taken by the payment; the writer flags shortfalls
        items = price_order_lines(db, payload.items, check_stock=False)
    except ItemUnavailable as e:
        logger.error(f"Paid order {payload.payment_ref} references unavailable item {e.product_id}")
        raise unavailable(e, tr)
    totals, _ = compute_totals(items, lookup, city=payload.shipping_info.city)
    if payload.totals and round_money(payload.totals.total) != totals.total:
        raise HTTPException(status_code=400, detail="Order total does not match current prices")
    if round_money(intent.amount) != totals.total:
        logger.error(f"Payment {payload.payment_ref} amount {intent.amount} does not match order total {totals.total}")
        raise HTTPException(status_code=400, detail="Payment amount does not match order total")
    try:
        result = create_order(db, payload.customer_info, payload.shipping_info, items, totals, payload.payment_ref, notifier)
    except OrderCreationError:
        return {"success": False, "error": tr.t("order_failed")}
    except DuplicateOrder:
        raise HTTPException(status_code=400, detail="Duplicate order detected")
    return {
        "success": True,
        "order_id": result.order_id,
        "is_new_customer": result.is_new_customer,
        "message": tr.t("order_created_new" if result.is_new_customer else "order_created"),
    }


@app.get("/api/orders", response_model=dict)
def orders_list(status: Optional[str] = Query(None), user_id: Optional[str] = Query(None),
                page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    query = {}
    if status and status != "ALL":
        query["status"] = status
    if user_id:
        query["user_id"] = user_id
    total = db["order"].count_documents(query)
    orders = db["order"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "orders": [doc_to_json(o) for o in orders],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


@app.get("/api/orders/{order_id}", response_model=dict)
def orders_detail(order_id: str, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    out = doc_to_json(order)
    payment = db["payment"].find_one({"order_id": order_id})
    out["payment"] = doc_to_json(payment) if payment else None
    return out


@app.patch("/api/orders/{order_id}/status", response_model=dict)
def orders_update_status(order_id: str, payload: OrderStatusUpdate, authorized: bool = Depends(require_admin),
                         db: Database = Depends(get_db)):
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": payload.status, "updated_at": datetime.now(timezone.utc)}})
    return doc_to_json(db["order"].find_one({"_id": order["_id"]}))


# -------------------- Metrics --------------------

@app.get("/api/admin/metrics", response_model=dict)
def store_metrics(authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    total_customers = db["user"].count_documents({"role": "CUSTOMER"})
    total_orders = db["order"].count_documents({})
    total_sales = 0.0
    for o in db["order"].find({"status": {"$ne": "CANCELLED"}}):
        total_sales += float(o.get("total", 0))
    return {
        "total_customers": total_customers,
        "total_orders": total_orders,
        "total_sales": round(total_sales, 2),
        "total_products": db["product"].count_documents({}),
    }


# -------------------- Promotions --------------------

def _utc_naive(value: datetime) -> datetime:
    # Stored naive, which is how pymongo hands them back
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@app.get("/api/promotions", response_model=List[dict])
def list_promotions(active: bool = Query(False), db: Database = Depends(get_db)):
    query = {}
    if active:
        now = _utc_naive(datetime.now(timezone.utc))
        query = {"is_active": True, "start_date": {"$lte": now}, "end_date": {"$gte": now}}
    return [doc_to_json(p) for p in db["promotion"].find(query).sort("end_date", -1)]


@app.post("/api/promotions", response_model=dict)
def create_promotion(payload: PromotionCreate, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    data = payload.model_dump()
    data["start_date"] = _utc_naive(payload.start_date)
    data["end_date"] = _utc_naive(payload.end_date)
    if data["end_date"] < data["start_date"]:
        raise HTTPException(status_code=400, detail="End date must be after start date")
    if payload.code:
        data["code"] = payload.code.strip().upper()
        if db["promotion"].find_one({"code": data["code"]}):
            raise HTTPException(status_code=400, detail="Promotion code already exists")
    data["current_uses"] = 0
    new_id = database.create_document("promotion", data, database=db)
    return doc_to_json(db["promotion"].find_one({"_id": ObjectId(new_id)}))


@app.put("/api/promotions/{promotion_id}", response_model=dict)
def update_promotion(promotion_id: str, payload: PromotionUpdate, authorized: bool = Depends(require_admin),
                     db: Database = Depends(get_db)):
    oid = to_object_id(promotion_id)
    promotion = db["promotion"].find_one({"_id": oid})
    if not promotion:
        raise HTTPException(status_code=404, detail="Promotion not found")
    data = payload.model_dump(exclude_none=True)
    if not data:
        raise HTTPException(status_code=400, detail="No fields to update")
    for key in ("start_date", "end_date"):
        if key in data:
            data[key] = _utc_naive(data[key])
    start = data.get("start_date", promotion.get("start_date"))
    end = data.get("end_date", promotion.get("end_date"))
    if start and end and _utc_naive(end) < _utc_naive(start):
        raise HTTPException(status_code=400, detail="End date must be after start date")
    if "code" in data:
        data["code"] = data["code"].strip().upper()
        if db["promotion"].find_one({"code": data["code"], "_id": {"$ne": oid}}):
            raise HTTPException(status_code=400, detail="Promotion code already exists")
    data["updated_at"] = datetime.now(timezone.utc)
    db["promotion"].update_one({"_id": oid}, {"$set": data})
    return doc_to_json(db["promotion"].find_one({"_id": oid}))


# -------------------- Payments --------------------

@app.post("/api/webhooks/stripe", response_model=dict)
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                         db: Database = Depends(get_db), gateway: StripeGateway = Depends(get_gateway),
                         notifier: EmailNotifier = Depends(get_notifier)):
    payload = await request.body()
    try:
        event_type, intent = gateway.construct_event(payload, stripe_signature)
    except PaymentError as e:
        raise HTTPException(status_code=400, detail={"code": e.code, "message": e.message})
    logger.info(f"Stripe webhook received: {event_type}")
    try:
        apply_payment_event(db, event_type, intent, notifier)
    except OrderCreationError as e:
        # A non-2xx answer makes Stripe deliver the event again
        logger.error(f"Could not write order for {e.payment_ref}: {e}")
        raise HTTPException(status_code=500, detail="Webhook handler failed")
    return {"received": True}


def _intent_summary(intent) -> dict:
    return {"id": intent.id, "status": intent.status, "amount": intent.amount, "metadata": intent.metadata}


@app.post("/api/payments/recover-missing", response_model=dict)
def recover_missing_payment(payload: RecoverPaymentRequest, authorized: bool = Depends(require_admin),
                            db: Database = Depends(get_db), gateway: StripeGateway = Depends(get_gateway),
                            notifier: EmailNotifier = Depends(get_notifier)):
    existing = db["order"].find_one({"payment_ref": payload.payment_intent_id})
    if existing:
        return {"success": False, "message": "Order already exists for this payment", "order_id": str(existing["_id"])}
    try:
        intent = gateway.retrieve(payload.payment_intent_id)
    except PaymentError as e:
        raise HTTPException(status_code=404, detail={"code": e.code, "message": e.message})
    if not intent.succeeded:
        return {
            "success": False,
            "message": f"Payment status is {intent.status}, not succeeded",
            "payment_intent": _intent_summary(intent),
        }
    try:
        result = order_from_intent(db, intent, notifier)
    except DuplicateOrder as e:
        return {"success": False, "message": "Order already exists for this payment", "order_id": e.order_id}
    except OrderCreationError as e:
        raise HTTPException(status_code=500, detail=f"Failed to recover payment: {e}")
    order = result.order
    return {
        "success": True,
        "message": "Order successfully recovered",
        "order": {
            "id": result.order_id,
            "customer_email": order["customer_email"],
            "total": order["total"],
            "status": order["status"],
            "created_at": order["created_at"].isoformat(),
        },
    }


@app.get("/api/payments/recover-missing", response_model=dict)
def payment_record_status(payment_intent_id: str = Query(...), authorized: bool = Depends(require_admin),
                          db: Database = Depends(get_db), gateway: StripeGateway = Depends(get_gateway)):
    try:
        intent = gateway.retrieve(payment_intent_id)
    except PaymentError as e:
        raise HTTPException(status_code=404, detail={"code": e.code, "message": e.message})
    order = db["order"].find_one({"payment_ref": payment_intent_id})
    payment = db["payment"].find_one({"payment_ref": payment_intent_id})
    return {
        "stripe": _intent_summary(intent),
        "database": {
            "order_exists": order is not None,
            "payment_exists": payment is not None,
            "order": doc_to_json(order) if order else None,
            "payment": doc_to_json(payment) if payment else None,
        },
    }


# -------------------- Newsletter --------------------

@app.post("/api/newsletter", response_model=dict)
def newsletter_subscribe(payload: NewsletterSubscribe, db: Database = Depends(get_db),
                         tr: Translator = Depends(get_translator)):
    email = payload.email.lower()
    now = datetime.now(timezone.utc)
    existing = db["newsletter"].find_one({"email": email})
    if existing:
        db["newsletter"].update_one({"_id": existing["_id"]}, {"$set": {"is_active": True, "updated_at": now}})
        return {"id": str(existing["_id"]), "email": email, "message": tr.t("newsletter_subscribed")}
    data = payload.model_dump()
    data["email"] = email
    data["is_active"] = True
    nid = database.create_document("newsletter", data, database=db)
    return {"id": nid, "email": email, "message": tr.t("newsletter_subscribed")}


@app.get("/api/newsletter", response_model=List[dict])
def newsletter_list(authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    return [doc_to_json(s) for s in db["newsletter"].find({}).sort("created_at", -1)]


@app.delete("/api/newsletter/{subscriber_id}", response_model=dict)
def newsletter_delete(subscriber_id: str, authorized: bool = Depends(require_admin), db: Database = Depends(get_db)):
    res = db["newsletter"].delete_one({"_id": to_object_id(subscriber_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Subscriber not found")
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
