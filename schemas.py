"""
Database Schemas for the Roastery Storefront

Each Pydantic model typically maps to a MongoDB collection named after the
lowercased class name (e.g., ProductVariation -> "productvariation"). Some
embedded models are used for nested fields (e.g., cart and order items), and
the *Create / *Update models are request bodies.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

DiscountType = Literal["PERCENTAGE", "FIXED_AMOUNT"]
ShippingRuleType = Literal["STANDARD", "EXPRESS", "FREE", "PICKUP"]
OrderStatus = Literal["NEW", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED"]
CheckoutStepName = Literal["CUSTOMER_INFO", "SHIPPING_INFO", "PAYMENT"]

# ------------ Auth & User ------------
class UserLogin(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"

class AdminLogin(BaseModel):
    username: str
    password: str

class AdminLoginResponse(BaseModel):
    token: str
    expires_at: datetime

class User(BaseModel):
    """Customer account, created on first purchase."""
    name: str
    email: str
    phone: Optional[str] = None
    city: Optional[str] = None
    address: Optional[str] = None
    password_hash: str
    salt: str
    role: Literal["CUSTOMER", "ADMIN", "MANAGER"] = "CUSTOMER"
    is_new_customer: bool = True
    email_verified: bool = False

# ------------ Catalog ------------
class CategoryCreate(BaseModel):
    name: str
    name_ar: Optional[str] = None
    slug: str = Field(..., description="URL-safe unique identifier for the category")
    description: Optional[str] = None
    parent_id: Optional[str] = Field(None, description="Optional parent category id")
    is_active: bool = True

class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    name_ar: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: Optional[bool] = None

class ProductCreate(BaseModel):
    name: str
    name_ar: Optional[str] = None
    slug: str
    description: Optional[str] = None
    description_ar: Optional[str] = None
    price: float = Field(..., ge=0, description="Base price in AED")
    discount: Optional[float] = Field(None, ge=0)
    discount_type: DiscountType = "PERCENTAGE"
    category_id: Optional[str] = None
    sku: Optional[str] = None
    image_url: Optional[str] = None
    in_stock: bool = True

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    name_ar: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    description_ar: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0)
    discount_type: Optional[DiscountType] = None
    category_id: Optional[str] = None
    sku: Optional[str] = None
    image_url: Optional[str] = None
    in_stock: Optional[bool] = None

class VariationSizeCreate(BaseModel):
    name: str
    display_name: str
    value: int = Field(..., gt=0, description="Weight in grams")
    is_active: bool = True

class VariationOptionCreate(BaseModel):
    """Body for variation types (additions) and beans."""
    name: str
    name_ar: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True

class VariationCreate(BaseModel):
    product_id: str
    size_id: str
    type_id: Optional[str] = None
    beans_id: Optional[str] = None
    price: Optional[float] = Field(None, ge=0, description="Overrides the product base price")
    discount: Optional[float] = Field(None, ge=0)
    discount_type: DiscountType = "PERCENTAGE"
    stock_quantity: int = Field(0, ge=0)
    sku: Optional[str] = None
    is_active: bool = True

class VariationUpdate(BaseModel):
    price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0)
    discount_type: Optional[DiscountType] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    is_active: Optional[bool] = None

# ------------ Shipping ------------
class ShippingRuleCreate(BaseModel):
    name: str
    name_ar: Optional[str] = None
    type: ShippingRuleType = "STANDARD"
    cost: float = Field(0, ge=0)
    free_shipping_threshold: Optional[float] = Field(None, ge=0)
    cities: List[str] = []
    is_active: bool = True
    estimated_days: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    description_ar: Optional[str] = None

class ShippingRuleUpdate(BaseModel):
    name: Optional[str] = None
    name_ar: Optional[str] = None
    type: Optional[ShippingRuleType] = None
    cost: Optional[float] = Field(None, ge=0)
    free_shipping_threshold: Optional[float] = Field(None, ge=0)
    cities: Optional[List[str]] = None
    is_active: Optional[bool] = None
    estimated_days: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    description_ar: Optional[str] = None

class ShippingItem(BaseModel):
    product_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: Optional[float] = None

class ShippingCalculationRequest(BaseModel):
    order_total: float = Field(..., ge=0)
    items: List[ShippingItem] = []
    city: Optional[str] = None

# ------------ Cart & Checkout ------------
class CartItemAdd(BaseModel):
    product_id: str
    size_id: Optional[str] = None
    type_id: Optional[str] = None
    beans_id: Optional[str] = None
    quantity: int = Field(1, ge=1)

class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=1)

class CartItem(BaseModel):
    """Client-owned snapshot of one cart line."""
    product_id: str
    variation_id: Optional[str] = None
    name: str
    name_ar: Optional[str] = None
    image: Optional[str] = None
    unit_price: float
    quantity: int = Field(1, ge=1)

class Cart(BaseModel):
    session_id: str
    items: List[CartItem] = []
    subtotal: float = 0.0

class CustomerInfo(BaseModel):
    full_name: str = ""
    email: str = ""
    phone: str = ""

class ShippingInfo(BaseModel):
    emirate: str = ""
    city: str = ""
    address: str = ""

class PaymentRequest(BaseModel):
    payment_method: str = Field(..., description="Gateway payment method id, e.g. pm_card_visa")
    coupon_code: Optional[str] = None

class OrderTotals(BaseModel):
    subtotal: float
    shipping_cost: float
    discount: float = 0.0
    total: float

# ------------ Orders ------------
class OrderLineInput(BaseModel):
    product_id: str
    variation_id: Optional[str] = None
    quantity: int = Field(..., ge=1)

class OrderItem(BaseModel):
    product_id: str
    variation_id: Optional[str] = None
    name: str
    name_ar: Optional[str] = None
    image: Optional[str] = None
    unit_price: float
    quantity: int = Field(..., ge=1)
    subtotal: float

class OrderCreate(BaseModel):
    customer_info: CustomerInfo
    shipping_info: ShippingInfo
    items: List[OrderLineInput]
    totals: Optional[OrderTotals] = None
    payment_ref: str = Field(..., description="Gateway payment intent id")

class OrderStatusUpdate(BaseModel):
    status: OrderStatus

class Order(BaseModel):
    user_id: Optional[str] = None
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    emirate: Optional[str] = None
    city: Optional[str] = None
    shipping_address: str
    items: List[OrderItem]
    subtotal: float
    shipping_cost: float
    discount: float = 0.0
    total: float
    currency: Literal["aed"] = "aed"
    status: OrderStatus = "NEW"
    payment_method: str = "stripe"
    payment_ref: Optional[str] = None
    email_sent: bool = False
    stock_conflict: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

# ------------ Newsletter ------------
class NewsletterSubscribe(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    language: Literal["en", "ar"] = "en"

# ------------ Promotions ------------
class PromotionCreate(BaseModel):
    name: str
    description: Optional[str] = None
    code: Optional[str] = Field(None, description="Unique coupon code, if the promotion has one")
    type: DiscountType = "PERCENTAGE"
    value: float = Field(0, ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=1)
    is_active: bool = True
    start_date: datetime
    end_date: datetime
    product_ids: List[str] = []

class PromotionUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    code: Optional[str] = None
    type: Optional[DiscountType] = None
    value: Optional[float] = Field(None, ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    product_ids: Optional[List[str]] = None

# ------------ Payment recovery ------------
class RecoverPaymentRequest(BaseModel):
    payment_intent_id: str
