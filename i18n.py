"""
English / Arabic strings used in API responses.

The table is static data keyed by locale. Handlers receive a `Translator`
through a FastAPI dependency instead of reading a global language setting.
"""

from typing import Optional

DEFAULT_LOCALE = "en"
SUPPORTED_LOCALES = ("en", "ar")

TRANSLATIONS = {
    "en": {
        # checkout steps
        "customer_info": "Customer Information",
        "shipping_info": "Shipping Information",
        "payment_info": "Payment Information",
        "shipping": "Shipping",
        "free": "Free",
        "subtotal": "Subtotal",
        "discount": "Discount",
        "for_free_shipping": "for free shipping",
        # validation
        "required_field": "This field is required",
        "valid_email": "Please enter a valid email address",
        "valid_phone": "Please enter a valid phone number (e.g., +971501234567)",
        "phone_length": "Phone number must be between 7 and 20 digits",
        "select_emirate_required": "Please select an emirate",
        "select_city_required": "Please select a city",
        "select_emirate_first": "Please select an emirate first",
        "address_required": "Delivery address is required",
        "complete_address": "Please provide a complete address",
        # errors
        "cart_empty": "Your cart is empty",
        "product_not_found": "Product not found",
        "variation_not_found": "This combination is not available",
        "variation_ambiguous": "More than one variation matches this combination",
        "out_of_stock": "Not enough stock for this item",
        "step_order": "Please complete the previous step first",
        "payment_not_prepared": "Payment has not been initialised",
        "payment_failed": "Payment failed. Please try again.",
        "order_failed": "Order creation failed. Your payment was received, please contact support.",
        # order confirmation
        "order_created_new": "Order created successfully! Check your email for account credentials.",
        "order_created": "Order created successfully! Thank you for your purchase.",
        "newsletter_subscribed": "Thank you for subscribing!",
    },
    "ar": {
        "customer_info": "معلومات العميل",
        "shipping_info": "معلومات الشحن",
        "payment_info": "معلومات الدفع",
        "shipping": "الشحن",
        "free": "مجاني",
        "subtotal": "المجموع الفرعي",
        "discount": "الخصم",
        "for_free_shipping": "للحصول على شحن مجاني",
        "required_field": "هذا الحقل مطلوب",
        "valid_email": "يرجى إدخال عنوان بريد إلكتروني صحيح",
        "valid_phone": "يرجى إدخال رقم هاتف صحيح (مثل +971501234567)",
        "phone_length": "يجب أن يكون رقم الهاتف بين 7 و 20 رقماً",
        "select_emirate_required": "يرجى اختيار إمارة",
        "select_city_required": "يرجى اختيار مدينة",
        "select_emirate_first": "يرجى اختيار الإمارة أولاً",
        "address_required": "عنوان التوصيل مطلوب",
        "complete_address": "يرجى تقديم عنوان كامل",
        "cart_empty": "سلة التسوق فارغة",
        "product_not_found": "المنتج غير موجود",
        "variation_not_found": "هذا الخيار غير متوفر",
        "variation_ambiguous": "يوجد أكثر من خيار مطابق لهذا الاختيار",
        "out_of_stock": "الكمية المتوفرة غير كافية",
        "step_order": "يرجى إكمال الخطوة السابقة أولاً",
        "payment_not_prepared": "لم يتم تهيئة الدفع",
        "payment_failed": "فشل الدفع. يرجى المحاولة مرة أخرى.",
        "order_failed": "تعذر إنشاء الطلب. تم استلام الدفع، يرجى التواصل مع الدعم.",
        "order_created_new": "تم إنشاء الطلب بنجاح! تحقق من بريدك الإلكتروني لبيانات حسابك.",
        "order_created": "تم إنشاء الطلب بنجاح! شكراً لتسوقك معنا.",
        "newsletter_subscribed": "شكراً لاشتراكك!",
    },
}


def normalize_locale(value: Optional[str]) -> str:
    """Map `?lang=` or an Accept-Language header onto a supported locale."""
    if not value:
        return DEFAULT_LOCALE
    for part in value.split(","):
        code = part.split(";")[0].strip().lower()[:2]
        if code in SUPPORTED_LOCALES:
            return code
    return DEFAULT_LOCALE


class Translator:
    def __init__(self, locale: str = DEFAULT_LOCALE):
        self.locale = locale if locale in SUPPORTED_LOCALES else DEFAULT_LOCALE

    @property
    def is_rtl(self) -> bool:
        return self.locale == "ar"

    def t(self, key: str) -> str:
        table = TRANSLATIONS[self.locale]
        if key in table:
            return table[key]
        return TRANSLATIONS[DEFAULT_LOCALE].get(key, key)

    def content_by_lang(self, en: Optional[str], ar: Optional[str]) -> Optional[str]:
        # Arabic content is optional in the catalog
        if self.locale == "ar" and ar:
            return ar
        return en

    def field_errors(self, errors: dict) -> dict:
        return {field: {"code": code, "message": self.t(code)} for field, code in errors.items()}
