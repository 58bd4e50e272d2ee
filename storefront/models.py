from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "processing", "refunded"]
PaymentMethod = Literal["cash", "liqpay", "monobank_card", "monobank_parts"]
DeliveryMethod = Literal["nova_poshta_dept", "nova_poshta_courier", "ukrposhta", "self_pickup", "quick_order"]


class ProductOut(BaseModel):
    id: int
    name: str
    slug: str
    price: float
    old_price: Optional[float] = None
    currency: str = "UAH"
    in_stock: bool = True
    image_url: Optional[str] = None
    brand: Optional[str] = None
    category_id: Optional[int] = None


class ProductDetailOut(ProductOut):
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    vendor_code: Optional[str] = None
    category: Optional[str] = None
    stock_quantity: Optional[int] = None


class CategoryOut(BaseModel):
    id: int
    name: str
    slug: str
    parent_id: Optional[int] = None
    level: int = 0
    image_url: Optional[str] = None


class BrandOut(BaseModel):
    id: int
    name: str
    slug: str
    logo_url: Optional[str] = None


class CatalogFiltersOut(BaseModel):
    min_price: float
    max_price: float
    brands: List[str]
    problem_tags: List[str]


class SiteSettingOut(BaseModel):
    key: str
    value: str
    label: Optional[str] = None


class SiteSettingIn(BaseModel):
    value: str = Field(max_length=4000)
    label: Optional[str] = Field(default=None, max_length=200)
    is_public: bool = True


class PromoValidateOut(BaseModel):
    code: str
    valid: bool
    discount_amount: float
    message: str
    discount_type: Optional[str] = None
    discount_value: Optional[float] = None


class CartItemIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1, le=99)


class QuoteIn(BaseModel):
    items: List[CartItemIn] = Field(min_length=1, max_length=100)
    promo_code: Optional[str] = Field(default=None, max_length=64)


class QuoteLineOut(BaseModel):
    product_id: int
    name: str
    quantity: int
    unit_price: float
    line_total: float


class QuoteOut(BaseModel):
    lines: List[QuoteLineOut]
    subtotal: float
    discount_amount: float
    shipping_cost: float
    total: float
    free_shipping: bool
    amount_to_free_shipping: float
    promo_code: Optional[str] = None
    promo_message: Optional[str] = None


class DeliveryInfoIn(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=30)
    city: Optional[str] = Field(default=None, max_length=200)
    city_ref: Optional[str] = Field(default=None, max_length=64)
    warehouse: Optional[str] = Field(default=None, max_length=300)
    warehouse_ref: Optional[str] = Field(default=None, max_length=64)
    address: Optional[str] = Field(default=None, max_length=400)
    postcode: Optional[str] = Field(default=None, max_length=10)
    comment: Optional[str] = Field(default=None, max_length=1000)


class CheckoutIn(BaseModel):
    items: List[CartItemIn] = Field(min_length=1, max_length=100)
    customer_name: str = Field(min_length=2, max_length=200)
    customer_phone: str = Field(max_length=30)
    customer_email: Optional[str] = Field(default=None, max_length=320)
    delivery_method: DeliveryMethod
    delivery_info: DeliveryInfoIn = Field(default_factory=DeliveryInfoIn)
    payment_method: PaymentMethod = "cash"
    promo_code: Optional[str] = Field(default=None, max_length=64)
    client_total: Optional[float] = Field(default=None, ge=0)
    parts_count: Optional[int] = None


class QuickOrderIn(BaseModel):
    product_id: int
    quantity: int = Field(default=1, ge=1, le=99)
    customer_name: str = Field(min_length=2, max_length=200)
    customer_phone: str = Field(max_length=30)


class LiqPayFormOut(BaseModel):
    data: str
    signature: str


class PaymentStepOut(BaseModel):
    provider: str
    liqpay: Optional[LiqPayFormOut] = None
    page_url: Optional[str] = None
    invoice_id: Optional[str] = None


class OrderCreatedOut(BaseModel):
    order_id: int
    status: str
    payment_status: str
    subtotal: float
    discount_amount: float
    shipping_cost: float
    total: float
    free_shipping: bool
    payment: Optional[PaymentStepOut] = None


class OrderItemOut(BaseModel):
    product_id: Optional[int] = None
    product_name: str
    quantity: int
    price_at_purchase: float


class OrderOut(BaseModel):
    id: int
    status: str
    payment_status: str
    payment_method: str
    delivery_method: str
    delivery_info: Dict[str, Any] = Field(default_factory=dict)
    customer_name: str
    customer_phone: str
    customer_email: Optional[str] = None
    total_price: float
    discount_amount: float = 0.0
    promo_code: Optional[str] = None
    ttn: Optional[str] = None
    created_at: Optional[str] = None
    items: List[OrderItemOut] = Field(default_factory=list)


class CancelOrderOut(BaseModel):
    order_id: int
    status: str


class LiqPaySignIn(BaseModel):
    order_id: int


class MonobankInvoiceIn(BaseModel):
    order_id: int
    redirect_url: Optional[str] = Field(default=None, max_length=500)


class MonobankInvoiceOut(BaseModel):
    order_id: int
    invoice_id: str
    page_url: str
    amount: float


class MonobankPartsIn(BaseModel):
    order_id: int
    parts_count: int


class MonobankPartsOut(BaseModel):
    order_id: int
    request_id: str
    parts_count: int
    status: str
    amount: float


class WebhookAckOut(BaseModel):
    success: bool = True
    message: str
    order_id: Optional[int] = None
    payment_status: Optional[str] = None


class PaymentStatusOut(BaseModel):
    order_id: int
    payment_status: str
    order_status: str
    provider_status: Optional[str] = None


class SettlementOut(BaseModel):
    value: str
    label: str
    ref: str


class WaybillOut(BaseModel):
    order_id: int
    ttn: str
    status: str
    cost: Optional[float] = None
    estimated_delivery_date: Optional[str] = None


class TelegramNotifyIn(BaseModel):
    order_id: Optional[int] = None
    record: Optional[Dict[str, Any]] = None


class NotifyOut(BaseModel):
    success: bool = True
    notified: bool


class EmailIn(BaseModel):
    to: str = Field(min_length=3, max_length=320)
    subject: str = Field(min_length=1, max_length=300)
    html: str = Field(min_length=1)


class EmailOut(BaseModel):
    success: bool = True
    id: Optional[str] = None


class CapiUserDataIn(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    external_id: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None


class CapiContentIn(BaseModel):
    id: str
    quantity: int = 1
    item_price: Optional[float] = None


class CapiEventIn(BaseModel):
    event_id: Optional[str] = Field(default=None, max_length=100)
    event_time: Optional[int] = None
    event_source_url: Optional[str] = None
    user_data: CapiUserDataIn = Field(default_factory=CapiUserDataIn)
    value: Optional[float] = None
    currency: str = "UAH"
    content_ids: List[str] = Field(default_factory=list)
    contents: List[CapiContentIn] = Field(default_factory=list)
    content_name: Optional[str] = None
    order_id: Optional[str] = None
    num_items: Optional[int] = None


class CapiOut(BaseModel):
    success: bool = True
    test_mode: bool = False
    events_received: Optional[int] = None
    fbtrace_id: Optional[str] = None
    event_id: Optional[str] = None


class ReviewIn(BaseModel):
    user_name: str = Field(min_length=1, max_length=100)
    rating: int = Field(ge=1, le=5)
    comment: str = Field(min_length=1, max_length=4000)


class ReviewOut(BaseModel):
    id: int
    product_id: int
    user_name: str
    rating: int
    comment: str
    admin_reply: Optional[str] = None
    is_approved: bool = True
    created_at: Optional[str] = None


class RatingSummaryOut(BaseModel):
    product_id: int
    average: float
    count: int


class QuestionIn(BaseModel):
    user_name: str = Field(min_length=1, max_length=100)
    question: str = Field(min_length=3, max_length=2000)


class QuestionOut(BaseModel):
    id: int
    product_id: int
    user_name: str
    question: str
    answer: Optional[str] = None
    is_approved: bool = True
    created_at: Optional[str] = None


class AuthSignupIn(BaseModel):
    email: str = Field(max_length=320)
    password: str = Field(max_length=200)
    full_name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=30)


class AuthLoginIn(BaseModel):
    email: str = Field(max_length=320)
    password: str = Field(max_length=200)


class AuthTokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class ProfileOut(BaseModel):
    id: int
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    role: str = "user"


class ProfileIn(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=30)
    address: Optional[str] = Field(default=None, max_length=400)


class AdminLoginIn(BaseModel):
    username: str
    password: str


class AdminLoginOut(BaseModel):
    admin_key: str
    access_token: str


class AdminOrderUpdateIn(BaseModel):
    status: Optional[OrderStatus] = None
    ttn: Optional[str] = Field(default=None, max_length=40)


class PromoCodeIn(BaseModel):
    code: str = Field(min_length=2, max_length=64)
    description: Optional[str] = Field(default=None, max_length=300)
    discount_type: Literal["percentage", "fixed"]
    discount_value: float = Field(gt=0)
    min_order_amount: float = Field(default=0, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    is_active: bool = True


class PromoCodeOut(BaseModel):
    id: int
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: float
    min_order_amount: float
    max_uses: Optional[int] = None
    used_count: int
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    is_active: bool


class ReplyIn(BaseModel):
    reply: str = Field(min_length=1, max_length=4000)


class AdminCustomerOut(BaseModel):
    id: int
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    role: str
    orders_count: int
    total_spent: float


class BestsellersIn(BaseModel):
    product_ids: List[int] = Field(max_length=50)


class DashboardOut(BaseModel):
    window_days: int
    orders_today: int
    orders_in_window: int
    revenue_paid: float
    pending_orders: int
    average_order_value: float
