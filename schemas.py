"""
Database Schemas

Pydantic models that define the MongoDB collections used by the storefront.
The collection name is the lowercased class name (e.g. Product -> "product").
References to other documents are stored as ObjectId hex strings.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered")

# status -> field stamped the first time the order reaches it
STATUS_TIME_FIELDS = {
    "processing": "processing_time",
    "shipped": "shipped_time",
    "delivered": "delivered_time",
}

ALLOWED_IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "webp")
MAX_IMAGES = 5
MAX_IMAGE_BYTES = 20 * 1024 * 1024
MAX_COMMENT_LENGTH = 2000
MAX_REPLY_LENGTH = 1000


class CamelModel(BaseModel):
    """Snake_case in Python and Mongo, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(CamelModel):
    username: str = Field(..., max_length=50)
    email: EmailStr
    password: str = Field(..., description="Password hash, never the raw password")
    is_admin: bool = False
    profile_pic: Optional[str] = None
    phone_number: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[datetime] = None
    address_list: List[str] = Field(default_factory=list)


class Product(CamelModel):
    name: str = Field(..., description="Product name")
    description: Optional[str] = None
    price: float = Field(..., ge=0, description="Unit price")
    category: Optional[str] = None
    images: List[str] = Field(default_factory=list, description="Image URLs")
    stock: int = Field(0, ge=0, description="Units in stock")


class OrderItem(CamelModel):
    product_id: str
    name: str = Field(..., description="Snapshot of the product name at purchase time")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at purchase time")
    color: Optional[str] = None
    size: Optional[str] = None
    image: Optional[str] = None


class Order(CamelModel):
    user_id: str
    receiver_name: str
    receiver_phone: str
    receiver_note: str = ""
    products: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    shipping_address: str
    payment_method: str = Field("COD", description="COD | Stripe")
    payment_check: bool = False
    status: str = Field("pending", description="pending | processing | shipped | delivered")
    processing_time: Optional[datetime] = None
    shipped_time: Optional[datetime] = None
    delivered_time: Optional[datetime] = None


class ReviewReply(CamelModel):
    text: str = Field(..., max_length=MAX_REPLY_LENGTH)
    user_id: str
    created_at: datetime


class Review(CamelModel):
    creator: str
    product: str
    order: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field("", max_length=MAX_COMMENT_LENGTH)
    image: List[str] = Field(default_factory=list)
    reply: List[ReviewReply] = Field(default_factory=list)


class Chat(CamelModel):
    chat_name: Optional[str] = None
    is_group_chat: bool = False
    members: List[str] = Field(..., min_length=2)
    created_by: str
