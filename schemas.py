"""
Database Schemas for the pet tag service

Each Pydantic model below corresponds to a MongoDB collection (lowercased class name).
These are used for validation in the API and to document the data shape.
Reference fields (owner_id, tag_id, ...) hold ObjectId strings at this layer;
database.py stores them as ObjectId.
"""

from typing import Optional, List, Literal, Dict, Any
from pydantic import BaseModel, Field
from datetime import datetime

TagStatus = Literal["pending", "active", "inactive"]
PetStatus = Literal["active", "inactive"]
OrderStatus = Literal["pending", "paid", "processing", "shipped", "delivered", "cancelled"]
Availability = Literal["available", "unavailable"]
NotificationType = Literal[
    "tag_activated", "pet_found", "order_confirmed", "order_shipped", "order_delivered"
]

# Users
class User(BaseModel):
    provider: Literal["google"] = Field("google")
    external_id: Optional[str] = Field(None, description="Identity provider user id")
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    role: Literal["customer", "admin"] = Field("customer")
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

# Pet profiles
class Pet(BaseModel):
    owner_id: str
    name: str = Field(..., max_length=50)
    breed: Optional[str] = Field(None, max_length=50)
    age: Optional[int] = Field(None, ge=0, le=30)
    medical_conditions: Optional[str] = Field(None, max_length=500)
    photo_url: Optional[str] = None
    status: PetStatus = Field("inactive", description="active only while a linked tag is active")
    tag_id: Optional[str] = None
    is_active: bool = Field(True, description="Soft-delete flag")
    last_seen_at: Optional[datetime] = None
    last_seen_location: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

# Registration record of a physical tag
class Tag(BaseModel):
    user_id: str
    pet_id: Optional[str] = None
    status: TagStatus = Field("pending")
    order_id: Optional[str] = None
    qr_code_id: Optional[str] = Field(None, description="QRCode inventory record, set on first activation")
    qr_code: Optional[str] = Field(None, description="Physical sticker id, denormalized from the QRCode")
    is_active: bool = Field(True, description="Cleared by deactivation and order cancellation")
    activated_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

# Pre-printed QR sticker in the inventory pool
class QRCode(BaseModel):
    tag_code: str = Field(..., description="Physical tag id printed on the sticker, e.g. 6P421DZ5")
    qr_code_data: str = Field(..., description="URL the QR code points to")
    website_url: str
    availability: Availability = Field("available")
    assigned_tag_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class Product(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    availability: Literal["in_stock", "out_of_stock", "pre_order"] = Field("in_stock")
    is_active: bool = True
    sku: Optional[str] = None

class OrderItem(BaseModel):
    product_id: Optional[str] = None
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    color: Optional[str] = None

class ShippingAddress(BaseModel):
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "USA"

class Order(BaseModel):
    user_id: str
    pet_id: Optional[str] = None
    tag_id: Optional[str] = Field(None, description="First tag created by a tag purchase")
    items: List[OrderItem] = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    status: OrderStatus = Field("pending")
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    currency: str = "USD"
    shipping_address: ShippingAddress
    tracking_number: Optional[str] = None
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    refunding: bool = Field(False, description="Set while a refund is in flight")
    refunded_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

# In-app notification record
class Notification(BaseModel):
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

class Coordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

class FinderInfo(BaseModel):
    name: str
    phone: str
    email: Optional[str] = None
    message: Optional[str] = None

# Finder scan of a tag
class ScanLog(BaseModel):
    pet_id: str
    tag_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    finder_info: Optional[FinderInfo] = None
    owner_notified: bool = False
    notified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
