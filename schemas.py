"""
Schemas for the milk-delivery store

Each record model corresponds to one JSON collection (User -> "users").
Records allow extra fields so free-form data written by older clients
survives a round trip; the declared fields are validated on every add and
update.
"""
from typing import Optional, List, Literal, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal['user', 'vendor', 'admin']
ApprovalStatus = Literal['pending', 'approved', 'rejected']
OrderStatus = Literal['pending', 'processing', 'out for delivery', 'delivered', 'delayed', 'cancelled']
SubscriptionType = Literal['daily', 'weekly', 'monthly']
SubscriptionStatus = Literal['active', 'paused', 'completed', 'cancelled']
DeliveryStatus = Literal['scheduled', 'out for delivery', 'delivered', 'delayed', 'skipped']


class Record(BaseModel):
    model_config = ConfigDict(extra='allow')


# Core domain schemas

class User(Record):
    id: str
    email: str = Field(..., description="Login email, unique case-insensitively")
    name: str = Field("", description="Display name")
    role: Role = Field('user', description="Account role")
    approval_status: Optional[ApprovalStatus] = Field(None, description="Vendor approval state")
    hashed_password: Optional[str] = None
    phone_number: Optional[str] = None
    profile_info: Dict[str, Any] = Field(default_factory=dict, description="Address, avatar, business name, ...")

    @field_validator('email')
    @classmethod
    def email_has_at(cls, v: str) -> str:
        v = v.strip()
        if '@' not in v:
            raise ValueError('invalid email address')
        return v


class Product(Record):
    product_id: str
    vendor_id: Optional[str] = Field(None, description="Owning vendor's user id")
    name: str = Field(..., description="Product name")
    price: float = Field(..., ge=0, description="Price per unit in currency")
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    unit: Optional[str] = None
    image: Optional[str] = None
    image_base64: Optional[str] = None


class Order(Record):
    order_id: str
    user_id: str
    vendor_id: Optional[str] = None
    products: List[str] = Field(default_factory=list, description="Ordered product ids")
    quantities: Optional[List[int]] = Field(None, description="Parallel to products")
    status: OrderStatus = 'pending'
    total: Optional[float] = Field(None, ge=0)
    delivery_address: Optional[str] = None
    delivery_date: Optional[str] = None
    delivery_time: Optional[str] = None
    payment_method: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Subscription(Record):
    subscription_id: str
    user_id: str
    vendor_id: Optional[str] = None
    type: SubscriptionType = 'monthly'
    status: SubscriptionStatus = 'active'
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    preferred_day: Optional[str] = None
    delivery_time: Optional[str] = None
    vacation_mode: Optional[bool] = None
    vacation_start: Optional[str] = None
    vacation_end: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Transaction(Record):
    transaction_id: str
    user_id: str
    vendor_id: Optional[str] = None
    amount: float = Field(..., ge=0, description="Transaction amount")
    date: str
    type: Optional[str] = Field(None, description="order, subscription, ...")
    order_id: Optional[str] = Field(None, description="Linked order id, if any")
    reference_id: Optional[str] = None


class Delivery(Record):
    delivery_id: str
    subscription_id: str
    user_id: Optional[str] = None
    vendor_id: Optional[str] = None
    scheduled_date: str
    status: DeliveryStatus = 'scheduled'
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# Projections and results

class PublicUser(BaseModel):
    id: str
    email: str
    name: str = ""
    role: str = 'user'
    approval_status: Optional[str] = None
    profile_info: Dict[str, Any] = Field(default_factory=dict)


class Session(BaseModel):
    user_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @classmethod
    def anonymous(cls) -> "Session":
        return cls()

    @classmethod
    def authenticated(cls, user_id: str) -> "Session":
        return cls(user_id=user_id)


class AuthResult(BaseModel):
    success: bool
    message: Optional[str] = None
    user: Optional[PublicUser] = None


class ReferenceIssue(BaseModel):
    collection: str
    record_id: str
    field: str
    missing_id: str
