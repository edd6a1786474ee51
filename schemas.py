"""
Database Schemas

Each Pydantic model represents a MongoDB collection.
Model name lowercased is the collection name.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Dict, Any, Literal

Role = Literal["user", "admin"]
PaymentStatus = Literal["pending", "completed", "failed", "cancelled", "refunded"]
PaymentMethod = Literal["card", "direct"]

# Statuses a payment may move to from its current one
PAYMENT_TRANSITIONS: Dict[str, set] = {
    "pending": {"completed", "failed", "cancelled"},
    "completed": {"refunded"},
    "failed": set(),
    "cancelled": set(),
    "refunded": set(),
}

# Transitions reported by the payment provider. A customer may retry a failed
# intent, so provider-verified settlement can still move a failed row on.
INTENT_TRANSITIONS: Dict[str, set] = {
    **PAYMENT_TRANSITIONS,
    "failed": {"completed", "cancelled"},
}


class User(BaseModel):
    email: EmailStr = Field(..., description="Email address, stored lowercased")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Role = Field("user", description="Role: user | admin")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None


class Product(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., gt=0)
    category: str
    brand: str
    size: List[str] = Field(default_factory=list)
    color: List[str] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    is_active: bool = True
    tags: List[str] = Field(default_factory=list)
    user_id: Optional[str] = Field(None, description="Admin who created the product")


class Payment(BaseModel):
    user_id: str
    product_id: str
    amount: float = Field(..., ge=0)
    currency: str
    status: PaymentStatus = "pending"
    stripe_payment_intent_id: Optional[str] = None
    stripe_charge_id: Optional[str] = None
    payment_method: PaymentMethod = "card"
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CartLine(BaseModel):
    product_id: str
    size: Optional[str] = None
    quantity: int = Field(1, ge=1)
