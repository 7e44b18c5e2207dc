"""
Database Schemas for HaatBazar

Each Pydantic model corresponds to a MongoDB collection. Collection name is the
lowercase class name. References to other documents are hex id strings.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

AccountStatus = Literal["ACTIVE", "SUSPENDED", "BANNED"]
OrderStatus = Literal["ORDER_PLACED", "PROCESSING", "DELIVERED", "CANCELLED"]
ComplaintStatus = Literal["PENDING", "RESOLVED", "REJECTED"]
PaymentType = Literal["CASH", "CARD"]
TransactionStatus = Literal["PENDING", "SUCCESS", "FAILED"]


class Buyer(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    billing_address: Optional[str] = None
    shipping_address: Optional[str] = None
    nid: Optional[str] = None
    image: Optional[str] = None
    status: AccountStatus = "ACTIVE"
    password_hash: str = Field(..., description="BCrypt hash of the password")


class Seller(BaseModel):
    email: EmailStr
    business_name: str = Field(..., min_length=1)
    division: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    status: AccountStatus = "ACTIVE"
    address: Optional[str] = None
    nid: Optional[str] = None
    tin_id: Optional[str] = None
    tin_doc: Optional[bytes] = Field(None, description="Tax identification document")
    tin_doc_type: Optional[str] = None
    image: Optional[str] = None
    password_hash: str = Field(..., description="BCrypt hash of the password")


class Admin(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    role: Literal["admin"] = "admin"
    password_hash: str = Field(..., description="BCrypt hash of the password")


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    category: str
    subcategory: str
    seller_id: str
    division: str
    unit: str
    price_per_unit: float = Field(..., ge=0)
    image: str = Field(..., min_length=1)
    stock: int = Field(..., ge=0)
    description: str


class OrderedProduct(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    subtotal: float = Field(..., ge=0)


class Order(BaseModel):
    buyer_id: str
    seller_id: str
    total_price: float = Field(..., ge=0)
    status: OrderStatus = "ORDER_PLACED"
    shipping_address: str = Field(..., min_length=1)
    billing_address: str = Field(..., min_length=1)
    ordered_products: List[OrderedProduct] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_total(self):
        subtotal = sum(item.subtotal for item in self.ordered_products)
        if round(subtotal, 2) != round(self.total_price, 2):
            raise ValueError("total_price must equal the sum of line subtotals")
        return self


class Review(BaseModel):
    buyer_id: str
    product_id: str
    order_id: str
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = None
    image: Optional[str] = None


class Complaint(BaseModel):
    complainant_id: str
    accused_id: str
    message: str = Field(..., min_length=1)
    image: Optional[str] = None
    status: ComplaintStatus = "PENDING"
    response: Optional[str] = None


class BuyerComplaint(Complaint):
    """Filed by a buyer (complainant) against a seller (accused)."""


class SellerComplaint(Complaint):
    """Filed by a seller (complainant) against a buyer (accused)."""


class Transaction(BaseModel):
    order_id: str
    amount: float = Field(..., ge=0)
    payment_type: PaymentType = "CARD"
    status: TransactionStatus = "PENDING"
