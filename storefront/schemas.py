from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from pydantic.config import ConfigDict

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
Role = Literal["user", "admin"]

# SQLite INTEGER is a signed 64-bit value
MAX_INT = 2**63 - 1
RowId = Annotated[int, Field(ge=1, le=MAX_INT)]
Quantity = Annotated[int, Field(ge=1, le=MAX_INT)]


# -------------------- Users / auth --------------------

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    # username or email
    login: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6, max_length=128)


class UserRead(BaseModel):
    id: int
    username: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserSummary(BaseModel):
    id: int
    username: str
    name: Optional[str] = None
    email: str

    model_config = ConfigDict(from_attributes=True)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead


class SelfUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=6, max_length=128)
    current_password: Optional[str] = None

    @model_validator(mode="after")
    def password_change_needs_current(self):
        if self.password is not None and not self.current_password:
            raise ValueError("current_password is required to change the password")
        return self


class AdminUserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[EmailStr] = None
    role: Optional[Role] = None


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=30)
    avatar: Optional[str] = Field(default=None, max_length=255)


class ProfileRead(ProfileUpdate):
    id: int
    user_id: int

    model_config = ConfigDict(from_attributes=True)


# -------------------- Catalog --------------------

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None


class CategoryRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    discount: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    stock_quantity: int = Field(default=0, ge=0, le=MAX_INT)
    is_available: bool = True
    image_url: Optional[str] = Field(default=None, max_length=255)
    category_id: Optional[RowId] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    discount: Optional[Decimal] = Field(default=None, ge=0, le=100)
    stock_quantity: Optional[int] = Field(default=None, ge=0, le=MAX_INT)
    is_available: Optional[bool] = None
    image_url: Optional[str] = Field(default=None, max_length=255)
    category_id: Optional[RowId] = None


class ProductRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    discount: Decimal
    stock_quantity: int
    is_available: bool
    image_url: Optional[str] = None
    category_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class ProductSummary(BaseModel):
    id: int
    name: str
    price: Decimal
    discount: Decimal
    image_url: Optional[str] = None
    stock_quantity: int
    is_available: bool

    model_config = ConfigDict(from_attributes=True)


# -------------------- Cart --------------------

class CartAdd(BaseModel):
    product_id: RowId
    quantity: Quantity = 1


class CartQuantity(BaseModel):
    quantity: Quantity


class CartItemRead(BaseModel):
    id: int
    cart_id: int
    product_id: int
    quantity: int

    model_config = ConfigDict(from_attributes=True)


class CartLine(CartItemRead):
    product: ProductSummary


class CartRead(BaseModel):
    id: int
    user_id: int
    items: List[CartLine] = []
    total: Decimal = Decimal("0.00")


# -------------------- Addresses --------------------

class AddressCreate(BaseModel):
    street: str = Field(..., min_length=1, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    zip_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=30)


class AddressUpdate(BaseModel):
    street: Optional[str] = Field(default=None, min_length=1, max_length=255)
    city: Optional[str] = Field(default=None, min_length=1, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    zip_code: Optional[str] = Field(default=None, min_length=1, max_length=20)
    country: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=30)


class AddressRead(AddressCreate):
    id: int
    user_id: int

    model_config = ConfigDict(from_attributes=True)


# -------------------- Orders --------------------

class OrderCreate(BaseModel):
    address_id: Optional[RowId] = None
    shipping_address: Optional[AddressCreate] = None
    payment_method: str = Field(..., min_length=1, max_length=50)
    payment_details: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def exactly_one_address(self):
        if (self.address_id is None) == (self.shipping_address is None):
            raise ValueError("provide either address_id or shipping_address")
        return self


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderItemRead(BaseModel):
    id: int
    product_id: Optional[int] = None
    product_name: str
    quantity: int
    price: Decimal
    discount: Decimal
    product: Optional[ProductSummary] = None


class OrderRead(BaseModel):
    id: int
    user_id: int
    address_id: Optional[int] = None
    total_amount: Decimal
    status: str
    payment_method: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OrderWithUser(OrderRead):
    user: Optional[UserSummary] = None


class OrderDetail(OrderWithUser):
    payment_details: Optional[Dict[str, Any]] = None
    items: List[OrderItemRead] = []
    address: Optional[AddressRead] = None


# -------------------- Admin --------------------

class Pagination(BaseModel):
    total: int
    page: int
    pages: int
    limit: int


class ActivityLogRead(BaseModel):
    id: int
    user_id: Optional[int] = None
    action: str
    entity_type: str
    entity_id: Optional[int] = None
    details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    user: Optional[UserSummary] = None


class DashboardStats(BaseModel):
    total_users: int
    total_orders: int
    total_products: int
    total_revenue: Decimal

    @field_validator("total_revenue")
    def two_places(cls, v: Decimal):
        return v.quantize(Decimal("0.01"))


class Dashboard(BaseModel):
    stats: DashboardStats
    recent_orders: List[OrderWithUser]
    recent_activities: List[ActivityLogRead]


class UserPage(BaseModel):
    users: List[UserRead]
    pagination: Pagination


class ProductPage(BaseModel):
    products: List[ProductRead]
    pagination: Pagination


class OrderPage(BaseModel):
    orders: List[OrderWithUser]
    pagination: Pagination


class LogPage(BaseModel):
    logs: List[ActivityLogRead]
    pagination: Pagination
