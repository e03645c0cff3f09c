import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, field_validator, model_validator


# ─────────────── Order Enums ───────────────

class OrderStatus(str, Enum):
    pending = "Pending"
    ready_for_delivery = "ReadyForDelivery"
    delivered = "Delivered"
    completed = "Completed"
    cancelled = "Cancelled"


class PaymentStatus(str, Enum):
    unpaid = "Unpaid"
    pending = "Pending"
    paid = "Paid"
    failed = "Failed"


class PaymentMethod(str, Enum):
    cod = "COD"
    vnpay = "VNPay"
    zalopay = "ZaloPay"


# ─────────────── Voucher Enums ───────────────

class VoucherType(str, Enum):
    fixed = "Fixed"
    percentage = "Percentage"


class VoucherStatus(str, Enum):
    active = "Active"
    inactive = "Inactive"


class ApplyMode(str, Enum):
    individual = "Individual"
    condition = "Condition"


class VoucherCategoryName(str, Enum):
    user = "User"
    restaurant = "Restaurant"
    product = "Product"
    free_shipping = "Free Shipping"


class ConditionType(str, Enum):
    user = "User"
    order = "Order"
    product = "Product"


class ConditionField(str, Enum):
    join_date = "JoinDate"
    total_orders = "TotalOrders"
    user_category = "UserCategory"
    role = "Role"
    total_amount = "TotalAmount"
    order_date = "OrderDate"
    product_id = "ProductId"
    minimum_quantity = "MinimumQuantity"
    product_category = "ProductCategory"


class ConditionOperator(str, Enum):
    gt = ">"
    lt = "<"
    eq = "="
    ge = ">="
    le = "<="
    in_ = "IN"
    includes = "INCLUDES"
    excludes = "EXCLUDES"


# ─────────────── Voucher Conditions ───────────────

class VoucherConditionCreate(BaseModel):
    condition_type: ConditionType
    field: ConditionField
    operator: ConditionOperator
    value: str

    @model_validator(mode="after")
    def validate_value_shape(self) -> "VoucherConditionCreate":
        if self.field == ConditionField.minimum_quantity:
            parts = self.value.split("|")
            if len(parts) != 2 or not all(p.strip().isdigit() for p in parts):
                raise ValueError("MinimumQuantity value must look like '<productId>|<minQty>'")
        if self.operator == ConditionOperator.in_:
            try:
                parsed = json.loads(self.value)
            except ValueError:
                raise ValueError("IN value must be a JSON array of strings")
            if not isinstance(parsed, list):
                raise ValueError("IN value must be a JSON array of strings")
        if self.field == ConditionField.total_orders and not self.value.strip().isdigit():
            raise ValueError("TotalOrders value must be a whole number")
        if self.field == ConditionField.total_amount:
            try:
                amount = Decimal(self.value.strip())
            except InvalidOperation:
                raise ValueError("TotalAmount value must be a number")
            if not amount.is_finite():
                raise ValueError("TotalAmount value must be a finite number")
        if self.field in (ConditionField.join_date, ConditionField.order_date):
            try:
                datetime.fromisoformat(self.value.strip())
            except ValueError:
                raise ValueError(f"{self.field.value} value must be an ISO date")
        return self


class VoucherConditionResponse(BaseModel):
    voucher_condition_id: int
    condition_type: str
    field: str
    operator: str
    value: str

    model_config = {"from_attributes": True}


# ─────────────── Voucher Request / Response ───────────────

class VoucherCreate(BaseModel):
    code: str
    voucher_type: VoucherType
    discount_amount: Decimal
    expiration_date: datetime
    minimum_order_amount: Optional[Decimal] = None
    maximum_discount_amount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    status: VoucherStatus = VoucherStatus.active
    apply_mode: ApplyMode = ApplyMode.individual
    voucher_category_id: Optional[int] = None
    user_id: Optional[int] = None
    restaurant_id: Optional[int] = None
    product_id: Optional[int] = None
    conditions: List[VoucherConditionCreate] = []

    @field_validator("discount_amount")
    @classmethod
    def must_be_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Must be a positive number")
        return v

    @field_validator("minimum_order_amount", "maximum_discount_amount")
    @classmethod
    def amount_not_negative(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v < 0:
            raise ValueError("Amount cannot be negative")
        return v

    @field_validator("usage_limit")
    @classmethod
    def usage_limit_not_negative(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("Usage limit cannot be negative")
        return v

    @model_validator(mode="after")
    def percentage_max_100(self) -> "VoucherCreate":
        if self.voucher_type == VoucherType.percentage and self.discount_amount > 100:
            raise ValueError("Discount percentage cannot exceed 100")
        return self


class VoucherUpdate(BaseModel):
    """
    Partial update: only fields present in the request body are written.
    Nullable fields may be cleared by sending an explicit null.
    When update_conditions is true the condition set is replaced by `conditions`.
    """
    code: Optional[str] = None
    voucher_type: Optional[VoucherType] = None
    discount_amount: Optional[Decimal] = None
    expiration_date: Optional[datetime] = None
    minimum_order_amount: Optional[Decimal] = None
    maximum_discount_amount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    status: Optional[VoucherStatus] = None
    apply_mode: Optional[ApplyMode] = None
    voucher_category_id: Optional[int] = None
    user_id: Optional[int] = None
    restaurant_id: Optional[int] = None
    product_id: Optional[int] = None
    update_conditions: bool = False
    conditions: List[VoucherConditionCreate] = []

    @field_validator("discount_amount")
    @classmethod
    def must_be_positive(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v <= 0:
            raise ValueError("Must be a positive number")
        return v

    @field_validator("usage_limit")
    @classmethod
    def usage_limit_not_negative(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("Usage limit cannot be negative")
        return v


class VoucherResponse(BaseModel):
    voucher_id: int
    code: str
    voucher_type: VoucherType
    discount_amount: Decimal
    expiration_date: datetime
    minimum_order_amount: Optional[Decimal] = None
    maximum_discount_amount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    status: VoucherStatus
    apply_mode: ApplyMode
    voucher_category_id: Optional[int] = None
    category_name: Optional[str] = None
    user_id: Optional[int] = None
    restaurant_id: Optional[int] = None
    product_id: Optional[int] = None
    conditions: List[VoucherConditionResponse] = []

    model_config = {"from_attributes": True}


class VoucherCategoryResponse(BaseModel):
    voucher_category_id: int
    name: str
    description: Optional[str] = None

    model_config = {"from_attributes": True}


class VoucherWriteResponse(BaseModel):
    success: bool
    message: str
    voucher: Optional[VoucherResponse] = None


class GeneratedCodeResponse(BaseModel):
    code: str


# ─────────────── Eligibility / Validation ───────────────

class EligibleVouchersResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    vouchers: List[VoucherResponse]


class ValidateVoucherRequest(BaseModel):
    voucher_code: str
    user_id: int
    order_total: Decimal
    restaurant_id: int
    product_ids: Optional[List[int]] = None

    @field_validator("order_total")
    @classmethod
    def total_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Order total cannot be negative")
        return v


class ValidateVoucherResponse(BaseModel):
    is_valid: bool
    message: str
    discount_amount: Decimal
    voucher_type: Optional[VoucherType] = None
    category_name: Optional[str] = None
