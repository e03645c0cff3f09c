from sqlalchemy import Column, Integer, String, Numeric, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship

from clock import utc_now
from database import Base


class User(Base):
    """
    Customer, seller (restaurant owner), delivery person or admin.

    role is free text ("Customer", "seller", "DeliveryPerson", "Admin", ...);
    Role / UserCategory voucher conditions compare against it verbatim.
    """
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(50), nullable=False, default="Customer")
    status = Column(String(50), nullable=False, default="Active")
    created_at = Column(DateTime, nullable=False, default=utc_now)


class Restaurant(Base):
    __tablename__ = "restaurants"

    restaurant_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    seller_id = Column(Integer, ForeignKey("users.user_id"), nullable=False)
    name = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False, default="Active")


class Product(Base):
    __tablename__ = "products"

    product_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.restaurant_id"), nullable=False)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)


class Order(Base):
    """
    status:         'Pending' | 'ReadyForDelivery' | 'Delivered' | 'Completed' | 'Cancelled'
    payment_status: 'Unpaid' | 'Pending' | 'Paid' | 'Failed'
    order_date is stored as naive UTC.
    """
    __tablename__ = "orders"

    order_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False)
    restaurant_id = Column(Integer, ForeignKey("restaurants.restaurant_id"), nullable=False)
    delivery_person_id = Column(Integer, ForeignKey("users.user_id"), nullable=True)
    order_date = Column(DateTime, nullable=False, default=utc_now, index=True)
    status = Column(String(50), nullable=False, default="Pending", index=True)
    total_amount = Column(Numeric(18, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(18, 2), nullable=False, default=0)
    ship_fee = Column(Numeric(18, 2), nullable=False, default=0)
    payment_method = Column(String(50), nullable=True)
    payment_status = Column(String(50), nullable=True, index=True)

    details = relationship("OrderDetail", back_populates="order")


class OrderDetail(Base):
    __tablename__ = "order_details"

    order_detail_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.order_id"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.product_id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="details")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    message = Column(String(500), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    is_read = Column(Boolean, nullable=False, default=False)


class VoucherCategory(Base):
    __tablename__ = "voucher_categories"

    voucher_category_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(String(255), nullable=True)


class Voucher(Base):
    """
    Database model for vouchers.

    voucher_type: 'Fixed' | 'Percentage'
        - Fixed:      discount_amount is an absolute amount.
        - Percentage: discount_amount is a percent, capped by maximum_discount_amount.
    apply_mode:   'Individual' | 'Condition'
    status:       'Active' | 'Inactive'
    usage_limit:  remaining redemptions; None means unlimited, 0 means exhausted.
    """
    __tablename__ = "vouchers"

    voucher_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True, index=True)
    voucher_type = Column(String(20), nullable=False)
    discount_amount = Column(Numeric(18, 2), nullable=False)
    minimum_order_amount = Column(Numeric(18, 2), nullable=True)
    maximum_discount_amount = Column(Numeric(18, 2), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    expiration_date = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default="Active")
    apply_mode = Column(String(20), nullable=False, default="Individual")

    voucher_category_id = Column(
        Integer, ForeignKey("voucher_categories.voucher_category_id", ondelete="SET NULL"), nullable=True
    )
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.restaurant_id"), nullable=True)
    product_id = Column(Integer, ForeignKey("products.product_id"), nullable=True)

    category = relationship("VoucherCategory", lazy="joined")
    conditions = relationship(
        "VoucherCondition",
        back_populates="voucher",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="VoucherCondition.voucher_condition_id",
    )

    @property
    def category_name(self):
        return self.category.name if self.category is not None else None


class VoucherCondition(Base):
    """
    condition_type: 'User' | 'Order' | 'Product'
    field:          JoinDate, TotalOrders, UserCategory, Role, TotalAmount,
                    OrderDate, ProductId, MinimumQuantity, ProductCategory
    operator:       >, <, =, >=, <=, IN, INCLUDES, EXCLUDES
    value:          string operand; "<productId>|<minQty>" for MinimumQuantity,
                    a JSON array of strings for IN.
    """
    __tablename__ = "voucher_conditions"

    voucher_condition_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    voucher_id = Column(Integer, ForeignKey("vouchers.voucher_id"), nullable=False, index=True)
    condition_type = Column(String(20), nullable=False, index=True)
    field = Column(String(50), nullable=False)
    operator = Column(String(20), nullable=False)
    value = Column(String(255), nullable=False)
    created_date = Column(DateTime, nullable=False, default=utc_now)
    updated_date = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    voucher = relationship("Voucher", back_populates="conditions")
