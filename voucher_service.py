"""
voucher_service.py
==================
Voucher operations used by checkout and by the admin screens.

Every public method returns a result tuple carrying a user-facing message
instead of raising: checkout surfaces the message as the rejection reason,
and admin writes report (success, message). Multi-row writes (a voucher and
its conditions) go through a single commit and are rolled back as a unit.
"""

import logging
import secrets
import string
from decimal import Decimal
from enum import Enum
from typing import List, NamedTuple, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import voucher_engine
from clock import as_naive_utc
from config import settings
from repositories import VoucherRepository
from schemas import VoucherCategoryName, VoucherCreate, VoucherUpdate, VoucherConditionCreate

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits

DEFAULT_CATEGORIES = {
    VoucherCategoryName.user: "Issued to one specific user",
    VoucherCategoryName.restaurant: "Valid at one restaurant",
    VoucherCategoryName.product: "Valid when the order contains one product",
    VoucherCategoryName.free_shipping: "Covers the shipping fee",
}

MSG_INVALID_CODE = "Invalid or expired voucher code."
MSG_USER_NOT_FOUND = "User not found."
MSG_NOT_OWNER = "This voucher does not belong to you."
MSG_WRONG_RESTAURANT = "This voucher does not apply to this restaurant."
MSG_WRONG_PRODUCTS = "This voucher does not apply to the products in this order."
MSG_NOT_ELIGIBLE = "You are not eligible to use this voucher."
MSG_USAGE_EXHAUSTED = "This voucher has reached its usage limit."
MSG_VALID = "Voucher is valid."
MSG_VALIDATION_ERROR = "An error occurred while validating the voucher. Please try again later."
MSG_LIST_ERROR = "An error occurred while loading vouchers. Please try again later."
MSG_VOUCHER_NOT_FOUND = "Voucher not found."


def minimum_order_message(minimum: Decimal) -> str:
    return f"Order total must be at least {Decimal(minimum):,.0f} to use this voucher."


class EligibleVouchers(NamedTuple):
    vouchers: List[models.Voucher]
    error: Optional[str] = None


class VoucherValidationResult(NamedTuple):
    is_valid: bool
    message: str
    discount_amount: Decimal
    voucher: Optional[models.Voucher] = None


class VoucherWriteResult(NamedTuple):
    success: bool
    message: str
    voucher: Optional[models.Voucher] = None


def _rejected(message: str) -> VoucherValidationResult:
    return VoucherValidationResult(False, message, Decimal("0"), None)


def _column_value(value):
    if isinstance(value, Enum):
        return value.value
    return value


def _build_condition(data: VoucherConditionCreate) -> models.VoucherCondition:
    return models.VoucherCondition(
        condition_type=data.condition_type.value,
        field=data.field.value,
        operator=data.operator.value,
        value=data.value,
    )


def seed_voucher_categories(db: Session) -> None:
    """Insert the built-in voucher categories that are missing."""
    existing = {c.name for c in VoucherRepository(db).list_categories()}
    for name, description in DEFAULT_CATEGORIES.items():
        if name.value not in existing:
            db.add(models.VoucherCategory(name=name.value, description=description))
    db.commit()


class VoucherService:

    def __init__(self, db: Session):
        self.db = db
        self.repo = VoucherRepository(db)

    # ═══════════════════════════════════════════════════
    #  USER-FACING
    # ═══════════════════════════════════════════════════

    def list_eligible_vouchers(self, user_id: int) -> EligibleVouchers:
        """All active, unexpired vouchers the user may currently redeem."""
        try:
            user = self.repo.find_user(user_id)
            if user is None:
                return EligibleVouchers([], MSG_USER_NOT_FOUND)

            user_order_count = self.repo.count_orders(user_id)
            vouchers = [
                v for v in self.repo.list_active_vouchers()
                if voucher_engine.is_voucher_eligible(v, user, user_order_count)
            ]
            return EligibleVouchers(vouchers, None)
        except Exception:
            logger.exception(f"Error listing eligible vouchers for user {user_id}")
            return EligibleVouchers([], MSG_LIST_ERROR)

    def validate_for_order(
        self,
        code: str,
        user_id: int,
        order_total: Decimal,
        restaurant_id: int,
        product_ids: Optional[List[int]] = None,
    ) -> VoucherValidationResult:
        """
        Check `code` against a checkout attempt. Checks run in order and stop
        at the first failure:
          1. voucher exists, is active and unexpired
          2. user exists
          3. category ownership (User / Restaurant / Product)
          4. User-type conditions
          5. minimum order amount
          6. remaining usage
        then the discount is computed.
        """
        try:
            voucher = self.repo.find_active_by_code(code)
            if voucher is None:
                return _rejected(MSG_INVALID_CODE)

            user = self.repo.find_user(user_id)
            if user is None:
                return _rejected(MSG_USER_NOT_FOUND)

            user_order_count = self.repo.count_orders(user_id)

            category = voucher.category_name
            if category == VoucherCategoryName.user.value:
                if voucher.user_id != user_id:
                    return _rejected(MSG_NOT_OWNER)
            elif category == VoucherCategoryName.restaurant.value:
                if voucher.restaurant_id != restaurant_id:
                    return _rejected(MSG_WRONG_RESTAURANT)
            elif category == VoucherCategoryName.product.value:
                if product_ids is not None and voucher.product_id not in product_ids:
                    return _rejected(MSG_WRONG_PRODUCTS)

            if voucher.conditions:
                if not voucher_engine.evaluate_user_conditions(voucher, user, user_order_count):
                    return _rejected(MSG_NOT_ELIGIBLE)

            order_total = Decimal(str(order_total))
            if voucher.minimum_order_amount is not None and order_total < voucher.minimum_order_amount:
                return _rejected(minimum_order_message(voucher.minimum_order_amount))

            if voucher.usage_limit is not None and voucher.usage_limit <= 0:
                return _rejected(MSG_USAGE_EXHAUSTED)

            discount = voucher_engine.compute_discount(voucher, order_total)
            return VoucherValidationResult(True, MSG_VALID, discount, voucher)
        except Exception:
            logger.exception(f"Error validating voucher {code}")
            return _rejected(MSG_VALIDATION_ERROR)

    def evaluate_order_voucher_conditions(self, voucher: models.Voucher, order: models.Order,
                                          order_details: List[models.OrderDetail]) -> bool:
        return voucher_engine.evaluate_order_voucher_conditions(voucher, order, order_details)

    def redeem_voucher(self, voucher: models.Voucher, order: models.Order,
                       order_details: List[models.OrderDetail], discount_amount: Decimal) -> VoucherWriteResult:
        """
        Apply an already validated voucher to a freshly built order: re-check
        Order/Product conditions, consume one use and record the discount.
        Runs inside the caller's transaction; the caller commits.
        """
        if not self.evaluate_order_voucher_conditions(voucher, order, order_details):
            return VoucherWriteResult(False, MSG_NOT_ELIGIBLE, voucher)

        if voucher.usage_limit is not None:
            if voucher.usage_limit <= 0:
                return VoucherWriteResult(False, MSG_USAGE_EXHAUSTED, voucher)
            voucher.usage_limit -= 1

        order.discount_amount = discount_amount
        self.db.add(voucher)
        self.db.add(order)
        logger.info(f"Voucher {voucher.code} applied to order {order.order_id}, discount {discount_amount}")
        return VoucherWriteResult(True, MSG_VALID, voucher)

    # ═══════════════════════════════════════════════════
    #  ADMIN
    # ═══════════════════════════════════════════════════

    def get_all_vouchers(self, status: Optional[str] = None, category_name: Optional[str] = None):
        try:
            return self.repo.list_vouchers(status, category_name), None
        except SQLAlchemyError:
            logger.exception("Error retrieving vouchers with admin filters")
            return [], MSG_LIST_ERROR

    def get_voucher_by_id(self, voucher_id: int):
        try:
            voucher = self.repo.get_voucher(voucher_id)
        except SQLAlchemyError:
            logger.exception(f"Error retrieving voucher {voucher_id}")
            return None, MSG_LIST_ERROR
        if voucher is None:
            return None, MSG_VOUCHER_NOT_FOUND
        return voucher, None

    def create_voucher(self, data: VoucherCreate) -> VoucherWriteResult:
        code = (data.code or "").strip()
        if not code:
            return VoucherWriteResult(False, "Voucher code must not be empty.")

        try:
            if self.repo.code_exists(code):
                return VoucherWriteResult(False, "Voucher code already exists.")
            if voucher_engine.is_voucher_expired(data.expiration_date):
                return VoucherWriteResult(False, "Expiration date must be in the future.")

            fields = data.model_dump(exclude={"code", "conditions", "expiration_date"})
            voucher = models.Voucher(
                code=code,
                expiration_date=as_naive_utc(data.expiration_date),
                **{k: _column_value(v) for k, v in fields.items()},
            )
            voucher.conditions = [_build_condition(c) for c in data.conditions]

            self.db.add(voucher)
            self.db.commit()
            self.db.refresh(voucher)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Error creating voucher {code}")
            return VoucherWriteResult(False, "An error occurred while creating the voucher. Please try again later.")

        logger.info(f"Created voucher {voucher.voucher_id} ({voucher.code})")
        return VoucherWriteResult(True, "Voucher created successfully.", voucher)

    def update_voucher(self, voucher_id: int, data: VoucherUpdate) -> VoucherWriteResult:
        try:
            voucher = self.repo.get_voucher(voucher_id)
            if voucher is None:
                return VoucherWriteResult(False, MSG_VOUCHER_NOT_FOUND)

            changes = data.model_dump(exclude_unset=True, exclude={"update_conditions", "conditions"})

            new_code = (changes.pop("code", None) or "").strip()
            if new_code and new_code != voucher.code and \
                    self.repo.code_exists(new_code, exclude_voucher_id=voucher_id):
                return VoucherWriteResult(False, "Voucher code already exists.")

            if new_code:
                voucher.code = new_code
            for name, value in changes.items():
                if name == "expiration_date" and value is not None:
                    value = as_naive_utc(value)
                setattr(voucher, name, _column_value(value))

            if data.update_conditions:
                voucher.conditions = [_build_condition(c) for c in data.conditions]

            self.db.commit()
            self.db.refresh(voucher)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Error updating voucher {voucher_id}")
            return VoucherWriteResult(False, "An error occurred while updating the voucher. Please try again later.")

        return VoucherWriteResult(True, "Voucher updated successfully.", voucher)

    def delete_voucher(self, voucher_id: int) -> VoucherWriteResult:
        try:
            voucher = self.repo.get_voucher(voucher_id)
            if voucher is None:
                return VoucherWriteResult(False, MSG_VOUCHER_NOT_FOUND)

            # conditions go with it (delete-orphan cascade)
            self.db.delete(voucher)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Error deleting voucher {voucher_id}")
            return VoucherWriteResult(False, "An error occurred while deleting the voucher. Please try again later.")

        return VoucherWriteResult(True, "Voucher deleted successfully.")

    def get_voucher_categories(self) -> List[models.VoucherCategory]:
        try:
            return self.repo.list_categories()
        except SQLAlchemyError:
            logger.exception("Error retrieving voucher categories")
            return []

    def generate_unique_voucher_code(self, length: Optional[int] = None) -> str:
        length = length or settings.VOUCHER_CODE_LENGTH
        while True:
            code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
            if not self.repo.code_exists(code):
                return code
