"""
repositories.py
===============
Thin data-access layer over a SQLAlchemy Session.

OrderRepository is what a scheduler pass works against: one batch query per
pass and one commit covering both the mutated orders and the notifications
created for them. VoucherRepository is the read path of the voucher engine.
"""

from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from clock import utc_now
from schemas import VoucherStatus


class OrderRepository:

    def __init__(self, db: Session):
        self.db = db

    def query_orders(self, *criteria) -> List[models.Order]:
        """Fetch every order matching all `criteria` (SQLAlchemy filter expressions) in one round-trip."""
        return list(self.db.scalars(select(models.Order).where(*criteria)).all())

    def restaurant_owner_id(self, restaurant_id: int) -> Optional[int]:
        return self.db.scalar(
            select(models.Restaurant.seller_id).where(models.Restaurant.restaurant_id == restaurant_id)
        )

    def commit(self, orders: Iterable[models.Order], notifications: Iterable[models.Notification]) -> None:
        """
        Persist the mutated orders and the new notifications in one transaction.
        On failure the session is rolled back and the error re-raised.
        """
        self.db.add_all(list(orders))
        self.db.add_all(list(notifications))
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise


class VoucherRepository:

    def __init__(self, db: Session):
        self.db = db

    def find_active_by_code(self, code: str) -> Optional[models.Voucher]:
        """Active, unexpired voucher with this code (conditions and category loaded)."""
        return self.db.scalar(
            select(models.Voucher).where(
                models.Voucher.code == code,
                models.Voucher.status == VoucherStatus.active.value,
                models.Voucher.expiration_date > utc_now(),
            )
        )

    def find_user(self, user_id: int) -> Optional[models.User]:
        return self.db.get(models.User, user_id)

    def count_orders(self, user_id: int) -> int:
        return self.db.scalar(
            select(func.count()).select_from(models.Order).where(models.Order.user_id == user_id)
        ) or 0

    def list_active_vouchers(self) -> List[models.Voucher]:
        return list(self.db.scalars(
            select(models.Voucher).where(
                models.Voucher.status == VoucherStatus.active.value,
                models.Voucher.expiration_date > utc_now(),
            )
        ).unique().all())

    def list_vouchers(self, status: Optional[str] = None, category_name: Optional[str] = None) -> List[models.Voucher]:
        query = select(models.Voucher)
        if status:
            query = query.where(models.Voucher.status == status)
        if category_name:
            query = query.join(models.Voucher.category).where(models.VoucherCategory.name == category_name)
        return list(self.db.scalars(query).unique().all())

    def get_voucher(self, voucher_id: int) -> Optional[models.Voucher]:
        return self.db.get(models.Voucher, voucher_id)

    def code_exists(self, code: str, exclude_voucher_id: Optional[int] = None) -> bool:
        query = select(models.Voucher.voucher_id).where(models.Voucher.code == code)
        if exclude_voucher_id is not None:
            query = query.where(models.Voucher.voucher_id != exclude_voucher_id)
        return self.db.scalar(query.limit(1)) is not None

    def list_categories(self) -> List[models.VoucherCategory]:
        return list(self.db.scalars(
            select(models.VoucherCategory).order_by(models.VoucherCategory.voucher_category_id)
        ).all())
