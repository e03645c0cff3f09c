from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

import models
from clock import Clock, utc_now
from database import Base
from voucher_service import seed_voucher_categories

# ── File-backed SQLite for tests; scheduler passes open their own sessions from worker threads ──
TEST_DATABASE_URL = "sqlite:///./test_food_delivery.db"

test_engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

FIXED_NOW = datetime(2025, 3, 10, 5, 0, 0)


@pytest.fixture
def db():
    """Fresh tables (with the built-in voucher categories) for each test."""
    Base.metadata.create_all(bind=test_engine)
    session = TestingSessionLocal()
    seed_voucher_categories(session)
    yield session
    session.close()
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def fixed_clock():
    return Clock(7, now=lambda: FIXED_NOW)


# ══════════════════════════════════════════════
#  Factories
# ══════════════════════════════════════════════

@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="Customer", created_at=None, **kwargs):
        counter["n"] += 1
        user = models.User(
            full_name=kwargs.pop("full_name", f"User {counter['n']}"),
            email=kwargs.pop("email", f"user{counter['n']}@example.com"),
            role=role,
            created_at=created_at or utc_now(),
            **kwargs,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_restaurant(db, make_user):
    def _make(seller=None, name="Pho 24"):
        seller = seller or make_user(role="seller")
        restaurant = models.Restaurant(seller_id=seller.user_id, name=name)
        db.add(restaurant)
        db.commit()
        return restaurant

    return _make


@pytest.fixture
def make_order(db):
    def _make(user, restaurant, status="Pending", age=timedelta(0), now=FIXED_NOW, **kwargs):
        order = models.Order(
            user_id=user.user_id,
            restaurant_id=restaurant.restaurant_id,
            status=status,
            order_date=now - age,
            total_amount=kwargs.pop("total_amount", Decimal("150000")),
            **kwargs,
        )
        db.add(order)
        db.commit()
        return order

    return _make


@pytest.fixture
def make_voucher(db):
    def _make(code="SAVE10", category=None, conditions=(), **kwargs):
        fields = dict(
            voucher_type="Percentage",
            discount_amount=Decimal("10"),
            expiration_date=utc_now() + timedelta(days=30),
            status="Active",
            apply_mode="Individual",
        )
        fields.update(kwargs)
        if category is not None:
            fields["voucher_category_id"] = db.scalar(
                select(models.VoucherCategory.voucher_category_id).where(models.VoucherCategory.name == category)
            )
        voucher = models.Voucher(code=code, **fields)
        voucher.conditions = [
            models.VoucherCondition(condition_type=t, field=f, operator=op, value=v)
            for t, f, op, v in conditions
        ]
        db.add(voucher)
        db.commit()
        return voucher

    return _make
