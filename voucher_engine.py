"""
voucher_engine.py
=================
Core business logic for voucher eligibility, condition evaluation and
discount computation. Nothing in here touches the database; callers pass in
already-loaded ORM objects (or anything with the same attributes).

Implemented Cases:
------------------
1. Eligibility for display (is_voucher_eligible):
   - Individual mode, owned by the caller or public (no user_id).
   - Condition mode, Free Shipping category with no conditions (public).
   - Condition mode with conditions: every User-type condition must hold.

2. Condition evaluation, dispatched on (condition type, field):
   - User/JoinDate:          >, < chronological; = calendar date only.
   - User/TotalOrders:       >, >=, <, <=, =.
   - User/UserCategory|Role: = exact match; IN against a JSON array.
   - Order/TotalAmount:      >, >=, <, <=, =.
   - Order/OrderDate:        >, < chronological; = calendar date only.
   - Product/ProductId:      INCLUDES / EXCLUDES against order lines.
   - Product/MinimumQuantity: "<productId>|<minQty>", summed over lines.
   All conditions are AND-combined. Unknown type/field/operator combinations
   and malformed operands evaluate to False.

3. Discount:
   - Fixed:      flat discount_amount.
   - Percentage: order_total * discount_amount / 100, capped by
                 maximum_discount_amount when set.

Unimplemented / Noted Cases:
-----------------------------
- Product/ProductCategory always evaluates True. Checking it needs product
  categories loaded in batch during order processing.
- Order and Product conditions cannot be checked before an order exists;
  validation defers them to evaluate_order_voucher_conditions().
"""

import json
import logging
import operator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from clock import as_naive_utc
from schemas import (
    ApplyMode,
    ConditionField,
    ConditionOperator,
    ConditionType,
    VoucherCategoryName,
    VoucherType,
)

logger = logging.getLogger(__name__)


class MalformedConditionValue(ValueError):
    """A stored condition operand cannot be parsed for its field."""


@dataclass
class EvaluationContext:
    """What a condition may be evaluated against. Order-time fields stay None during pre-validation."""
    user: object = None
    user_order_count: int = 0
    order: object = None
    order_details: List[object] = field(default_factory=list)


# ─────────────────────────── Operand parsing ───────────────────────────

def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _parse_datetime(raw: str) -> datetime:
    try:
        return as_naive_utc(datetime.fromisoformat(raw.strip()))
    except (ValueError, AttributeError):
        raise MalformedConditionValue(f"Not a date: {raw!r}")


def _parse_int(raw: str) -> int:
    try:
        return int(raw.strip())
    except (ValueError, AttributeError):
        raise MalformedConditionValue(f"Not an integer: {raw!r}")


def _parse_decimal(raw: str) -> Decimal:
    try:
        value = Decimal(raw.strip())
    except (InvalidOperation, AttributeError):
        raise MalformedConditionValue(f"Not a number: {raw!r}")
    # NaN / Infinity parse fine but NaN cannot be ordered
    if not value.is_finite():
        raise MalformedConditionValue(f"Not a finite number: {raw!r}")
    return value


def _parse_min_quantity(raw: str) -> Tuple[int, int]:
    parts = raw.split("|")
    if len(parts) != 2:
        raise MalformedConditionValue(f"Expected '<productId>|<minQty>': {raw!r}")
    return _parse_int(parts[0]), _parse_int(parts[1])


def _parse_string_list(raw: str) -> List[str]:
    try:
        values = json.loads(raw)
    except ValueError:
        raise MalformedConditionValue(f"Not a JSON array: {raw!r}")
    if not isinstance(values, list):
        raise MalformedConditionValue(f"Not a JSON array: {raw!r}")
    return values


# ─────────────────────────── Comparisons ───────────────────────────

_NUMERIC_OPERATORS: Dict[ConditionOperator, Callable] = {
    ConditionOperator.gt: operator.gt,
    ConditionOperator.ge: operator.ge,
    ConditionOperator.lt: operator.lt,
    ConditionOperator.le: operator.le,
    ConditionOperator.eq: operator.eq,
}

_DATE_OPERATORS: Dict[ConditionOperator, Callable] = {
    ConditionOperator.gt: operator.gt,
    ConditionOperator.lt: operator.lt,
    ConditionOperator.eq: lambda actual, expected: actual.date() == expected.date(),
}


def _compare(table: Dict[ConditionOperator, Callable], op: ConditionOperator, actual, expected) -> bool:
    compare = table.get(op)
    if compare is None:
        return False
    return compare(actual, expected)


# ─────────────────────────── Field evaluators ───────────────────────────

def _eval_join_date(op: ConditionOperator, raw: str, ctx: EvaluationContext) -> bool:
    return _compare(_DATE_OPERATORS, op, as_naive_utc(ctx.user.created_at), _parse_datetime(raw))


def _eval_total_orders(op: ConditionOperator, raw: str, ctx: EvaluationContext) -> bool:
    return _compare(_NUMERIC_OPERATORS, op, ctx.user_order_count, _parse_int(raw))


def _eval_role(op: ConditionOperator, raw: str, ctx: EvaluationContext) -> bool:
    role = ctx.user.role
    if op == ConditionOperator.eq:
        return role == raw
    if op == ConditionOperator.in_:
        return role in _parse_string_list(raw)
    return False


def _eval_total_amount(op: ConditionOperator, raw: str, ctx: EvaluationContext) -> bool:
    return _compare(_NUMERIC_OPERATORS, op, _to_decimal(ctx.order.total_amount), _parse_decimal(raw))


def _eval_order_date(op: ConditionOperator, raw: str, ctx: EvaluationContext) -> bool:
    return _compare(_DATE_OPERATORS, op, as_naive_utc(ctx.order.order_date), _parse_datetime(raw))


def _eval_product_id(op: ConditionOperator, raw: str, ctx: EvaluationContext) -> bool:
    product_id = _parse_int(raw)
    product_exists = any(d.product_id == product_id for d in ctx.order_details)
    if op == ConditionOperator.includes:
        return product_exists
    if op == ConditionOperator.excludes:
        return not product_exists
    return False


def _eval_minimum_quantity(op: ConditionOperator, raw: str, ctx: EvaluationContext) -> bool:
    product_id, min_quantity = _parse_min_quantity(raw)
    quantity = sum(d.quantity for d in ctx.order_details if d.product_id == product_id)
    return quantity >= min_quantity


def _eval_product_category(op: ConditionOperator, raw: str, ctx: EvaluationContext) -> bool:
    logger.warning(f"ProductCategory condition is not evaluated yet; treating {raw!r} as satisfied")
    return True


_FIELD_EVALUATORS: Dict[Tuple[ConditionType, ConditionField], Callable] = {
    (ConditionType.user, ConditionField.join_date): _eval_join_date,
    (ConditionType.user, ConditionField.total_orders): _eval_total_orders,
    (ConditionType.user, ConditionField.user_category): _eval_role,
    (ConditionType.user, ConditionField.role): _eval_role,
    (ConditionType.order, ConditionField.total_amount): _eval_total_amount,
    (ConditionType.order, ConditionField.order_date): _eval_order_date,
    (ConditionType.product, ConditionField.product_id): _eval_product_id,
    (ConditionType.product, ConditionField.minimum_quantity): _eval_minimum_quantity,
    (ConditionType.product, ConditionField.product_category): _eval_product_category,
}


def evaluate_condition(condition, ctx: EvaluationContext) -> bool:
    """
    Evaluate one stored condition. Fails closed: an unknown type, field or
    operator, a combination with no evaluator, or an unparseable operand all
    yield False.
    """
    try:
        key = (ConditionType(condition.condition_type), ConditionField(condition.field))
        op = ConditionOperator(condition.operator)
    except ValueError:
        return False

    evaluator = _FIELD_EVALUATORS.get(key)
    if evaluator is None:
        return False

    try:
        return evaluator(op, condition.value, ctx)
    except MalformedConditionValue as e:
        logger.warning(f"Voucher condition {getattr(condition, 'voucher_condition_id', None)} has a malformed value: {e}")
        return False


def _evaluate_conditions(conditions: Iterable, types: Iterable[ConditionType], ctx: EvaluationContext) -> bool:
    """AND-combine the conditions whose type is in `types`; other types are skipped."""
    wanted = {t.value for t in types}
    for condition in conditions:
        if condition.condition_type not in wanted:
            continue
        if not evaluate_condition(condition, ctx):
            return False
    return True


# ─────────────────────────── Phases ───────────────────────────

def evaluate_user_conditions(voucher, user, user_order_count: int) -> bool:
    """
    Pre-validation phase: only User-type conditions can be resolved without
    an order. No conditions => True.
    """
    ctx = EvaluationContext(user=user, user_order_count=user_order_count)
    return _evaluate_conditions(voucher.conditions or [], [ConditionType.user], ctx)


def evaluate_order_voucher_conditions(voucher, order, order_details: List) -> bool:
    """
    Order-time phase: re-check Order- and Product-type conditions once the
    order and its lines exist. User conditions were checked earlier and are
    skipped. No conditions => True.
    """
    ctx = EvaluationContext(order=order, order_details=list(order_details or []))
    return _evaluate_conditions(
        voucher.conditions or [], [ConditionType.order, ConditionType.product], ctx
    )


def is_voucher_eligible(voucher, user, user_order_count: int) -> bool:
    """Whether `user` may see/redeem `voucher`, independent of any order."""
    conditions = voucher.conditions or []

    if voucher.apply_mode == ApplyMode.individual.value:
        if voucher.user_id == user.user_id or voucher.user_id is None:
            return True

    if voucher.apply_mode == ApplyMode.condition.value:
        if voucher.category_name == VoucherCategoryName.free_shipping.value and not conditions:
            return True
        if conditions:
            return evaluate_user_conditions(voucher, user, user_order_count)

    return False


# ─────────────────────────── Discount ───────────────────────────

def compute_discount(voucher, order_total: Decimal) -> Decimal:
    """
    Fixed      -> discount_amount.
    Percentage -> min(order_total * discount_amount / 100, maximum_discount_amount or no cap).
    """
    amount = _to_decimal(voucher.discount_amount)
    if voucher.voucher_type == VoucherType.fixed.value:
        return amount

    discount = _to_decimal(order_total) * amount / 100
    if voucher.maximum_discount_amount is not None:
        discount = min(discount, _to_decimal(voucher.maximum_discount_amount))
    return discount


# ─────────────────────────── Expiry Check ───────────────────────────

def is_voucher_expired(expiration_date, now: Optional[datetime] = None) -> bool:
    if expiration_date is None:
        return False
    if now is None:
        now = datetime.now(timezone.utc)
    return as_naive_utc(expiration_date) <= as_naive_utc(now)
