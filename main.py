"""
main.py
=======
FastAPI application entry point.

On startup the tables are created, the voucher categories seeded and the
order lifecycle scheduler started; it is stopped again on shutdown.

Endpoints:
  GET    /vouchers                  - List vouchers (admin; optional status / category filters)
  GET    /vouchers/categories       - List voucher categories
  GET    /vouchers/generate-code    - Generate an unused voucher code
  GET    /vouchers/eligible         - Vouchers a user may currently redeem
  POST   /vouchers/validate         - Validate a voucher code for a checkout attempt
  GET    /vouchers/{id}             - Get voucher by ID
  POST   /vouchers                  - Create a voucher with its conditions
  PUT    /vouchers/{id}             - Update a voucher
  DELETE /vouchers/{id}             - Delete a voucher and its conditions
  WS     /ws/notifications          - Real-time notifications for a user / restaurant
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

import schemas
from config import settings
from database import SessionLocal, create_db_and_tables, get_db
from notifier import manager, restaurant_group
from order_scheduler import OrderLifecycleScheduler, build_default_tasks
from voucher_service import MSG_VOUCHER_NOT_FOUND, VoucherService, seed_voucher_categories

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    with SessionLocal() as db:
        seed_voucher_categories(db)
    logger.info("Database created and voucher categories ensured.")

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = OrderLifecycleScheduler(build_default_tasks(notifier=manager))
        scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()


app = FastAPI(
    title="Food Delivery Orders & Vouchers API",
    description="Voucher eligibility, validation and administration for a food-delivery platform, "
                "with background order lifecycle tasks.",
    version="1.0.0",
    lifespan=lifespan,
)


def get_voucher_service(db: Session = Depends(get_db)) -> VoucherService:
    return VoucherService(db)


# ═══════════════════════════════════════════════════
#  VOUCHER ADMIN
# ═══════════════════════════════════════════════════

@app.get(
    "/vouchers",
    response_model=List[schemas.VoucherResponse],
    tags=["Vouchers"],
    summary="Get all vouchers",
)
def get_all_vouchers(
    voucher_status: Optional[schemas.VoucherStatus] = Query(None, alias="status"),
    category: Optional[schemas.VoucherCategoryName] = None,
    service: VoucherService = Depends(get_voucher_service),
):
    """Retrieve all vouchers, optionally filtered by status and category name."""
    vouchers, error = service.get_all_vouchers(
        voucher_status.value if voucher_status else None,
        category.value if category else None,
    )
    if error:
        raise HTTPException(status_code=500, detail=error)
    return vouchers


@app.get(
    "/vouchers/categories",
    response_model=List[schemas.VoucherCategoryResponse],
    tags=["Vouchers"],
    summary="Get voucher categories",
)
def get_voucher_categories(service: VoucherService = Depends(get_voucher_service)):
    return service.get_voucher_categories()


@app.get(
    "/vouchers/generate-code",
    response_model=schemas.GeneratedCodeResponse,
    tags=["Vouchers"],
    summary="Generate an unused voucher code",
)
def generate_voucher_code(service: VoucherService = Depends(get_voucher_service)):
    return schemas.GeneratedCodeResponse(code=service.generate_unique_voucher_code())


# ═══════════════════════════════════════════════════
#  ELIGIBILITY / VALIDATION
# ═══════════════════════════════════════════════════

@app.get(
    "/vouchers/eligible",
    response_model=schemas.EligibleVouchersResponse,
    tags=["Apply Vouchers"],
    summary="Vouchers a user may currently redeem",
)
def get_eligible_vouchers(user_id: int, service: VoucherService = Depends(get_voucher_service)):
    """
    Returns every active, unexpired voucher the user is eligible for:
    their own or public Individual vouchers, Free Shipping vouchers without
    conditions, and Condition vouchers whose user conditions all hold.
    """
    vouchers, error = service.list_eligible_vouchers(user_id)
    return schemas.EligibleVouchersResponse(
        success=error is None,
        message=error,
        vouchers=[schemas.VoucherResponse.model_validate(v) for v in vouchers],
    )


@app.post(
    "/vouchers/validate",
    response_model=schemas.ValidateVoucherResponse,
    tags=["Apply Vouchers"],
    summary="Validate a voucher code for a checkout attempt",
)
def validate_voucher(request: schemas.ValidateVoucherRequest, service: VoucherService = Depends(get_voucher_service)):
    """
    Runs the checkout checks (code, user, category ownership, conditions,
    minimum order amount, remaining usage) and returns the discount the
    voucher would give. A rejection is a 200 with is_valid=false and the reason.
    """
    is_valid, message, discount, voucher = service.validate_for_order(
        request.voucher_code,
        request.user_id,
        request.order_total,
        request.restaurant_id,
        request.product_ids,
    )
    if not is_valid:
        return schemas.ValidateVoucherResponse(is_valid=False, message=message, discount_amount=Decimal("0"))

    return schemas.ValidateVoucherResponse(
        is_valid=True,
        message=message,
        discount_amount=discount,
        voucher_type=voucher.voucher_type,
        category_name=voucher.category_name,
    )


# ═══════════════════════════════════════════════════
#  VOUCHER CRUD
# ═══════════════════════════════════════════════════

@app.get(
    "/vouchers/{voucher_id}",
    response_model=schemas.VoucherResponse,
    tags=["Vouchers"],
    summary="Get a voucher by ID",
)
def get_voucher(voucher_id: int, service: VoucherService = Depends(get_voucher_service)):
    voucher, error = service.get_voucher_by_id(voucher_id)
    if error == MSG_VOUCHER_NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Voucher with id={voucher_id} not found")
    if error:
        raise HTTPException(status_code=500, detail=error)
    return voucher


@app.post(
    "/vouchers",
    response_model=schemas.VoucherWriteResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Vouchers"],
    summary="Create a new voucher",
)
def create_voucher(voucher: schemas.VoucherCreate, service: VoucherService = Depends(get_voucher_service)):
    """
    Create a voucher together with its conditions, in one transaction.
    - **Fixed**: flat amount off.
    - **Percentage**: percent off, optionally capped by maximum_discount_amount.
    """
    success, message, created = service.create_voucher(voucher)
    if not success:
        raise HTTPException(status_code=400, detail=message)
    return schemas.VoucherWriteResponse(
        success=True, message=message, voucher=schemas.VoucherResponse.model_validate(created)
    )


@app.put(
    "/vouchers/{voucher_id}",
    response_model=schemas.VoucherWriteResponse,
    tags=["Vouchers"],
    summary="Update a voucher",
)
def update_voucher(voucher_id: int, update_data: schemas.VoucherUpdate,
                   service: VoucherService = Depends(get_voucher_service)):
    """
    Update a voucher. Only provided fields are updated; set update_conditions
    to replace the whole condition set.
    """
    success, message, updated = service.update_voucher(voucher_id, update_data)
    if not success:
        code = 404 if message == MSG_VOUCHER_NOT_FOUND else 400
        raise HTTPException(status_code=code, detail=message)
    return schemas.VoucherWriteResponse(
        success=True, message=message, voucher=schemas.VoucherResponse.model_validate(updated)
    )


@app.delete(
    "/vouchers/{voucher_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Vouchers"],
    summary="Delete a voucher",
)
def delete_voucher(voucher_id: int, service: VoucherService = Depends(get_voucher_service)):
    success, message, _ = service.delete_voucher(voucher_id)
    if not success:
        code = 404 if message == MSG_VOUCHER_NOT_FOUND else 400
        raise HTTPException(status_code=code, detail=message)
    return None


# ═══════════════════════════════════════════════════
#  REAL-TIME NOTIFICATIONS
# ═══════════════════════════════════════════════════

@app.websocket("/ws/notifications")
async def notifications_websocket(
    websocket: WebSocket,
    user_id: int = Query(...),
    restaurant_id: Optional[int] = Query(None),
):
    """Receives pushes for `user_id`; restaurant owners also join their restaurant's group."""
    await manager.connect(websocket, user_id)
    if restaurant_id is not None:
        manager.join_group(websocket, restaurant_group(restaurant_id))

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Notification socket closed for user {user_id}")
    finally:
        manager.disconnect(websocket, user_id)


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": "Food Delivery Orders & Vouchers API is running"}
