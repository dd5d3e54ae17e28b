from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from escrow_market.models.product import ProductCreate, ProductStatusUpdate
from escrow_market.models.user import CurrentUser
from escrow_market.models_sqlalchemy import get_db
from escrow_market.models_sqlalchemy.models import Product
from escrow_market.services import catalog
from escrow_market.services.auth import get_current_active_user, require_seller
from escrow_market.utils.clock import Clock, get_clock


router = APIRouter(prefix="/api/products", tags=["products"])


def _product_summary(product: Product) -> Dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name,
        "price": float(product.price),
        "currency": product.currency,
        "sku": product.sku,
        "stock": product.stock,
        "status": product.status.value,
        "isVerified": bool(product.is_verified),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreate,
    current_user: CurrentUser = Depends(require_seller),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    product = catalog.create_product(db, current_user, payload, clock=clock)
    return {"message": "Product created successfully", "product": _product_summary(product)}


@router.patch("/{product_id}/status")
async def set_product_status(
    product_id: str,
    payload: ProductStatusUpdate,
    current_user: CurrentUser = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    product = catalog.set_product_status(db, current_user, product_id, payload.status)
    return {"message": "Product status updated", "product": _product_summary(product)}
