from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from escrow_market.models_sqlalchemy.models import ProductCategory, ProductStatus


class ProductCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    category: ProductCategory
    subcategory: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    sku: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")


class ProductStatusUpdate(BaseModel):
    status: ProductStatus
