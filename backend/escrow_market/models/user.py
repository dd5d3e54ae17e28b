from pydantic import BaseModel, ConfigDict
from typing import Optional

from escrow_market.models_sqlalchemy.models import UserRole


class CurrentUser(BaseModel):
    """Authenticated actor handed to services by the API layer."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    role: UserRole = UserRole.customer
    is_active: bool = True
    phone: Optional[str] = None
