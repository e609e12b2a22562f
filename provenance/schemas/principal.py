"""
Canonical Principal Schema

A principal is an opaque, already-authenticated identity handle.
The ledger only records which role it holds.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    """
    Supply chain roles.
    A principal holds exactly one at a time.
    """
    NONE = "none"
    MANUFACTURER = "manufacturer"
    RETAILER = "retailer"
    CUSTOMER = "customer"
    SERVICE_CENTER = "service_center"


class Principal(BaseModel):
    """
    Registry entry for a principal.

    Created implicitly on first role assignment. Never deleted, only reassigned.
    Service center authorization is tracked separately from the role because
    it can be granted on its own.
    """
    principal_id: str = Field(
        ...,
        min_length=1,
        description="Opaque identity handle"
    )

    role: Role = Field(
        default=Role.NONE,
        description="Currently assigned role"
    )

    is_service_center: bool = Field(
        default=False,
        description="Authorized to process claims and log service actions"
    )

    assigned_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
