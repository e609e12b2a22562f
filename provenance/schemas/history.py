"""
Ownership History Schema

One record per transfer, including the initial manufacturing entry.
Records are never edited; only is_visible may be toggled by the owner.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .principal import Role


INITIAL_MANUFACTURING = "Initial manufacturing"


class OwnershipRecord(BaseModel):
    """An entry in a product's append-only chain of custody."""
    sequence: int = Field(
        ...,
        ge=0,
        description="Position in the product's history (0 = manufacture)"
    )
    owner: str
    role: Role = Field(
        ...,
        description="Role the owner held at the time of transfer"
    )
    transferred_at: datetime
    details: str = ""
    is_visible: bool = True
