# HTTP surface for the provenance ledger
from .routes import router

__all__ = ["router"]
