"""User lookups for the messaging layer."""

from .schemas import User
from .service import UserDirectory

__all__ = ["User", "UserDirectory"]
