"""Pydantic schemas for authenticated identities."""
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Account role carried in the access token.

    Attributes:
        ADMIN: Staff account that supervises students.
        STUDENT: Student account; chats with the support admin.
    """
    ADMIN = "admin"
    STUDENT = "student"


class Identity(BaseModel):
    """The authenticated (id, role) pair bound to a connection or request.

    Derived once from a verified token and immutable afterwards.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="User ID from the token")
    role: Role = Field(..., description="User role from the token")
