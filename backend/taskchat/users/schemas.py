"""Pydantic schemas for user records."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from taskchat.auth.schemas import Role


class User(BaseModel):
    """A row of the users table."""
    id: int
    username: str
    role: Role
    universityId: Optional[str] = Field(default=None, description="Student number")
    createdAt: datetime
