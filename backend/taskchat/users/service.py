"""UserDirectory: read access to the users table.

Account management lives in the main application; the messaging layer only
needs "does this user exist" and display names. ``create`` exists for seeding
and tests.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from taskchat.auth.schemas import Role
from taskchat.database import Database

from .schemas import User

logger = logging.getLogger(__name__)

_COLUMNS = "id, username, role, university_id, created_at"


class UserDirectory:
    """Lookups against the shared users table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(
        self,
        username: str,
        role: Role,
        university_id: Optional[str] = None,
    ) -> User:
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        row = self._db.fetchone(
            f"""
            INSERT INTO users (username, role, university_id, created_at)
            VALUES (?, ?, ?, ?)
            RETURNING {_COLUMNS}
            """,
            [username, Role(role).value, university_id, now],
        )
        user = self._row_to_user(row)
        logger.info("[Users] Created %s user %s (id=%d)", user.role.value, username, user.id)
        return user

    def get(self, user_id: int) -> Optional[User]:
        row = self._db.fetchone(
            f"SELECT {_COLUMNS} FROM users WHERE id = ?", [user_id]
        )
        return self._row_to_user(row) if row else None

    def exists(self, user_id: int) -> bool:
        row = self._db.fetchone("SELECT 1 FROM users WHERE id = ?", [user_id])
        return row is not None

    def list_by_role(self, role: Role) -> List[User]:
        rows = self._db.fetchall(
            f"SELECT {_COLUMNS} FROM users WHERE role = ? ORDER BY id", [Role(role).value]
        )
        return [self._row_to_user(r) for r in rows]

    @staticmethod
    def _row_to_user(row: tuple) -> User:
        return User(
            id=row[0],
            username=row[1],
            role=Role(row[2]),
            universityId=row[3],
            createdAt=row[4].replace(tzinfo=timezone.utc),
        )
