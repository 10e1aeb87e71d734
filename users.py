import logging
from typing import Optional

from auth import require_role, user_out
from catalog import check_page, pagination
from errors import InvalidArgument, NotFound
from schemas import Role
from store import Store

logger = logging.getLogger(__name__)


class UserAdminService:
    """Back-office user management. Every call takes the acting admin."""

    def __init__(self, store: Store):
        self.store = store

    def list_users(self, admin: dict, role: Optional[Role] = None, search: Optional[str] = None,
                   page: int = 1, limit: int = 10) -> dict:
        require_role(admin, Role.ADMIN)
        check_page(page, limit)
        docs, total = self.store.list_users(
            role=role.value if role else None, search=search, skip=(page - 1) * limit, limit=limit
        )
        return {"users": [user_out(u) for u in docs], "pagination": pagination(page, limit, total)}

    def update_role(self, user_id: str, role: Role, admin: dict) -> dict:
        require_role(admin, Role.ADMIN)
        if user_id == admin["_id"]:
            raise InvalidArgument("Cannot change your own role")
        user = self.store.get_user(user_id)
        if not user:
            raise NotFound("User not found")
        updated = self.store.update_user(user_id, {"role": role.value})
        logger.info("User role updated: %s -> %s by admin %s", user["email"], role.value, admin["_id"])
        return user_out(updated)

    def delete_user(self, user_id: str, admin: dict) -> None:
        require_role(admin, Role.ADMIN)
        if user_id == admin["_id"]:
            raise InvalidArgument("Cannot delete your own account")
        user = self.store.get_user(user_id)
        if not user:
            raise NotFound("User not found")
        self.store.delete_user(user_id)
        logger.info("User deleted: %s by admin %s", user["email"], admin["_id"])
