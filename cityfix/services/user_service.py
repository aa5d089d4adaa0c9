import logging
from typing import Any, Dict, List, Optional

from cityfix.core.config import USERS
from cityfix.core.errors import NotAuthorized, ValidationError
from cityfix.models.user_model import Role
from cityfix.services.audit_service import AuditService
from cityfix.services.document_store import DocumentStore

logger = logging.getLogger(__name__)


class UserService:
    """Admin user management. Admin accounts themselves cannot be changed here."""

    def __init__(self, store: DocumentStore, audit: Optional[AuditService] = None):
        self.store = store
        self.audit = audit

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        user = await self.store.get(USERS, user_id)
        if user is None:
            raise ValidationError(f"User {user_id} not found")
        return user

    async def get_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        users = await self.store.find(USERS, {"email": email.strip().lower()}, limit=1)
        return users[0] if users else None

    async def list_users(self, role: Optional[str] = None) -> List[Dict[str, Any]]:
        filters = {}
        if role:
            try:
                filters["role"] = Role(role).value
            except ValueError:
                raise ValidationError(f"Unknown role '{role}'")
        return await self.store.find(USERS, filters, sort=[("email", 1)])

    async def list_engineers(self) -> List[Dict[str, Any]]:
        return await self.store.find(
            USERS, {"role": Role.ENGINEER.value, "disabled": {"$ne": True}}, sort=[("name", 1)]
        )

    async def _editable(self, actor: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        if actor.get("role") != Role.ADMIN.value:
            raise NotAuthorized("Admin access required")
        user = await self.get_user(user_id)
        if user.get("role") == Role.ADMIN.value:
            raise NotAuthorized("Admin accounts cannot be modified")
        return user

    async def change_role(self, actor: Dict[str, Any], user_id: str, role: Role) -> Dict[str, Any]:
        user = await self._editable(actor, user_id)
        role = Role(role)
        if role == Role.ADMIN:
            raise NotAuthorized("Users cannot be promoted to admin")

        await self.store.update(USERS, user_id, {"role": role.value})
        logger.info(f"👤 User {user_id} role {user.get('role')} -> {role.value}")
        if self.audit:
            await self.audit.log_action(
                actor, "user_role_changed", None, f"{user.get('email')}: {user.get('role')} -> {role.value}"
            )
        return {**user, "role": role.value}

    async def set_disabled(self, actor: Dict[str, Any], user_id: str, disabled: bool) -> Dict[str, Any]:
        user = await self._editable(actor, user_id)

        await self.store.update(USERS, user_id, {"disabled": bool(disabled)})
        logger.info(f"👤 User {user_id} {'disabled' if disabled else 'enabled'}")
        if self.audit:
            await self.audit.log_action(
                actor,
                "user_disabled" if disabled else "user_enabled",
                None,
                f"{user.get('email')}",
            )
        return {**user, "disabled": bool(disabled)}

    async def set_push_token(self, user_id: str, token: Optional[str]) -> bool:
        return await self.store.update(USERS, user_id, {"expoPushToken": token})
