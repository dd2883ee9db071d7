from typing import Optional

from .config import Settings, get_settings
from .errors import PermissionDeniedError
from .store import DocumentStore


class Session:
    """The store handle plus whoever is signed in, passed explicitly to every service."""

    def __init__(self, store: DocumentStore, user_id: Optional[str] = None,
                 settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()
        self._user_id = user_id

    def current_authenticated_user(self) -> Optional[str]:
        return self._user_id

    def is_admin(self, user_id: Optional[str] = None) -> bool:
        user_id = user_id or self._user_id
        if not user_id:
            return False
        user = self.store.get_user(user_id)
        return bool(user and user.get("is_admin") is True)

    def require_user(self) -> str:
        if not self._user_id:
            raise PermissionDeniedError("Sign in required")
        return self._user_id

    def require_admin(self) -> str:
        user_id = self.require_user()
        if not self.is_admin(user_id):
            raise PermissionDeniedError(f"User {user_id} is not an admin")
        return user_id

    def as_user(self, user_id: Optional[str]) -> "Session":
        return Session(self.store, user_id, self.settings)
