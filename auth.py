"""
Authentication & session handling.

The session is an explicit value: ``Session.anonymous()`` or
``Session.authenticated(user_id)``, persisted as one ``userId`` entry in a
key-value store kept apart from the collection documents.
"""

import logging
from typing import Any, Dict, Optional

from config import MIN_PASSWORD_LENGTH
from database import KeyValueStore
from repositories import UserRepository
from schemas import AuthResult, PublicUser, Session
from security import verify_password, verify_legacy_password

logger = logging.getLogger(__name__)

SESSION_KEY = "userId"
INVALID_CREDENTIALS = "Invalid email or password"


def public_user(user: Dict[str, Any]) -> PublicUser:
    """Projection safe to hand to a client: never carries a password."""
    return PublicUser(
        id=user["id"],
        email=user.get("email", ""),
        name=user.get("name", ""),
        role=user.get("role", "user"),
        approval_status=user.get("approval_status"),
        profile_info=user.get("profile_info") or {},
    )


def _check_new_password(new_password: str, confirm_password: Optional[str]) -> Optional[str]:
    if not new_password:
        return "Please enter a new password"
    if confirm_password is not None and new_password != confirm_password:
        return "Passwords do not match"
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    return None


class AuthService:
    def __init__(self, users: UserRepository, session_store: KeyValueStore):
        self.users = users
        self.session_store = session_store

    def _credentials_match(self, user: Dict[str, Any], password: str) -> bool:
        if user.get("hashed_password"):
            return verify_password(password, user["hashed_password"])
        if verify_legacy_password(password, user.get("password")):
            # upgrade plaintext records on first successful login
            self.users.update(user["id"], {"password": password})
            return True
        return False

    # ----- Session -----

    def current_session(self) -> Session:
        user_id = self.session_store.get_item(SESSION_KEY)
        return Session.authenticated(str(user_id)) if user_id else Session.anonymous()

    def login(self, email: str, password: str) -> AuthResult:
        user = self.users.get_by_email(email or "")
        if user is None or not self._credentials_match(user, password or ""):
            return AuthResult(success=False, message=INVALID_CREDENTIALS)
        if not self.session_store.set_item(SESSION_KEY, user["id"]):
            return AuthResult(success=False, message="Login failed")
        logger.info("User %s logged in", user["id"])
        return AuthResult(success=True, user=public_user(user))

    def logout(self) -> AuthResult:
        if not self.session_store.remove_item(SESSION_KEY):
            return AuthResult(success=False, message="Logout failed")
        return AuthResult(success=True)

    def get_current_user(self) -> Optional[PublicUser]:
        session = self.current_session()
        if not session.is_authenticated:
            return None
        user = self.users.get_by_id(session.user_id)
        if user is None:
            logger.info("User %s not found, clearing stale session", session.user_id)
            self.session_store.remove_item(SESSION_KEY)
            return None
        return public_user(user)

    # ----- Accounts -----

    def signup(self, user_data: Dict[str, Any]) -> AuthResult:
        """Register an account. Logging the new user in is up to the caller."""
        email = (user_data.get("email") or "").strip()
        password = user_data.get("password") or ""
        if not email or not password:
            return AuthResult(success=False, message="Email and password are required")
        if self.users.get_by_email(email):
            return AuthResult(success=False, message="Email already in use")

        role = user_data.get("role") or "user"
        new_user = {
            "email": email,
            "password": password,
            "name": user_data.get("name") or "",
            "role": role,
            "profile_info": dict(user_data.get("profile_info") or {}),
        }
        if user_data.get("phone_number"):
            new_user["phone_number"] = user_data["phone_number"]
        if role == "vendor":
            new_user["approval_status"] = "pending"
            new_user["profile_info"].setdefault("business_name", "")
            new_user["profile_info"].setdefault("address", "")

        created = self.users.add(new_user)
        if created is None:
            return AuthResult(success=False, message="Failed to create user")
        return AuthResult(success=True, user=public_user(created))

    def update_profile(self, user_id: str, data: Dict[str, Any]) -> AuthResult:
        changes = {k: v for k, v in data.items() if k not in ("id", "password", "hashed_password", "role")}
        profile_patch = changes.pop("profile_info", None)
        if changes and not self.users.update(user_id, changes):
            return AuthResult(success=False, message="Failed to update user data")
        if profile_patch and not self.users.update_profile_info(user_id, profile_patch):
            return AuthResult(success=False, message="Failed to update user data")
        user = self.users.get_by_id(user_id)
        if user is None:
            return AuthResult(success=False, message="User not found")
        return AuthResult(success=True, user=public_user(user))

    # ----- Passwords -----

    def verify_user_password(self, user_id: str, password: str) -> AuthResult:
        user = self.users.get_by_id(user_id)
        if user is None:
            return AuthResult(success=False, message="User not found")
        if not self._credentials_match(user, password or ""):
            return AuthResult(success=False, message="Incorrect password")
        return AuthResult(success=True)

    def update_password(self, user_id: str, new_password: str) -> AuthResult:
        if self.users.get_by_id(user_id) is None:
            return AuthResult(success=False, message="User not found")
        if not self.users.update(user_id, {"password": new_password}):
            return AuthResult(success=False, message="Failed to update password")
        return AuthResult(success=True)

    def change_password(self, user_id: str, old_password: str, new_password: str,
                        confirm_password: Optional[str] = None) -> AuthResult:
        if not self.verify_user_password(user_id, old_password).success:
            return AuthResult(success=False, message="Current password is incorrect")
        problem = _check_new_password(new_password, confirm_password)
        if problem:
            return AuthResult(success=False, message=problem)
        result = self.update_password(user_id, new_password)
        if result.success:
            result.message = "Password updated successfully"
        return result

    def request_password_reset(self, email: str) -> AuthResult:
        if self.users.get_by_email(email or "") is None:
            return AuthResult(success=False, message="Email not found")
        logger.info("Password reset requested for %s", email)
        return AuthResult(success=True, message="Password reset instructions sent")

    def reset_password(self, email: str, new_password: str, confirm_password: str,
                       phone_number: Optional[str] = None) -> AuthResult:
        """Reset by email; non-admin accounts must also present their phone number."""
        user = self.users.get_by_email(email or "")
        if user is None:
            return AuthResult(success=False, message="No account found with this email")
        if user.get("role") != "admin" and user.get("phone_number") != phone_number:
            return AuthResult(success=False, message="Phone number does not match our records")
        problem = _check_new_password(new_password, confirm_password)
        if problem:
            return AuthResult(success=False, message=problem)
        result = self.update_password(user["id"], new_password)
        if result.success:
            result.message = "Password has been reset successfully"
        return result
