"""
Authentication and identity.

Passwords are hashed with Argon2id; sessions are a pair of signed JWTs: a
short-lived access token checked on every protected request and a
longer-lived refresh token that only buys a new pair. Role checks all go
through ``require_role``.
"""
import re
import logging
from datetime import timedelta
from typing import List, Optional

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from pydantic import ValidationError

from config import Settings
from errors import Conflict, Forbidden, InvalidArgument, NotFound, Unauthorized
from schemas import Role, User
from store import Store, now_utc, public

logger = logging.getLogger(__name__)

_hasher = PasswordHasher()

ACCESS = "access"
REFRESH = "refresh"


def hash_password(pw: str) -> str:
    return _hasher.hash(pw)


def verify_password(pw: str, password_hash: str) -> bool:
    try:
        return _hasher.verify(password_hash, pw)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def password_problems(pw: str) -> List[str]:
    problems = []
    if len(pw) < 8:
        problems.append("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", pw):
        problems.append("Password must contain an uppercase letter")
    if not re.search(r"[a-z]", pw):
        problems.append("Password must contain a lowercase letter")
    if not re.search(r"\d", pw):
        problems.append("Password must contain a number")
    return problems


def check_password_strength(pw: str) -> None:
    problems = password_problems(pw)
    if problems:
        raise InvalidArgument(f"Password validation failed: {', '.join(problems)}", problems)


def require_role(user: Optional[dict], role: Role) -> None:
    """The single capability check for role-gated operations."""
    if user is None:
        raise Unauthorized("Authentication required")
    if user.get("role") != role.value:
        logger.warning("Authorization failed for user %s. Required role: %s, user role: %s",
                       user.get("_id"), role.value, user.get("role"))
        raise Forbidden("Insufficient permissions", {"required": role.value, "current": user.get("role")})


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        return None
    return parts[1]


class TokenIssuer:
    def __init__(self, settings: Settings):
        self.settings = settings

    def _secret(self, token_type: str) -> str:
        return self.settings.jwt_secret if token_type == ACCESS else self.settings.jwt_refresh_secret

    def _issue(self, user: dict, token_type: str, ttl: timedelta) -> str:
        now = now_utc()
        payload = {
            "sub": user["_id"],
            "email": user["email"],
            "role": user["role"],
            "type": token_type,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, self._secret(token_type), algorithm="HS256")

    def pair(self, user: dict) -> dict:
        return {
            "access_token": self._issue(user, ACCESS, timedelta(minutes=self.settings.jwt_access_ttl_minutes)),
            "refresh_token": self._issue(user, REFRESH, timedelta(days=self.settings.jwt_refresh_ttl_days)),
            "token_type": "bearer",
        }

    def verify(self, token: str, token_type: str) -> dict:
        try:
            claims = jwt.decode(
                token,
                self._secret(token_type),
                algorithms=["HS256"],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
            )
        except jwt.PyJWTError as e:
            logger.warning("%s token verification failed: %s", token_type.capitalize(), e)
            raise Unauthorized(f"Invalid or expired {token_type} token")
        if claims.get("type") != token_type:
            raise Unauthorized(f"Invalid or expired {token_type} token")
        return claims


def user_out(user: dict) -> dict:
    return public(user, "password_hash")


class AuthService:
    def __init__(self, store: Store, settings: Settings):
        self.store = store
        self.tokens = TokenIssuer(settings)

    def _new_user(self, email: str, password: str, name: str, address: Optional[str], role: Role) -> dict:
        check_password_strength(password)
        email = email.strip().lower()
        if self.store.get_user_by_email(email):
            raise Conflict("User with this email already exists")
        try:
            user = User(
                email=email,
                password_hash=hash_password(password),
                name=name.strip(),
                address=address.strip() if address else None,
                role=role,
            )
        except ValidationError as e:
            raise InvalidArgument("Validation failed", e.errors(include_url=False, include_context=False, include_input=False))
        return self.store.insert_user(user.model_dump())

    def register(self, email: str, password: str, name: str, address: Optional[str] = None) -> dict:
        user = self._new_user(email, password, name, address, Role.USER)
        logger.info("New user registered: %s", user["email"])
        return {"user": user_out(user), "tokens": self.tokens.pair(user)}

    def create_admin(self, email: str, password: str, name: str, address: Optional[str] = None) -> dict:
        user = self._new_user(email, password, name, address, Role.ADMIN)
        logger.info("Admin user created: %s", user["email"])
        return user_out(user)

    def login(self, email: str, password: str) -> dict:
        user = self.store.get_user_by_email(email.strip().lower())
        if not user or not verify_password(password, user["password_hash"]):
            logger.warning("Failed login attempt for %s", email)
            raise Unauthorized("Invalid email or password")
        logger.info("User logged in: %s", user["email"])
        return {"user": user_out(user), "tokens": self.tokens.pair(user)}

    def refresh(self, refresh_token: str) -> dict:
        claims = self.tokens.verify(refresh_token, REFRESH)
        user = self.store.get_user(claims["sub"])
        if not user:
            raise Unauthorized("Invalid or expired refresh token")
        logger.info("Token refreshed for user: %s", user["email"])
        return self.tokens.pair(user)

    def authenticate(self, token: Optional[str]) -> dict:
        """Resolve a bearer access token to the stored user document."""
        if not token:
            raise Unauthorized("Access token is required")
        claims = self.tokens.verify(token, ACCESS)
        user = self.store.get_user(claims["sub"])
        if not user:
            raise Unauthorized("User not found or account deactivated")
        return user

    # ---------------------- Profile ----------------------

    def get_profile(self, user_id: str) -> dict:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFound("User not found")
        return user_out(user)

    def update_profile(self, user_id: str, name: Optional[str] = None, address: Optional[str] = None) -> dict:
        fields = {}
        if name is not None:
            if not name.strip():
                raise InvalidArgument("Name cannot be empty")
            fields["name"] = name.strip()
        if address is not None:
            fields["address"] = address.strip() or None
        user = self.store.update_user(user_id, fields)
        if not user:
            raise NotFound("User not found")
        logger.info("Profile updated for user: %s", user["email"])
        return user_out(user)

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFound("User not found")
        if not verify_password(current_password, user["password_hash"]):
            raise InvalidArgument("Current password is incorrect")
        check_password_strength(new_password)
        self.store.update_user(user_id, {"password_hash": hash_password(new_password)})
        logger.info("Password changed for user: %s", user["email"])
