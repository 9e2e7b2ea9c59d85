from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from .errors import DuplicateEmail, InvalidCredentials, Unauthenticated, ValidationError
from .logs import get_logger
from .store import PLAN_FREE, WELCOME_FREE_CREDITS, Account, AccountStore

logger = get_logger("auth")

JWT_ALGORITHM = "HS256"
MIN_PASSWORD_LENGTH = 6
PBKDF2_ITERATIONS = 190_000
EMAIL_RE = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.I)


def safe_text(value: str | None) -> str:
    return (value or "").strip()


def normalize_email(value: str | None) -> str:
    return safe_text(value).lower()


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ITERATIONS).hex()


def extract_bearer_token(authorization: str | None) -> str | None:
    auth_header = safe_text(authorization)
    if auth_header.lower().startswith("bearer "):
        return safe_text(auth_header[7:]) or None
    return None


class CredentialService:
    """Signup, login and bearer-token resolution against an :class:`AccountStore`."""

    def __init__(self, store: AccountStore, secret: str, ttl_days: int = 7):
        self.store = store
        self.secret = secret
        self.ttl = timedelta(days=ttl_days)
        # Hashed for unknown emails so both login failures cost the same.
        self._dummy_salt = secrets.token_hex(16)

    def issue_token(self, account: Account, now: datetime | None = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            "userId": account.id,
            "email": account.email,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self.ttl).timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm=JWT_ALGORITHM)

    def register(self, email: str, password: str, name: str | None = None) -> tuple[Account, str]:
        email = normalize_email(email)
        password = password or ""
        errors: list[dict[str, str]] = []
        if not EMAIL_RE.match(email):
            errors.append({"field": "email", "message": "Enter a valid email address."})
        if len(password) < MIN_PASSWORD_LENGTH:
            errors.append({"field": "password", "message": "Password must be at least 6 characters."})
        if errors:
            raise ValidationError(errors[0]["message"], errors=errors)

        if self.store.get_account_by_email(email) is not None:
            logger.info("Signup rejected for existing account.")
            raise DuplicateEmail()

        salt = secrets.token_hex(16)
        account = self.store.create_account(
            email=email,
            password_hash=hash_password(password, salt),
            password_salt=salt,
            name=safe_text(name) or None,
            plan=PLAN_FREE,
            credits=WELCOME_FREE_CREDITS,
        )
        logger.info("Account %s created.", account.id)
        return account, self.issue_token(account)

    def authenticate(self, email: str, password: str) -> tuple[Account, str]:
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            hash_password(password or "", self._dummy_salt)
            raise InvalidCredentials()

        expected = hash_password(password or "", account.password_salt)
        if not hmac.compare_digest(expected, account.password_hash):
            raise InvalidCredentials()

        return account, self.issue_token(account)

    def decode(self, token: str, now: datetime | None = None) -> dict[str, Any]:
        options: dict[str, Any] = {"require": ["exp", "userId"]}
        if now is not None:
            # Expiry is checked below against the caller's reference time.
            options["verify_exp"] = False
        try:
            payload = jwt.decode(token, self.secret, algorithms=[JWT_ALGORITHM], options=options)
        except jwt.ExpiredSignatureError as exc:
            raise Unauthenticated("Authentication token expired. Please log in again.") from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthenticated("Invalid authentication token.") from exc

        if now is not None and int(payload["exp"]) <= int(now.timestamp()):
            raise Unauthenticated("Authentication token expired. Please log in again.")
        return payload

    def resolve(self, token: str | None, now: datetime | None = None) -> Account:
        token = safe_text(token)
        if not token:
            raise Unauthenticated("Login required. Please sign in to continue.")

        payload = self.decode(token, now=now)
        try:
            account_id = int(payload["userId"])
        except (TypeError, ValueError) as exc:
            raise Unauthenticated("Invalid authentication token.") from exc

        account = self.store.get_account(account_id)
        if account is None:
            raise Unauthenticated("Account not found. Please log in again.")
        return account
