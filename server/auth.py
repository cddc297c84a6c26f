"""
Dirkeeper - Console Authentication
====================================
The console controls a live directory server, so every API call except
the auth handshake needs a bearer token once an operator password exists.

- One operator password, bcrypt-hashed in data/auth.json
- HS256 JWTs signed with a per-install secret kept in the same file
- Until a password is set the console is open, so the first operator can
  run /api/auth/setup
"""

import json
import os
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt


JWT_ALGORITHM = "HS256"
TOKEN_LIFETIME = timedelta(hours=24)
MIN_PASSWORD_LENGTH = 4

bearer = HTTPBearer(auto_error=False)


class AuthManager:
    """
    Reads and writes data/auth.json.

    File layout:
        {"password_hash": "$2b$12$...", "jwt_secret": "...", "created_at": "..."}
    """

    def __init__(self, data_dir: str):
        self.auth_file = os.path.join(data_dir, "auth.json")

    # -- State -----------------------------------------------------------------

    def _read(self) -> dict:
        try:
            with open(self.auth_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}

    def _write(self, record: dict) -> None:
        os.makedirs(os.path.dirname(self.auth_file), exist_ok=True)
        with open(self.auth_file, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2)

    def is_configured(self) -> bool:
        try:
            return "password_hash" in self._read()
        except (json.JSONDecodeError, OSError):
            return False

    # -- Passwords -------------------------------------------------------------

    def setup_password(self, password: str, force: bool = False) -> str:
        """
        Store the operator password and return a token for the new session.

        Args:
            password: Plaintext password.
            force:    Replace an existing password (the signing secret is kept).

        Raises:
            ValueError:   Password shorter than MIN_PASSWORD_LENGTH.
            RuntimeError: A password exists and force is False.
        """
        record = self._read() if self.is_configured() else {}
        if record and not force:
            raise RuntimeError("Password already configured.")
        _require_length(password)

        record["password_hash"] = _hash(password)
        record.setdefault("jwt_secret", secrets.token_urlsafe(32))
        record.setdefault("created_at", _now().isoformat())
        self._write(record)
        return self._issue(record["jwt_secret"])

    def verify_password(self, password: str) -> str | None:
        """Token for a correct password, None otherwise."""
        record = self._read() if self.is_configured() else {}
        if not record or not _matches(password, record["password_hash"]):
            return None
        return self._issue(record["jwt_secret"])

    def change_password(self, old_password: str, new_password: str) -> bool:
        """
        Replace the password after checking the current one.

        Returns:
            False if old_password does not match.

        Raises:
            ValueError: new_password is too short.
        """
        _require_length(new_password)
        record = self._read()
        if not _matches(old_password, record["password_hash"]):
            return False
        record["password_hash"] = _hash(new_password)
        record["updated_at"] = _now().isoformat()
        self._write(record)
        return True

    # -- Tokens ----------------------------------------------------------------

    def _issue(self, secret: str) -> str:
        now = _now()
        claims = {"sub": "operator", "iat": now, "exp": now + TOKEN_LIFETIME}
        return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: str) -> bool:
        if not self.is_configured():
            return False
        try:
            jwt.decode(token, self._read()["jwt_secret"], algorithms=[JWT_ALGORITHM])
        except JWTError:
            return False
        return True


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def _matches(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def _require_length(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")


def require_auth(auth_manager: AuthManager):
    """FastAPI dependency enforcing the bearer token once a password is set."""

    async def _check(credentials: HTTPAuthorizationCredentials | None = Depends(bearer)):
        if not auth_manager.is_configured():
            return True
        if credentials is None:
            raise HTTPException(status_code=401, detail="Authentication required")
        if not auth_manager.verify_token(credentials.credentials):
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        return True

    return _check
