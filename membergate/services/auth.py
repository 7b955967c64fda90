from datetime import UTC, datetime, timedelta

import bcrypt
from jose import JWTError, jwt

ALGORITHM = "HS256"


class AuthService:
    def __init__(self, secret_key: str, access_token_expire_minutes: int = 60 * 24 * 7):
        self._secret_key = secret_key
        self._expire_minutes = access_token_expire_minutes

    # -- Password hashing --

    def hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt()
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify_password(self, plain: str, hashed: str) -> bool:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))

    # -- JWT tokens --

    def create_access_token(self, account_id: int, expires_minutes: int | None = None) -> str:
        now = datetime.now(UTC)
        payload = {
            "sub": str(account_id),
            "type": "access",
            "exp": now + timedelta(minutes=expires_minutes or self._expire_minutes),
            "iat": now,
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    def decode_token(self, token: str) -> dict | None:
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[ALGORITHM])
        except JWTError:
            return None
        if payload.get("type") != "access":
            return None
        return payload

    def account_id_from_token(self, token: str) -> int | None:
        payload = self.decode_token(token)
        if payload is None:
            return None
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            return None
