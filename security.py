"""Password hashing and bearer tokens."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
import jwt

from errors import InvalidToken

# bcrypt only looks at the first 72 bytes and newer releases refuse longer input
BCRYPT_MAX_BYTES = 72


class PasswordHasher:
    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    @staticmethod
    def _encode(password: str) -> bytes:
        return password.encode("utf-8")[:BCRYPT_MAX_BYTES]

    def hash(self, password: str) -> str:
        return bcrypt.hashpw(self._encode(password), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        if not password_hash:
            return False
        try:
            return bcrypt.checkpw(self._encode(password), password_hash.encode("utf-8"))
        except ValueError:
            # malformed stored hash
            return False


class TokenSigner:
    """Issues and checks HS256 JWTs. ``type`` tells user and blood bank tokens apart."""

    algorithm = "HS256"

    def __init__(self, secret: str, expire_minutes: int = 7 * 24 * 60):
        self.secret = secret
        self.expire_minutes = expire_minutes

    def issue(self, subject: str, token_type: str, expire_minutes: Optional[int] = None, **claims: Any) -> str:
        now = datetime.now(timezone.utc)
        minutes = self.expire_minutes if expire_minutes is None else expire_minutes
        payload = {
            **claims,
            "sub": str(subject),
            "type": token_type,
            "iat": now,
            "exp": now + timedelta(minutes=minutes),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise InvalidToken("Token has expired")
        except jwt.InvalidTokenError:
            raise InvalidToken()
        if not claims.get("sub") or claims.get("type") not in ("user", "bloodbank"):
            raise InvalidToken()
        return claims
