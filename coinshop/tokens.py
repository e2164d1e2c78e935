"""Bearer token issuing and resolving.

Uses PyJWT with HS256. Tokens carry ``user_id``; when a TTL is configured they
also carry ``iat``/``exp`` and PyJWT rejects them once expired. Without a TTL
tokens never expire.
"""

from datetime import datetime, timedelta, timezone

import jwt

from coinshop.errors import InvalidToken

ALGORITHM = "HS256"


class TokenIssuer:
    def __init__(self, secret: str, ttl_seconds: int | None = None):
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret
        self.ttl_seconds = ttl_seconds

    def issue_token(self, user_id: int) -> str:
        """Create a signed token asserting ``user_id``.

        Args:
            user_id: Id of an existing user.

        Returns:
            Encoded JWT string.
        """
        payload: dict = {"user_id": user_id}
        if self.ttl_seconds:
            now = datetime.now(timezone.utc)
            payload["iat"] = now
            payload["exp"] = now + timedelta(seconds=self.ttl_seconds)
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def resolve_token(self, token: str | None) -> int:
        """Verify ``token`` and return the user id it asserts.

        Raises:
            InvalidToken: missing, malformed, badly signed or expired token,
                or a ``user_id`` claim that is absent or not an integer.
        """
        if not token:
            raise InvalidToken("Missing token")
        try:
            payload = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError as exc:
            raise InvalidToken("Token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidToken() from exc

        user_id = payload.get("user_id")
        # bool is an int subclass; JSON true must not become user 1
        if isinstance(user_id, bool):
            raise InvalidToken("Invalid user_id in token")
        if isinstance(user_id, float) and user_id.is_integer():
            user_id = int(user_id)
        if not isinstance(user_id, int) or user_id < 0:
            raise InvalidToken("Invalid user_id in token")
        return user_id
