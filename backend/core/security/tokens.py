"""
JWT token service for authenticating API callers.

Tokens are issued by the account service; this service only verifies them.
``create_access_token`` exists for tooling and tests.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

ACCESS_TOKEN_TYPE = "access"
_REQUIRED_CLAIMS = ("sub", "exp", "type")


@dataclass
class TokenPayload:
    """Verified claims of an access token."""

    sub: str  # user id
    exp: datetime
    iat: datetime
    type: str
    email: str | None = None
    role: str | None = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "TokenPayload":
        return cls(
            sub=claims["sub"],
            exp=datetime.fromtimestamp(claims["exp"], tz=UTC),
            iat=datetime.fromtimestamp(claims.get("iat", 0), tz=UTC),
            type=claims["type"],
            email=claims.get("email"),
            role=claims.get("role"),
        )


class TokenService:
    """Verifies bearer tokens presented to the billing API."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        access_token_expire_minutes: int = 30,
    ):
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._access_token_expire_minutes = access_token_expire_minutes

    def create_access_token(
        self,
        user_id: str,
        email: str | None = None,
        role: str | None = None,
    ) -> str:
        """
        Create an access token.

        Args:
            user_id: User ID to encode in the token
            email: Optional email claim
            role: Optional role claim

        Returns:
            Encoded JWT access token
        """
        now = datetime.now(UTC)
        claims: dict[str, Any] = {
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(minutes=self._access_token_expire_minutes),
            "type": ACCESS_TOKEN_TYPE,
        }
        if email:
            claims["email"] = email
        if role:
            claims["role"] = role
        return jwt.encode(claims, self._secret_key, algorithm=self._algorithm)

    def decode_token(self, token: str) -> TokenPayload | None:
        """Decode a JWT; None if the signature, expiry or claims are invalid."""
        try:
            claims = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError:
            return None
        if any(claim not in claims for claim in _REQUIRED_CLAIMS):
            return None
        return TokenPayload.from_claims(claims)

    def verify_access_token(self, token: str) -> TokenPayload | None:
        """Return the payload only for a valid access token."""
        payload = self.decode_token(token)
        if payload is None or payload.type != ACCESS_TOKEN_TYPE:
            return None
        return payload
