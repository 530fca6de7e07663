import time
from dataclasses import dataclass
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeSerializer

from models import Role

REQUIRED_CLAIMS = ("username", "email", "role")
REFRESHED_TOKEN_MESSAGE = (
    "Access token has been refreshed. Remember to copy the new one in the "
    "headers of subsequent calls"
)


class AuthenticationError(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TokenExpired(AuthenticationError):
    pass


@dataclass(frozen=True)
class Identity:
    username: str
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin


@dataclass(frozen=True)
class Resolution:
    identity: Optional[Identity]
    failure: Optional[str] = None
    refreshed_access_token: Optional[str] = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


class TokenService:
    """Issues and verifies the signed access/refresh token pair.

    Both tokens carry the same claims (``username``, ``email``, ``role``)
    plus an ``exp`` unix timestamp, and are signed with one secret so either
    can be verified independently.
    """

    def __init__(
        self,
        secret: str,
        access_ttl_secs: int = 3600,
        refresh_ttl_secs: int = 7 * 24 * 3600,
    ) -> None:
        self._serializer = URLSafeSerializer(secret, salt="auth-token")
        self.access_ttl_secs = access_ttl_secs
        self.refresh_ttl_secs = refresh_ttl_secs

    def sign(self, claims: dict[str, object]) -> str:
        return self._serializer.dumps(claims)

    def issue(self, identity: Identity, ttl_secs: int) -> str:
        return self.sign(
            {
                "username": identity.username,
                "email": identity.email,
                "role": identity.role.value,
                "exp": int(time.time()) + ttl_secs,
            }
        )

    def issue_pair(self, identity: Identity) -> tuple[str, str]:
        return (
            self.issue(identity, self.access_ttl_secs),
            self.issue(identity, self.refresh_ttl_secs),
        )

    def decode(self, token: str) -> dict[str, object]:
        try:
            data = self._serializer.loads(token)
        except BadSignature as exc:
            raise AuthenticationError("Invalid token") from exc
        if not isinstance(data, dict):
            raise AuthenticationError("Invalid token")

        expiry = data.get("exp")
        if not isinstance(expiry, (int, float)):
            raise AuthenticationError("Token is missing information")
        if time.time() > expiry:
            raise TokenExpired("Token expired")
        return data

    @staticmethod
    def identity_from(claims: dict[str, object]) -> Identity:
        if any(not claims.get(name) for name in REQUIRED_CLAIMS):
            raise AuthenticationError("Token is missing information")
        try:
            role = Role(claims["role"])
        except ValueError as exc:
            raise AuthenticationError("Token is missing information") from exc
        return Identity(
            username=str(claims["username"]), email=str(claims["email"]), role=role
        )

    def resolve(
        self, access_token: Optional[str], refresh_token: Optional[str]
    ) -> Resolution:
        if not access_token or not refresh_token:
            return Resolution(identity=None, failure="Unauthorized")
        try:
            refresh_identity = self.identity_from(self.decode(refresh_token))
        except TokenExpired:
            return Resolution(identity=None, failure="Perform login again")
        except AuthenticationError as exc:
            return Resolution(identity=None, failure=exc.reason)

        try:
            access_identity = self.identity_from(self.decode(access_token))
        except TokenExpired:
            return Resolution(
                identity=refresh_identity,
                refreshed_access_token=self.issue(
                    refresh_identity, self.access_ttl_secs
                ),
            )
        except AuthenticationError as exc:
            return Resolution(identity=None, failure=exc.reason)

        if access_identity != refresh_identity:
            return Resolution(identity=None, failure="Mismatched users")
        return Resolution(identity=access_identity)
