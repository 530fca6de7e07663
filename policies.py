import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from auth import Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Simple:
    pass


@dataclass(frozen=True)
class Admin:
    pass


@dataclass(frozen=True)
class User:
    username: str


@dataclass(frozen=True)
class Group:
    member_emails: frozenset[str]

    @classmethod
    def of(cls, emails: Iterable[str]) -> "Group":
        return cls(frozenset(emails))


Policy = Union[Simple, Admin, User, Group]


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str


ALLOW = Decision(True, "Authorized")


class AuthorizationError(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def authorize(identity: Optional[Identity], policy: Policy) -> Decision:
    if identity is None:
        return Decision(False, "Unauthorized")
    if isinstance(policy, Simple):
        return ALLOW
    if isinstance(policy, Admin):
        if identity.is_admin:
            return ALLOW
        return Decision(False, "Wrong role")
    if isinstance(policy, User):
        if identity.username == policy.username:
            return ALLOW
        return Decision(False, "Mismatched users, accessed one requires for another")
    if isinstance(policy, Group):
        if identity.email in policy.member_emails:
            return ALLOW
        return Decision(False, "Tokens don't belong to a member of the group")
    raise TypeError(f"Unknown policy: {policy!r}")


def authorize_any(identity: Optional[Identity], policies: Iterable[Policy]) -> Decision:
    """Allow when any policy allows; otherwise report the first denial."""
    first_denial: Optional[Decision] = None
    for policy in policies:
        decision = authorize(identity, policy)
        if decision.allowed:
            return decision
        if first_denial is None:
            first_denial = decision
    if first_denial is None:
        raise ValueError("At least one policy is required")
    return first_denial


def require(identity: Optional[Identity], *policies: Policy) -> Identity:
    decision = authorize_any(identity, policies)
    if not decision.allowed:
        logger.info(f"auth_denied: reason={decision.reason}")
        raise AuthorizationError(decision.reason)
    if identity is None:
        raise AuthorizationError("Unauthorized")
    return identity
