from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from auth import Identity, TokenService, hash_password, verify_password
from errors import Conflict, InvalidInput, NotFound
from filters import AmountRange, DateRange, TransactionFilters, parse_timestamp
from models import Category, Group, GroupMember, Role, Transaction, User
from schemas import (
    CategoryIn,
    GroupIn,
    LoginIn,
    RegisterIn,
    TransactionIn,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def require_text(value: Optional[str], field_name: str) -> str:
    if value is None or not value.strip():
        raise InvalidInput(f"'{field_name}' field cannot be empty.")
    return value.strip()


def require_email(value: Optional[str]) -> str:
    email = require_text(value, "email")
    if not EMAIL_PATTERN.match(email):
        raise InvalidInput("Wrong email format.")
    return email


def require_emails(values: Optional[list[str]], missing_message: str) -> list[str]:
    if values is None:
        raise InvalidInput(missing_message)
    if not values or any(not value.strip() for value in values):
        raise InvalidInput("'email' field cannot be empty.")
    emails = list(dict.fromkeys(value.strip() for value in values))
    if not all(EMAIL_PATTERN.match(email) for email in emails):
        raise InvalidInput("Wrong email format.")
    return emails


def parse_amount(value: Optional[Union[float, str]]) -> float:
    if value is None or isinstance(value, bool):
        raise InvalidInput("'amount' field must be a number.")
    try:
        amount = float(value.strip() if isinstance(value, str) else value)
    except ValueError as exc:
        raise InvalidInput("'amount' field must be a number.") from exc
    if not math.isfinite(amount):
        raise InvalidInput("'amount' field must be a number.")
    return amount


@dataclass
class ColoredTransaction:
    transaction: Transaction
    color: str


@dataclass
class MembershipChange:
    group: Group
    members_not_found: list[str]
    already_in_group: list[str] = field(default_factory=list)
    not_in_group: list[str] = field(default_factory=list)


@dataclass
class UserDeletion:
    deleted_transactions: int
    deleted_from_group: bool


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = select(Category).order_by(Category.id)
        return list(self.session.scalars(stmt).all())

    def get(self, category_type: str) -> Category:
        category = self.session.scalar(
            select(Category).where(Category.type == category_type)
        )
        if not category:
            raise NotFound(f"Category {category_type} does not exist.")
        return category

    def create(self, data: CategoryIn) -> Category:
        category_type = require_text(data.type, "type")
        color = require_text(data.color, "color")

        existing = self.session.scalar(
            select(Category.id).where(Category.type == category_type)
        )
        if existing is not None:
            raise Conflict(f"Category {category_type} already exists.")

        category = Category(type=category_type, color=color)
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict(f"Category {category_type} already exists.") from exc
        self.session.refresh(category)
        logger.info(f"category_create: type={category_type} color={color}")
        return category

    def update(self, old_type: str, data: CategoryIn) -> dict[str, object]:
        new_type = require_text(data.type, "type")
        color = require_text(data.color, "color")

        category = self.get(old_type)
        clash = self.session.scalar(
            select(Category.id).where(
                Category.type == new_type, Category.id != category.id
            )
        )
        if clash is not None:
            raise Conflict(f"Category {new_type} already exists.")

        count = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(Transaction.type == old_type)
            ).scalar_one()
        )
        try:
            category.type = new_type
            category.color = color
            if new_type != old_type:
                self.session.execute(
                    update(Transaction)
                    .where(Transaction.type == old_type)
                    .values(type=new_type)
                    .execution_options(synchronize_session="fetch")
                )
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict(f"Category {new_type} already exists.") from exc
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"category_update: old_type={old_type} new_type={new_type} "
            f"transactions={count}"
        )
        return {"message": f"Successfully updated category {new_type}.", "count": count}

    def delete(self, types: Optional[list[str]]) -> dict[str, object]:
        if types is None:
            raise InvalidInput("Must specify an array of categories to delete.")
        if not types or any(not value.strip() for value in types):
            raise InvalidInput("'type' field cannot be empty.")
        requested = list(dict.fromkeys(value.strip() for value in types))

        found = set(
            self.session.scalars(
                select(Category.type).where(Category.type.in_(requested))
            ).all()
        )
        if len(found) != len(requested):
            raise NotFound("One or more categories in the list do not exist.")

        categories = self.list_all()
        if len(categories) == 1:
            raise InvalidInput("Cannot remove with only one existing category.")

        doomed = set(requested)
        fallback = next((c for c in categories if c.type not in doomed), None)
        if fallback is None:
            # Every category was requested: the oldest one survives.
            fallback = categories[0]
            doomed.discard(fallback.type)

        try:
            count = int(
                self.session.execute(
                    select(func.count(Transaction.id)).where(
                        Transaction.type.in_(doomed)
                    )
                ).scalar_one()
            )
            self.session.execute(
                update(Transaction)
                .where(Transaction.type.in_(doomed))
                .values(type=fallback.type)
                .execution_options(synchronize_session="fetch")
            )
            self.session.execute(
                delete(Category)
                .where(Category.type.in_(doomed))
                .execution_options(synchronize_session="fetch")
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"category_delete: types={sorted(doomed)} fallback={fallback.type} "
            f"reassigned={count}"
        )
        return {"message": "Successfully deleted categories.", "count": count}


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.id)).all())

    def get(self, username: str) -> User:
        user = self.session.scalar(select(User).where(User.username == username))
        if not user:
            raise NotFound("User not found.")
        return user

    def get_by_email(self, email: str) -> User:
        user = self.session.scalar(select(User).where(User.email == email))
        if not user:
            raise NotFound("User not found.")
        return user

    def delete(self, email: Optional[str]) -> UserDeletion:
        user = self.get_by_email(require_email(email))
        if user.role == Role.admin:
            raise InvalidInput("Cannot delete an Admin.")
        username = user.username

        try:
            deleted_transactions = int(
                self.session.execute(
                    select(func.count(Transaction.id)).where(
                        Transaction.username == username
                    )
                ).scalar_one()
            )
            self.session.execute(
                delete(Transaction)
                .where(Transaction.username == username)
                .execution_options(synchronize_session="fetch")
            )

            memberships = self.session.scalars(
                select(GroupMember).where(GroupMember.email == user.email)
            ).all()
            for membership in memberships:
                group = membership.group
                if len(group.members) == 1:
                    self.session.delete(group)
                else:
                    group.members.remove(membership)

            self.session.delete(user)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"user_delete: username={username} "
            f"transactions={deleted_transactions} groups={len(memberships)}"
        )
        return UserDeletion(
            deleted_transactions=deleted_transactions,
            deleted_from_group=bool(memberships),
        )


class GroupService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Group]:
        stmt = select(Group).options(selectinload(Group.members)).order_by(Group.id)
        return list(self.session.scalars(stmt).all())

    def get(self, name: str) -> Group:
        group = self.session.scalar(
            select(Group)
            .options(selectinload(Group.members))
            .where(Group.name == name)
        )
        if not group:
            raise NotFound("Group does not exist.")
        return group

    def member_usernames(self, group: Group) -> list[str]:
        stmt = select(User.username).where(User.email.in_(group.member_emails))
        return list(self.session.scalars(stmt).all())

    def _grouped_emails(self, emails: list[str]) -> set[str]:
        stmt = select(GroupMember.email).where(GroupMember.email.in_(emails))
        return set(self.session.scalars(stmt).all())

    def _users_by_email(self, emails: list[str]) -> dict[str, User]:
        users = self.session.scalars(select(User).where(User.email.in_(emails))).all()
        return {user.email: user for user in users}

    def create(self, creator: Identity, data: GroupIn) -> MembershipChange:
        name = require_text(data.name, "name")
        emails = require_emails(
            data.member_emails, "Must specify an array of users to add."
        )

        if self.session.scalar(select(Group.id).where(Group.name == name)):
            raise Conflict("Group with the same name already exists.")

        owner = self.session.scalar(select(User).where(User.email == creator.email))
        if not owner:
            raise NotFound("User not found.")
        if self._grouped_emails([owner.email]):
            raise InvalidInput("User who wants to create a group is already in a group.")

        users = self._users_by_email(emails)
        if not users:
            raise NotFound("All the members do not exist.")
        grouped = self._grouped_emails(list(users))
        addable = [email for email in emails if email in users and email not in grouped]
        if not addable:
            raise InvalidInput("All the members do not exist or are already in a group.")
        if owner.email not in addable:
            addable.append(owner.email)
            users[owner.email] = owner

        group = Group(name=name)
        group.members = [
            GroupMember(email=email, user_id=users[email].id) for email in addable
        ]
        self.session.add(group)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("Group with the same name already exists.") from exc
        self.session.refresh(group)

        logger.info(f"group_create: name={name} members={len(addable)}")
        return MembershipChange(
            group=group,
            members_not_found=[email for email in emails if email not in users],
            already_in_group=[email for email in emails if email in grouped],
        )

    def add_members(self, name: str, emails: Optional[list[str]]) -> MembershipChange:
        group = self.get(name)
        emails = require_emails(emails, "Must specify an array of users to add.")

        users = self._users_by_email(emails)
        if not users:
            raise NotFound("All users do not exist.")
        grouped = self._grouped_emails(list(users))
        addable = [email for email in emails if email in users and email not in grouped]
        if not addable:
            raise InvalidInput("All the members do not exist or are already in a group.")

        for email in addable:
            group.members.append(GroupMember(email=email, user_id=users[email].id))
        self.session.commit()
        self.session.refresh(group)

        logger.info(f"group_add: name={name} added={len(addable)}")
        return MembershipChange(
            group=group,
            members_not_found=[email for email in emails if email not in users],
            already_in_group=[email for email in emails if email in grouped],
        )

    def remove_members(
        self, name: str, emails: Optional[list[str]]
    ) -> MembershipChange:
        group = self.get(name)
        emails = require_emails(emails, "Must specify an array of users to remove.")

        users = self._users_by_email(emails)
        if not users:
            raise NotFound("All users do not exist.")
        current = set(group.member_emails)
        removable = [email for email in emails if email in users and email in current]
        if not removable:
            raise InvalidInput("All users are not in the group.")
        if len(removable) == len(group.members):
            raise InvalidInput("Cannot remove every member of the group.")

        for membership in [m for m in group.members if m.email in removable]:
            group.members.remove(membership)
        self.session.commit()
        self.session.refresh(group)

        logger.info(f"group_remove: name={name} removed={len(removable)}")
        return MembershipChange(
            group=group,
            members_not_found=[email for email in emails if email not in users],
            not_in_group=[
                email for email in emails if email in users and email not in current
            ],
        )

    def delete(self, name: Optional[str]) -> None:
        group = self.get(require_text(name, "name"))
        group_name = group.name
        self.session.delete(group)
        self.session.commit()
        logger.info(f"group_delete: name={group_name}")


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, username: str, data: TransactionIn) -> Transaction:
        body_username = require_text(data.username, "username")
        amount = parse_amount(data.amount)
        category_type = require_text(data.type, "type")

        if body_username != username:
            raise InvalidInput(
                "Username in params and the one in body have to be the same."
            )
        CategoryService(self.session).get(category_type)
        UserService(self.session).get(username)
        occurred_at = parse_timestamp(data.date) if data.date else datetime.utcnow()

        txn = Transaction(
            username=username, type=category_type, amount=amount, date=occurred_at
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_create: id={txn.id} username={username} "
            f"type={category_type} amount={amount}"
        )
        return txn

    def list(self, filters: TransactionFilters) -> list[ColoredTransaction]:
        stmt = (
            select(Transaction, Category.color)
            .join(Category, Category.type == Transaction.type)
            .order_by(Transaction.date.asc(), Transaction.created_at.asc())
        )
        if filters.username is not None:
            stmt = stmt.where(Transaction.username == filters.username)
        if filters.usernames is not None:
            stmt = stmt.where(Transaction.username.in_(filters.usernames))
        if filters.category is not None:
            stmt = stmt.where(Transaction.type == filters.category)
        if filters.dates.start is not None:
            stmt = stmt.where(Transaction.date >= filters.dates.start)
        if filters.dates.end is not None:
            stmt = stmt.where(Transaction.date <= filters.dates.end)
        if filters.amounts.minimum is not None:
            stmt = stmt.where(Transaction.amount >= filters.amounts.minimum)
        if filters.amounts.maximum is not None:
            stmt = stmt.where(Transaction.amount <= filters.amounts.maximum)
        return [
            ColoredTransaction(transaction=txn, color=color)
            for txn, color in self.session.execute(stmt).all()
        ]

    def for_user(
        self,
        username: str,
        dates: Optional[DateRange] = None,
        amounts: Optional[AmountRange] = None,
        category: Optional[str] = None,
    ) -> list[ColoredTransaction]:
        UserService(self.session).get(username)
        if category is not None:
            CategoryService(self.session).get(category)
        return self.list(
            TransactionFilters(
                username=username,
                category=category,
                dates=dates or DateRange(),
                amounts=amounts or AmountRange(),
            )
        )

    def for_group(
        self,
        group: Group,
        dates: Optional[DateRange] = None,
        amounts: Optional[AmountRange] = None,
        category: Optional[str] = None,
    ) -> list[ColoredTransaction]:
        if category is not None:
            CategoryService(self.session).get(category)
        return self.list(
            TransactionFilters(
                usernames=GroupService(self.session).member_usernames(group),
                category=category,
                dates=dates or DateRange(),
                amounts=amounts or AmountRange(),
            )
        )

    def delete_for_user(self, username: str, transaction_id: Optional[str]) -> None:
        transaction_id = require_text(transaction_id, "id")
        user = self.session.scalar(select(User).where(User.username == username))
        if not user:
            raise NotFound(f"User {username} does not exist.")
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFound("Transaction not found.")
        if txn.username != user.username:
            raise InvalidInput(f"Transaction does not belong to user {username}.")

        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_delete: id={transaction_id} username={username}")

    def delete_many(self, ids: Optional[list[str]]) -> int:
        if not ids:
            raise InvalidInput("Must specify an array of transactions to delete.")
        if any(not value.strip() for value in ids):
            raise InvalidInput("'id' field cannot be empty.")
        unique_ids = list(dict.fromkeys(value.strip() for value in ids))

        found = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.id.in_(unique_ids)
                )
            ).scalar_one()
        )
        if found != len(unique_ids):
            raise NotFound("One or more transactions in the list do not exist.")

        try:
            self.session.execute(
                delete(Transaction)
                .where(Transaction.id.in_(unique_ids))
                .execution_options(synchronize_session="fetch")
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"transaction_bulk_delete: count={len(unique_ids)}")
        return len(unique_ids)


class AccountService:
    def __init__(self, session: Session, tokens: TokenService) -> None:
        self.session = session
        self.tokens = tokens

    def has_admin(self) -> bool:
        stmt = select(func.count(User.id)).where(User.role == Role.admin)
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def register(self, data: RegisterIn, role: Role = Role.regular) -> User:
        username = require_text(data.username, "username")
        email = require_email(data.email)
        password = require_text(data.password, "password")

        if self.session.scalar(select(User.id).where(User.email == email)):
            raise Conflict("You are already registered.")
        if self.session.scalar(select(User.id).where(User.username == username)):
            raise Conflict("A user with that username already exists.")

        user = User(
            username=username,
            email=email,
            password=hash_password(password),
            role=role,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("A user with that username or email already exists.") from exc
        self.session.refresh(user)
        logger.info(f"user_register: username={username} role={role.value}")
        return user

    def login(self, data: LoginIn) -> tuple[str, str]:
        email = require_email(data.email)
        password = require_text(data.password, "password")

        user = self.session.scalar(select(User).where(User.email == email))
        if not user:
            raise NotFound("Please you need to register.")
        if not verify_password(password, user.password):
            raise InvalidInput("Wrong credentials.")

        identity = Identity(username=user.username, email=user.email, role=user.role)
        access_token, refresh_token = self.tokens.issue_pair(identity)
        user.refresh_token = refresh_token
        self.session.commit()
        logger.info(f"user_login: username={user.username}")
        return access_token, refresh_token

    def logout(self, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            raise InvalidInput("User's refreshToken not found.")
        user = self.session.scalar(
            select(User).where(User.refresh_token == refresh_token)
        )
        if not user:
            raise NotFound("User not found.")
        user.refresh_token = None
        self.session.commit()
        logger.info(f"user_logout: username={user.username}")
