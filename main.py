import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import REFRESHED_TOKEN_MESSAGE, Identity, Resolution, TokenService
from config import get_settings
from database import SessionLocal
from errors import ServiceError
from filters import (
    AmountRange,
    DateRange,
    TransactionFilters,
    resolve_amount_range,
    resolve_date_range,
)
from models import Category, Group as GroupModel, Role, Transaction, User as UserModel
from policies import Admin, AuthorizationError, Group, Policy, Simple, User, require
from schemas import (
    CategoryDeleteIn,
    CategoryIn,
    GroupDeleteIn,
    GroupEmailsIn,
    GroupIn,
    LoginIn,
    RegisterIn,
    TransactionBulkDeleteIn,
    TransactionDeleteIn,
    TransactionIn,
    UserDeleteIn,
)
from services import (
    AccountService,
    CategoryService,
    ColoredTransaction,
    GroupService,
    MembershipChange,
    TransactionService,
    UserService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Household Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache(maxsize=1)
def get_token_service() -> TokenService:
    return TokenService(
        settings.access_key,
        access_ttl_secs=settings.access_token_ttl_secs,
        refresh_ttl_secs=settings.refresh_token_ttl_secs,
    )


def _set_token_cookie(response: Response, name: str, token: str, max_age: int) -> None:
    response.set_cookie(
        name, token, httponly=True, max_age=max_age, samesite="none", secure=True
    )


class AuthContext:
    """Per-request authentication state handed to route handlers."""

    def __init__(self, resolution: Resolution) -> None:
        self.resolution = resolution

    @property
    def identity(self) -> Optional[Identity]:
        return self.resolution.identity

    def require(self, *policies: Policy) -> Identity:
        if self.resolution.failure is not None:
            logger.info(f"auth_failed: reason={self.resolution.failure}")
            raise AuthorizationError(self.resolution.failure)
        return require(self.resolution.identity, *policies)

    def envelope(self, payload: object) -> dict[str, object]:
        body: dict[str, object] = {"data": payload}
        if self.resolution.refreshed_access_token:
            body["refreshedTokenMessage"] = REFRESHED_TOKEN_MESSAGE
        return body


def get_auth(
    request: Request,
    response: Response,
    tokens: TokenService = Depends(get_token_service),
) -> AuthContext:
    resolution = tokens.resolve(
        request.cookies.get("accessToken"), request.cookies.get("refreshToken")
    )
    if resolution.refreshed_access_token:
        _set_token_cookie(
            response,
            "accessToken",
            resolution.refreshed_access_token,
            tokens.access_ttl_secs,
        )
    return AuthContext(resolution)


def filters_from_request(request: Request) -> tuple[DateRange, AmountRange]:
    params = request.query_params
    dates = resolve_date_range(params.get("date"), params.get("from"), params.get("upTo"))
    amounts = resolve_amount_range(params.get("min"), params.get("max"))
    return dates, amounts


def category_out(category: Category) -> dict[str, object]:
    return {"type": category.type, "color": category.color}


def transaction_out(txn: Transaction, color: Optional[str] = None) -> dict[str, object]:
    data: dict[str, object] = {
        "_id": txn.id,
        "username": txn.username,
        "type": txn.type,
        "amount": txn.amount,
        "date": txn.date.isoformat(),
    }
    if color is not None:
        data["color"] = color
    return data


def colored_out(rows: list[ColoredTransaction]) -> list[dict[str, object]]:
    return [transaction_out(row.transaction, row.color) for row in rows]


def user_out(user: UserModel) -> dict[str, object]:
    return {"username": user.username, "email": user.email, "role": user.role.value}


def group_out(group: GroupModel) -> dict[str, object]:
    return {
        "name": group.name,
        "members": [{"email": member.email} for member in group.members],
    }


def membership_out(change: MembershipChange, *, removal: bool = False) -> dict[str, object]:
    data: dict[str, object] = {"group": group_out(change.group)}
    if removal:
        data["notInGroup"] = [{"email": email} for email in change.not_in_group]
    else:
        data["alreadyInGroup"] = [{"email": email} for email in change.already_in_group]
    data["membersNotFound"] = [{"email": email} for email in change.members_not_found]
    return data


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=400, content={"message": str(exc)})


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    return JSONResponse(status_code=401, content={"error": exc.reason})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()))
        message = f"Invalid request: {location} {errors[0].get('msg', '')}".strip()
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Accounts


@app.post("/register")
def register(
    data: RegisterIn,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
):
    AccountService(db, tokens).register(data)
    return {"data": {"message": "User added successfully"}}


@app.post("/admin")
def register_admin(
    data: RegisterIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
):
    accounts = AccountService(db, tokens)
    if accounts.has_admin():
        auth.require(Admin())
    accounts.register(data, role=Role.admin)
    return {"data": {"message": "Admin added successfully"}}


@app.post("/login")
def login(
    data: LoginIn,
    response: Response,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
):
    access_token, refresh_token = AccountService(db, tokens).login(data)
    _set_token_cookie(response, "accessToken", access_token, tokens.access_ttl_secs)
    _set_token_cookie(response, "refreshToken", refresh_token, tokens.refresh_ttl_secs)
    return {"data": {"accessToken": access_token, "refreshToken": refresh_token}}


@app.get("/logout")
def logout(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
):
    AccountService(db, tokens).logout(request.cookies.get("refreshToken"))
    response.delete_cookie("accessToken", httponly=True, samesite="none", secure=True)
    response.delete_cookie("refreshToken", httponly=True, samesite="none", secure=True)
    return {"data": {"message": "Successfully logged out."}}


# Categories


@app.post("/categories")
def create_category(
    data: CategoryIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    category = CategoryService(db).create(data)
    return auth.envelope(category_out(category))


@app.patch("/categories/{category_type}")
def update_category(
    category_type: str,
    data: CategoryIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    return auth.envelope(CategoryService(db).update(category_type, data))


@app.delete("/categories")
def delete_categories(
    data: CategoryDeleteIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    return auth.envelope(CategoryService(db).delete(data.types))


@app.get("/categories")
def list_categories(auth: AuthContext = Depends(get_auth), db: Session = Depends(get_db)):
    auth.require(Simple())
    return auth.envelope([category_out(c) for c in CategoryService(db).list_all()])


# Transactions


@app.post("/users/{username}/transactions")
def create_transaction(
    username: str,
    data: TransactionIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(User(username), Admin())
    txn = TransactionService(db).create(username, data)
    return auth.envelope(transaction_out(txn))


@app.get("/transactions")
def list_all_transactions(
    request: Request,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    dates, amounts = filters_from_request(request)
    rows = TransactionService(db).list(
        TransactionFilters(dates=dates, amounts=amounts)
    )
    return auth.envelope(colored_out(rows))


@app.get("/users/{username}/transactions")
def user_transactions(
    username: str,
    request: Request,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(User(username))
    dates, amounts = filters_from_request(request)
    rows = TransactionService(db).for_user(username, dates, amounts)
    return auth.envelope(colored_out(rows))


@app.get("/transactions/users/{username}")
def admin_user_transactions(
    username: str,
    request: Request,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    dates, amounts = filters_from_request(request)
    rows = TransactionService(db).for_user(username, dates, amounts)
    return auth.envelope(colored_out(rows))


@app.get("/users/{username}/transactions/category/{category}")
def user_category_transactions(
    username: str,
    category: str,
    request: Request,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(User(username))
    dates, amounts = filters_from_request(request)
    rows = TransactionService(db).for_user(username, dates, amounts, category=category)
    return auth.envelope(colored_out(rows))


@app.get("/transactions/users/{username}/category/{category}")
def admin_user_category_transactions(
    username: str,
    category: str,
    request: Request,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    dates, amounts = filters_from_request(request)
    rows = TransactionService(db).for_user(username, dates, amounts, category=category)
    return auth.envelope(colored_out(rows))


@app.get("/groups/{name}/transactions")
def group_transactions(
    name: str,
    request: Request,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Simple())
    group = GroupService(db).get(name)
    auth.require(Group.of(group.member_emails))
    dates, amounts = filters_from_request(request)
    rows = TransactionService(db).for_group(group, dates, amounts)
    return auth.envelope(colored_out(rows))


@app.get("/transactions/groups/{name}")
def admin_group_transactions(
    name: str,
    request: Request,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    group = GroupService(db).get(name)
    dates, amounts = filters_from_request(request)
    rows = TransactionService(db).for_group(group, dates, amounts)
    return auth.envelope(colored_out(rows))


@app.get("/groups/{name}/transactions/category/{category}")
def group_category_transactions(
    name: str,
    category: str,
    request: Request,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Simple())
    group = GroupService(db).get(name)
    auth.require(Group.of(group.member_emails))
    dates, amounts = filters_from_request(request)
    rows = TransactionService(db).for_group(group, dates, amounts, category=category)
    return auth.envelope(colored_out(rows))


@app.get("/transactions/groups/{name}/category/{category}")
def admin_group_category_transactions(
    name: str,
    category: str,
    request: Request,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    group = GroupService(db).get(name)
    dates, amounts = filters_from_request(request)
    rows = TransactionService(db).for_group(group, dates, amounts, category=category)
    return auth.envelope(colored_out(rows))


@app.delete("/users/{username}/transactions")
def delete_transaction(
    username: str,
    data: TransactionDeleteIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(User(username), Admin())
    TransactionService(db).delete_for_user(username, data.id)
    return auth.envelope({"message": "Transaction deleted"})


@app.delete("/transactions")
def delete_transactions(
    data: TransactionBulkDeleteIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    TransactionService(db).delete_many(data.ids)
    return auth.envelope({"message": "Successfully deleted transactions."})


# Users


@app.get("/users")
def list_users(auth: AuthContext = Depends(get_auth), db: Session = Depends(get_db)):
    auth.require(Admin())
    return auth.envelope([user_out(u) for u in UserService(db).list_all()])


@app.get("/users/{username}")
def get_user(
    username: str,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(User(username), Admin())
    return auth.envelope(user_out(UserService(db).get(username)))


@app.delete("/users")
def delete_user(
    data: UserDeleteIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    result = UserService(db).delete(data.email)
    return auth.envelope(
        {
            "deletedTransactions": result.deleted_transactions,
            "deletedFromGroup": result.deleted_from_group,
        }
    )


# Groups


@app.post("/groups")
def create_group(
    data: GroupIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    identity = auth.require(Simple())
    change = GroupService(db).create(identity, data)
    return auth.envelope(membership_out(change))


@app.get("/groups")
def list_groups(auth: AuthContext = Depends(get_auth), db: Session = Depends(get_db)):
    auth.require(Admin())
    return auth.envelope([group_out(g) for g in GroupService(db).list_all()])


@app.get("/groups/{name}")
def get_group(
    name: str,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Simple())
    group = GroupService(db).get(name)
    auth.require(Group.of(group.member_emails), Admin())
    return auth.envelope(group_out(group))


@app.patch("/groups/{name}/add")
def add_to_group(
    name: str,
    data: GroupEmailsIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Simple())
    groups = GroupService(db)
    auth.require(Group.of(groups.get(name).member_emails))
    return auth.envelope(membership_out(groups.add_members(name, data.emails)))


@app.patch("/groups/{name}/insert")
def admin_add_to_group(
    name: str,
    data: GroupEmailsIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    change = GroupService(db).add_members(name, data.emails)
    return auth.envelope(membership_out(change))


@app.patch("/groups/{name}/remove")
def remove_from_group(
    name: str,
    data: GroupEmailsIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Simple())
    groups = GroupService(db)
    auth.require(Group.of(groups.get(name).member_emails))
    change = groups.remove_members(name, data.emails)
    return auth.envelope(membership_out(change, removal=True))


@app.patch("/groups/{name}/pull")
def admin_remove_from_group(
    name: str,
    data: GroupEmailsIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    change = GroupService(db).remove_members(name, data.emails)
    return auth.envelope(membership_out(change, removal=True))


@app.delete("/groups")
def delete_group(
    data: GroupDeleteIn,
    auth: AuthContext = Depends(get_auth),
    db: Session = Depends(get_db),
):
    auth.require(Admin())
    GroupService(db).delete(data.name)
    return auth.envelope({"message": "Group successfully deleted."})


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
