from typing import Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
)


# Field presence, emptiness and format are checked by the services.


class CategoryIn(BaseModel):
    type: Optional[str] = None
    color: Optional[str] = None


class CategoryDeleteIn(BaseModel):
    types: Optional[list[str]] = None


class TransactionIn(BaseModel):
    username: Optional[str] = None
    type: Optional[str] = None
    amount: Optional[Union[StrictFloat, StrictInt, StrictStr]] = None
    date: Optional[str] = None


class TransactionDeleteIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")


class TransactionBulkDeleteIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ids: Optional[list[str]] = Field(default=None, alias="_ids")


class RegisterIn(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class GroupIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    member_emails: Optional[list[str]] = Field(default=None, alias="memberEmails")


class GroupEmailsIn(BaseModel):
    emails: Optional[list[str]] = None


class UserDeleteIn(BaseModel):
    email: Optional[str] = None


class GroupDeleteIn(BaseModel):
    name: Optional[str] = None
