import datetime as dt
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from models import AccountType, BudgetPeriod, BudgetStatus, TransactionType

# Exact arithmetic in Python, plain JSON numbers on the wire and in the store.
Money = Annotated[
    Decimal, PlainSerializer(float, return_type=float, when_used="json")
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# Stored records


class Transaction(CamelModel):
    id: str
    type: TransactionType
    amount: Money
    date: dt.date
    category_id: Optional[str] = None
    account_id: Optional[str] = None
    merchant: Optional[str] = None
    notes: Optional[str] = None
    created_at: dt.datetime


class Account(CamelModel):
    id: str
    name: str
    type: AccountType = AccountType.checking
    balance: Money = Decimal("0")
    initial_balance: Money = Decimal("0")
    created_at: Optional[dt.datetime] = None


class Category(CamelModel):
    id: str
    name: str
    type: TransactionType
    color: Optional[str] = None
    icon: Optional[str] = None
    emoji: Optional[str] = None
    created_at: Optional[dt.datetime] = None


class Budget(CamelModel):
    id: str
    category_id: str
    amount: Money
    period: BudgetPeriod = BudgetPeriod.monthly
    created_at: Optional[dt.datetime] = None


class Profile(CamelModel):
    currency: str
    name: Optional[str] = None
    email: Optional[str] = None


class BudgetProgress(Budget):
    spent: Money
    remaining: Money
    percentage: float
    status: BudgetStatus


# Request bodies


class TransactionIn(CamelModel):
    type: TransactionType
    amount: Money = Field(..., gt=0)
    date: dt.date
    category_id: str = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)
    merchant: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=1000)


class TransactionUpdate(CamelModel):
    type: Optional[TransactionType] = None
    amount: Optional[Money] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    category_id: Optional[str] = Field(default=None, min_length=1)
    account_id: Optional[str] = Field(default=None, min_length=1)
    merchant: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=1000)


class AccountIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.checking
    balance: Money = Decimal("0")


class AccountUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    balance: Optional[Money] = None


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=50)
    emoji: Optional[str] = Field(default=None, max_length=16)


class CategoryUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[TransactionType] = None
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=50)
    emoji: Optional[str] = Field(default=None, max_length=16)


class BudgetIn(CamelModel):
    category_id: str = Field(..., min_length=1)
    amount: Money = Field(..., gt=0)
    period: BudgetPeriod = BudgetPeriod.monthly


class BudgetUpdate(CamelModel):
    category_id: Optional[str] = Field(default=None, min_length=1)
    amount: Optional[Money] = Field(default=None, gt=0)
    period: Optional[BudgetPeriod] = None


class ProfileUpdate(CamelModel):
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    name: Optional[str] = Field(default=None, max_length=120)


class SignupIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None


class LoginIn(BaseModel):
    email: str
    password: str
