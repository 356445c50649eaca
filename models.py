from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum
from typing import List, Optional
from datetime import datetime
import re


class Role(str, Enum):
    buyer = "buyer"
    seller = "seller"


# Domain entities

class Product(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str
    product_name: str
    cost: int = Field(..., ge=0)
    amount_available: int = Field(..., ge=0)
    seller_id: str


class Account(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str
    username: str
    role: Role
    deposit: int = Field(0, ge=0)

    @property
    def can_purchase(self) -> bool:
        """Only buyers may deposit coins, reset their balance and buy."""
        return self.role == Role.buyer

    @property
    def can_sell(self) -> bool:
        return self.role == Role.seller

    def can_manage(self, product: Product) -> bool:
        """Ownership gate: only the seller of record may edit or remove a product."""
        return self.can_sell and product.seller_id == self.id


class PurchaseReceipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_spent: int
    product: Product
    change: List[int]


# API models

_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


def _check_id(v: Optional[str]) -> Optional[str]:
    if v is not None and not _ID_PATTERN.match(v):
        raise ValueError('Id must contain only alphanumeric characters, underscores, and hyphens')
    return v


class AccountUpdateRequest(BaseModel):
    # No deposit field: balances only change through coin deposits and purchases
    username: str = Field(..., min_length=1, max_length=50, description="Display name")
    role: Role = Field(..., description="Account role")


class AccountCreateRequest(AccountUpdateRequest):
    id: Optional[str] = Field(
        None,
        min_length=1,
        max_length=64,
        description="Account identifier (generated when omitted)"
    )

    @field_validator('id')
    @classmethod
    def validate_id(cls, v):
        return _check_id(v)


class ProductUpdateRequest(BaseModel):
    productName: str = Field(..., min_length=1, max_length=100, description="Product name")
    cost: int = Field(..., ge=0, description="Unit cost in the smallest coin unit")
    amountAvailable: int = Field(..., ge=0, description="Units in stock")


class ProductCreateRequest(ProductUpdateRequest):
    id: Optional[str] = Field(
        None,
        min_length=1,
        max_length=64,
        description="Product identifier (generated when omitted)"
    )

    @field_validator('id')
    @classmethod
    def validate_id(cls, v):
        return _check_id(v)


class DepositRequest(BaseModel):
    amount: int = Field(..., description="A single accepted coin denomination")


class BuyRequest(BaseModel):
    productId: str = Field(..., min_length=1, max_length=64, description="Product identifier")
    amount: int = Field(..., gt=0, description="Number of units to buy")


class AccountResponse(BaseModel):
    id: str
    username: str
    role: Role
    deposit: int = Field(..., description="Current balance")

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(id=account.id, username=account.username, role=account.role, deposit=account.deposit)


class ProductResponse(BaseModel):
    id: str
    productName: str
    cost: int
    amountAvailable: int
    sellerId: str

    @classmethod
    def from_product(cls, product: Product) -> "ProductResponse":
        return cls(
            id=product.id,
            productName=product.product_name,
            cost=product.cost,
            amountAvailable=product.amount_available,
            sellerId=product.seller_id,
        )


class PurchaseResponse(BaseModel):
    totalSpent: int = Field(..., description="Cost of the purchased units")
    productsBought: List[ProductResponse] = Field(..., description="Purchased product after stock debit")
    change: List[int] = Field(..., description="Coins returned, largest first")

    @classmethod
    def from_receipt(cls, receipt: PurchaseReceipt) -> "PurchaseResponse":
        return cls(
            totalSpent=receipt.total_spent,
            productsBought=[ProductResponse.from_product(receipt.product)],
            change=list(receipt.change),
        )


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of registered accounts")
    products_count: int = Field(..., description="Number of products in the catalog")
    coin_denominations: List[int] = Field(..., description="Accepted coins, largest first")
