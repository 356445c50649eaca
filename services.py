import uuid
from typing import List, Optional, Sequence
import structlog

from coins import make_change
from config import get_settings
from exceptions import (
    AlreadyExists,
    InsufficientFunds,
    InsufficientStock,
    InvalidAmount,
    NotFound,
    Unauthorized,
)
from models import (
    Account,
    AccountCreateRequest,
    AccountUpdateRequest,
    Product,
    ProductCreateRequest,
    ProductUpdateRequest,
    PurchaseReceipt,
)
from repositories import AccountRepository, ProductRepository

# Configure structured logging
logger = structlog.get_logger()


class AccountDirectory:
    """Registration and lookup of accounts."""

    def __init__(self, account_repo: AccountRepository):
        self.account_repo = account_repo

    def create_account(self, request: AccountCreateRequest) -> Account:
        account_id = request.id or str(uuid.uuid4())
        with self.account_repo.get_lock(account_id):
            if self.account_repo.get(account_id) is not None:
                logger.warning("Account already exists", account_id=account_id)
                raise AlreadyExists(f"Account {account_id} already exists")

            account = Account(id=account_id, username=request.username, role=request.role)
            self.account_repo.put(account)

        logger.info("Account created", account_id=account_id, role=account.role.value)
        return account

    def get_account(self, account_id: str) -> Account:
        account = self.account_repo.get(account_id)
        if account is None:
            raise NotFound("User not found")
        return account

    def update_account(
        self,
        caller_id: Optional[str],
        account_id: str,
        request: AccountUpdateRequest
    ) -> Account:
        """Replace username and role of the caller's own account; the balance is kept."""
        if not caller_id or caller_id != account_id:
            logger.warning("Account update denied", caller_id=caller_id, account_id=account_id)
            raise Unauthorized()
        self.get_account(account_id)

        with self.account_repo.get_lock(account_id):
            account = self.get_account(account_id)
            account.username = request.username
            account.role = request.role
            self.account_repo.put(account)

        logger.info("Account updated", account_id=account_id, role=account.role.value)
        return account

    def delete_account(self, caller_id: Optional[str], account_id: str) -> Account:
        if not caller_id or caller_id != account_id:
            logger.warning("Account deletion denied", caller_id=caller_id, account_id=account_id)
            raise Unauthorized()
        self.get_account(account_id)

        with self.account_repo.get_lock(account_id):
            account = self.account_repo.delete(account_id)
        if account is None:
            raise NotFound("User not found")

        logger.info("Account deleted", account_id=account_id)
        return account


class AccountLedger:
    """Coin deposits and settlement of buyer balances."""

    def __init__(self, account_repo: AccountRepository, denominations: Sequence[int]):
        self.account_repo = account_repo
        self.denominations = tuple(sorted(denominations, reverse=True))

    def resolve_buyer(self, caller_id: Optional[str]) -> Account:
        """Look up the caller and check that it may deposit and buy."""
        account = self.account_repo.get(caller_id) if caller_id else None
        if account is None or not account.can_purchase:
            logger.warning("Buyer authorization failed", account_id=caller_id)
            raise Unauthorized()
        return account

    def deposit(self, caller_id: Optional[str], amount: int) -> Account:
        """Add a single coin to the caller's balance."""
        if not caller_id:
            raise Unauthorized("Missing user ID")
        # Only existing buyers get a lock
        self.resolve_buyer(caller_id)

        with self.account_repo.get_lock(caller_id):
            account = self.resolve_buyer(caller_id)
            if amount not in self.denominations:
                logger.warning("Invalid deposit amount", account_id=caller_id, amount=amount)
                raise InvalidAmount("Invalid deposit amount")

            account.deposit += amount
            self.account_repo.put(account)

        logger.info("Deposit accepted", account_id=caller_id, amount=amount, balance=account.deposit)
        return account

    def settle(self, account: Account, cost: int) -> List[int]:
        """Debit ``cost`` and pay out the rest of the balance as change.

        The change is computed before the account is touched, so a failure
        leaves the balance as it was. Afterwards the balance is exactly zero:
        unspent credit is never carried over to the next purchase.
        """
        if cost > account.deposit:
            raise InsufficientFunds()

        change = make_change(account.deposit - cost, self.denominations)
        account.deposit = 0
        return change

    def reset(self, caller_id: Optional[str]) -> Account:
        if not caller_id:
            raise Unauthorized("Missing user ID")
        self._resolve_reset_target(caller_id)

        with self.account_repo.get_lock(caller_id):
            account = self._resolve_reset_target(caller_id)
            returned = account.deposit
            account.deposit = 0
            self.account_repo.put(account)

        logger.info("Deposit reset", account_id=caller_id, returned=returned)
        return account

    def _resolve_reset_target(self, caller_id: str) -> Account:
        account = self.account_repo.get(caller_id)
        if account is None:
            raise NotFound("User not found")
        if not account.can_purchase:
            logger.warning("Reset denied for non-buyer", account_id=caller_id)
            raise Unauthorized()
        return account


class Catalog:
    """Products and the seller ownership gate."""

    def __init__(
        self,
        product_repo: ProductRepository,
        account_repo: AccountRepository,
        denominations: Sequence[int]
    ):
        self.product_repo = product_repo
        self.account_repo = account_repo
        self.smallest_coin = min(denominations)

    def _check_cost(self, cost: int) -> None:
        # Any other cost leaves a balance remainder no coin can pay out
        if cost % self.smallest_coin:
            logger.warning("Product cost not payable in coins", cost=cost, smallest_coin=self.smallest_coin)
            raise InvalidAmount(f"Cost must be a multiple of {self.smallest_coin}")

    def _resolve_seller(self, caller_id: Optional[str]) -> Account:
        account = self.account_repo.get(caller_id) if caller_id else None
        if account is None or not account.can_sell:
            logger.warning("Seller authorization failed", account_id=caller_id)
            raise Unauthorized("Missing seller ID" if not caller_id else None)
        return account

    def _get_owned(self, caller_id: Optional[str], product_id: str) -> Product:
        product = self.product_repo.get(product_id)
        if product is None:
            raise NotFound("Product not found")

        caller = self.account_repo.get(caller_id) if caller_id else None
        if caller is None or not caller.can_manage(product):
            logger.warning(
                "Ownership check failed",
                caller_id=caller_id,
                product_id=product_id,
                seller_id=product.seller_id
            )
            raise Unauthorized()
        return product

    def list_products(self) -> List[Product]:
        return self.product_repo.list()

    def get_product(self, product_id: str) -> Product:
        product = self.product_repo.get(product_id)
        if product is None:
            raise NotFound("Product not found")
        return product

    def create_product(self, caller_id: Optional[str], request: ProductCreateRequest) -> Product:
        seller = self._resolve_seller(caller_id)
        self._check_cost(request.cost)
        product_id = request.id or str(uuid.uuid4())

        with self.product_repo.get_lock(product_id):
            if self.product_repo.get(product_id) is not None:
                logger.warning("Product already exists", product_id=product_id)
                raise AlreadyExists(f"Product {product_id} already exists")

            product = Product(
                id=product_id,
                product_name=request.productName,
                cost=request.cost,
                amount_available=request.amountAvailable,
                seller_id=seller.id,
            )
            self.product_repo.put(product)

        logger.info("Product created", product_id=product_id, seller_id=seller.id)
        return product

    def update_product(
        self,
        caller_id: Optional[str],
        product_id: str,
        request: ProductUpdateRequest
    ) -> Product:
        self._get_owned(caller_id, product_id)
        self._check_cost(request.cost)

        with self.product_repo.get_lock(product_id):
            product = self._get_owned(caller_id, product_id)
            product.product_name = request.productName
            product.cost = request.cost
            product.amount_available = request.amountAvailable
            self.product_repo.put(product)

        logger.info("Product updated", product_id=product_id, seller_id=product.seller_id)
        return product

    def delete_product(self, caller_id: Optional[str], product_id: str) -> Product:
        self._get_owned(caller_id, product_id)

        with self.product_repo.get_lock(product_id):
            product = self._get_owned(caller_id, product_id)
            self.product_repo.delete(product_id)

        logger.info("Product deleted", product_id=product_id, seller_id=product.seller_id)
        return product


class TransactionEngine:
    """Runs purchases against the ledger and the catalog."""

    def __init__(
        self,
        account_repo: AccountRepository,
        product_repo: ProductRepository,
        ledger: AccountLedger
    ):
        self.account_repo = account_repo
        self.product_repo = product_repo
        self.ledger = ledger

    def buy(self, caller_id: Optional[str], product_id: str, quantity: int) -> PurchaseReceipt:
        """Buy ``quantity`` units of a product with the caller's deposit.

        Locks are taken buyer first, then product. Every check, including
        making change, runs before the first write, so a failed purchase
        leaves both stock and balance untouched.
        """
        logger.info(
            "Processing purchase",
            account_id=caller_id,
            product_id=product_id,
            quantity=quantity
        )

        if quantity < 1:
            raise InvalidAmount("Quantity must be at least 1")
        if not caller_id:
            raise Unauthorized("Missing user ID")
        # Only existing entities get a lock; both are looked up again once locked
        self.ledger.resolve_buyer(caller_id)
        self._resolve_product(caller_id, product_id)

        with self.account_repo.get_lock(caller_id), self.product_repo.get_lock(product_id):
            buyer = self.ledger.resolve_buyer(caller_id)
            product = self._resolve_product(caller_id, product_id)

            if quantity > product.amount_available:
                logger.warning(
                    "Insufficient product quantity",
                    product_id=product_id,
                    requested=quantity,
                    available=product.amount_available
                )
                raise InsufficientStock()

            total_cost = product.cost * quantity
            if total_cost > buyer.deposit:
                logger.warning(
                    "Insufficient funds for purchase",
                    account_id=caller_id,
                    balance=buyer.deposit,
                    total_cost=total_cost
                )
                raise InsufficientFunds()

            change = self.ledger.settle(buyer, total_cost)
            product.amount_available -= quantity

            self.product_repo.put(product)
            self.account_repo.put(buyer)

        logger.info(
            "Purchase completed",
            account_id=caller_id,
            product_id=product_id,
            total_cost=total_cost,
            change=change,
            remaining_stock=product.amount_available
        )

        return PurchaseReceipt(total_spent=total_cost, product=product, change=change)

    def _resolve_product(self, caller_id: str, product_id: str) -> Product:
        product = self.product_repo.get(product_id)
        if product is None:
            logger.warning("Product not found", account_id=caller_id, product_id=product_id)
            raise NotFound("Product not found")
        return product


# Factory functions for dependency injection
def get_account_directory(account_repo: AccountRepository) -> AccountDirectory:
    return AccountDirectory(account_repo)


def get_account_ledger(
    account_repo: AccountRepository,
    denominations: Optional[Sequence[int]] = None
) -> AccountLedger:
    if denominations is None:
        denominations = get_settings().coin_denominations
    return AccountLedger(account_repo, denominations)


def get_catalog(
    product_repo: ProductRepository,
    account_repo: AccountRepository,
    denominations: Optional[Sequence[int]] = None
) -> Catalog:
    if denominations is None:
        denominations = get_settings().coin_denominations
    return Catalog(product_repo, account_repo, denominations)


def get_transaction_engine(
    account_repo: AccountRepository,
    product_repo: ProductRepository,
    denominations: Optional[Sequence[int]] = None
) -> TransactionEngine:
    return TransactionEngine(account_repo, product_repo, get_account_ledger(account_repo, denominations))
