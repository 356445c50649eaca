import pytest
from concurrent.futures import ThreadPoolExecutor

from coins import DEFAULT_DENOMINATIONS
from exceptions import (
    AlreadyExists,
    ChangeUnrepresentable,
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
    Role,
)
from repositories import InMemoryAccountRepository, InMemoryProductRepository
from services import AccountDirectory, AccountLedger, Catalog, TransactionEngine


@pytest.fixture
def account_repo():
    return InMemoryAccountRepository()


@pytest.fixture
def product_repo():
    return InMemoryProductRepository()


@pytest.fixture
def directory(account_repo):
    return AccountDirectory(account_repo)


@pytest.fixture
def ledger(account_repo):
    return AccountLedger(account_repo, DEFAULT_DENOMINATIONS)


@pytest.fixture
def catalog(product_repo, account_repo):
    return Catalog(product_repo, account_repo, DEFAULT_DENOMINATIONS)


@pytest.fixture
def engine(account_repo, product_repo, ledger):
    return TransactionEngine(account_repo, product_repo, ledger)


@pytest.fixture
def buyer(directory):
    return directory.create_account(AccountCreateRequest(id="buyer_1", username="bob", role=Role.buyer))


@pytest.fixture
def seller(directory):
    return directory.create_account(AccountCreateRequest(id="seller_1", username="alice", role=Role.seller))


@pytest.fixture
def other_seller(directory):
    return directory.create_account(AccountCreateRequest(id="seller_2", username="carol", role=Role.seller))


def add_product(catalog, seller, cost=30, stock=5, product_id="soda"):
    return catalog.create_product(
        seller.id,
        ProductCreateRequest(id=product_id, productName="Soda", cost=cost, amountAvailable=stock)
    )


def fund(ledger, buyer, *coins):
    for coin in coins:
        ledger.deposit(buyer.id, coin)


class TestAccountLedger:
    """Test coin deposits, settlement and reset."""

    @pytest.mark.parametrize("coin", DEFAULT_DENOMINATIONS)
    def test_deposit_adds_exactly_one_coin(self, ledger, account_repo, buyer, coin):
        fund(ledger, buyer, 20)

        account = ledger.deposit(buyer.id, coin)

        assert account.deposit == 20 + coin
        assert account_repo.get(buyer.id).deposit == 20 + coin

    @pytest.mark.parametrize("amount", [0, 1, 3, 15, 25, 200, -5])
    def test_deposit_rejects_other_amounts(self, ledger, account_repo, buyer, amount):
        with pytest.raises(InvalidAmount):
            ledger.deposit(buyer.id, amount)

        assert account_repo.get(buyer.id).deposit == 0

    def test_deposit_requires_buyer(self, ledger, seller):
        with pytest.raises(Unauthorized):
            ledger.deposit(seller.id, 10)
        with pytest.raises(Unauthorized):
            ledger.deposit("nobody", 10)
        with pytest.raises(Unauthorized):
            ledger.deposit(None, 10)

    def test_settle_returns_remainder_and_zeroes_balance(self, ledger):
        account = Account(id="a", username="a", role=Role.buyer, deposit=100)

        change = ledger.settle(account, 30)

        assert change == [50, 20]
        assert account.deposit == 0

    def test_settle_exact_payment(self, ledger):
        account = Account(id="a", username="a", role=Role.buyer, deposit=50)

        assert ledger.settle(account, 50) == []
        assert account.deposit == 0

    def test_settle_insufficient_funds(self, ledger):
        account = Account(id="a", username="a", role=Role.buyer, deposit=20)

        with pytest.raises(InsufficientFunds):
            ledger.settle(account, 30)
        assert account.deposit == 20

    def test_settle_unrepresentable_keeps_balance(self, ledger):
        account = Account(id="a", username="a", role=Role.buyer, deposit=33)

        with pytest.raises(ChangeUnrepresentable):
            ledger.settle(account, 0)
        assert account.deposit == 33

    def test_reset_is_idempotent(self, ledger, account_repo, buyer):
        fund(ledger, buyer, 20, 10, 5)
        assert account_repo.get(buyer.id).deposit == 35

        assert ledger.reset(buyer.id).deposit == 0
        assert ledger.reset(buyer.id).deposit == 0
        assert account_repo.get(buyer.id).deposit == 0

    def test_reset_errors(self, ledger, seller):
        with pytest.raises(Unauthorized):
            ledger.reset(None)
        with pytest.raises(NotFound):
            ledger.reset("nobody")
        with pytest.raises(Unauthorized):
            ledger.reset(seller.id)


class TestCatalog:
    """Test product management and the ownership gate."""

    def test_creator_becomes_seller_of_record(self, catalog, seller):
        product = add_product(catalog, seller)

        assert product.seller_id == seller.id
        assert catalog.get_product("soda") == product
        assert catalog.list_products() == [product]

    def test_generated_id(self, catalog, seller):
        product = catalog.create_product(
            seller.id,
            ProductCreateRequest(productName="Chips", cost=20, amountAvailable=1)
        )

        assert product.id
        assert catalog.get_product(product.id).product_name == "Chips"

    def test_create_requires_seller(self, catalog, buyer):
        request = ProductCreateRequest(productName="Soda", cost=30, amountAvailable=5)

        with pytest.raises(Unauthorized):
            catalog.create_product(buyer.id, request)
        with pytest.raises(Unauthorized):
            catalog.create_product(None, request)

    def test_duplicate_id(self, catalog, seller):
        add_product(catalog, seller)

        with pytest.raises(AlreadyExists):
            add_product(catalog, seller)

    def test_other_seller_cannot_update(self, catalog, seller, other_seller):
        original = add_product(catalog, seller)
        request = ProductUpdateRequest(productName="Cola", cost=5, amountAvailable=99)

        with pytest.raises(Unauthorized):
            catalog.update_product(other_seller.id, "soda", request)

        assert catalog.get_product("soda") == original

    def test_other_seller_cannot_delete(self, catalog, seller, other_seller):
        add_product(catalog, seller)

        with pytest.raises(Unauthorized):
            catalog.delete_product(other_seller.id, "soda")
        with pytest.raises(Unauthorized):
            catalog.delete_product(None, "soda")

        assert catalog.get_product("soda").seller_id == seller.id

    def test_owner_updates(self, catalog, seller):
        add_product(catalog, seller)

        product = catalog.update_product(
            seller.id, "soda", ProductUpdateRequest(productName="Cola", cost=45, amountAvailable=2)
        )

        assert product.product_name == "Cola"
        assert product.cost == 45
        assert product.amount_available == 2
        assert product.seller_id == seller.id
        assert catalog.get_product("soda") == product

    def test_owner_deletes(self, catalog, seller):
        add_product(catalog, seller)

        removed = catalog.delete_product(seller.id, "soda")

        assert removed.id == "soda"
        with pytest.raises(NotFound):
            catalog.get_product("soda")

    def test_missing_product(self, catalog, seller):
        request = ProductUpdateRequest(productName="Cola", cost=5, amountAvailable=1)

        with pytest.raises(NotFound):
            catalog.update_product(seller.id, "missing", request)
        with pytest.raises(NotFound):
            catalog.delete_product(seller.id, "missing")

    @pytest.mark.parametrize("cost", [3, 12, 101])
    def test_cost_must_be_payable_in_coins(self, catalog, product_repo, seller, cost):
        with pytest.raises(InvalidAmount):
            add_product(catalog, seller, cost=cost)

        assert product_repo.count() == 0

    def test_update_rejects_unpayable_cost(self, catalog, seller):
        original = add_product(catalog, seller)

        with pytest.raises(InvalidAmount):
            catalog.update_product(
                seller.id, "soda", ProductUpdateRequest(productName="Soda", cost=7, amountAvailable=5)
            )

        assert catalog.get_product("soda") == original


class TestAccountDirectory:

    def test_duplicate_account(self, directory, buyer):
        with pytest.raises(AlreadyExists):
            directory.create_account(AccountCreateRequest(id=buyer.id, username="x", role=Role.buyer))

    def test_delete_own_account_only(self, directory, buyer, seller):
        with pytest.raises(Unauthorized):
            directory.delete_account(seller.id, buyer.id)

        assert directory.delete_account(buyer.id, buyer.id).id == buyer.id
        with pytest.raises(NotFound):
            directory.get_account(buyer.id)

    def test_update_own_account(self, directory, ledger, account_repo, buyer):
        fund(ledger, buyer, 50)

        account = directory.update_account(
            buyer.id, buyer.id, AccountUpdateRequest(username="robert", role=Role.buyer)
        )

        assert account.id == buyer.id
        assert account.username == "robert"
        assert account_repo.get(buyer.id).username == "robert"
        assert account_repo.get(buyer.id).deposit == 50

    def test_update_role(self, directory, account_repo, buyer):
        directory.update_account(buyer.id, buyer.id, AccountUpdateRequest(username="bob", role=Role.seller))

        assert account_repo.get(buyer.id).role == Role.seller

    def test_update_other_account_denied(self, directory, account_repo, buyer, seller):
        request = AccountUpdateRequest(username="mallory", role=Role.seller)

        with pytest.raises(Unauthorized):
            directory.update_account(seller.id, buyer.id, request)
        with pytest.raises(Unauthorized):
            directory.update_account(None, buyer.id, request)
        with pytest.raises(NotFound):
            directory.update_account("nobody", "nobody", request)

        assert account_repo.get(buyer.id).username == "bob"


class TestLockBookkeeping:
    """Test that locks are only kept for entities that exist."""

    def test_rejected_requests_create_no_locks(self, ledger, engine, catalog, directory, account_repo, product_repo, buyer, seller):
        fund(ledger, buyer, 100)
        locked_accounts = len(account_repo.locks)

        for i in range(200):
            with pytest.raises(Unauthorized):
                ledger.deposit(f"ghost_{i}", 5)
            with pytest.raises(NotFound):
                ledger.reset(f"ghost_{i}")
            with pytest.raises(Unauthorized):
                engine.buy(f"ghost_{i}", "soda", 1)
            with pytest.raises(NotFound):
                engine.buy(buyer.id, f"missing_{i}", 1)
            with pytest.raises(NotFound):
                catalog.delete_product(seller.id, f"missing_{i}")
            with pytest.raises(NotFound):
                directory.update_account(f"ghost_{i}", f"ghost_{i}", AccountUpdateRequest(username="x", role=Role.buyer))

        assert len(account_repo.locks) == locked_accounts
        assert len(product_repo.locks) == 0

    def test_delete_drops_lock(self, catalog, directory, account_repo, product_repo, buyer, seller):
        add_product(catalog, seller)
        assert "soda" in product_repo.locks

        catalog.delete_product(seller.id, "soda")
        directory.delete_account(buyer.id, buyer.id)

        assert "soda" not in product_repo.locks
        assert buyer.id not in account_repo.locks

    def test_delete_returns_copy(self, product_repo, seller):
        product_repo.put(Product(id="soda", product_name="Soda", cost=5, amount_available=1, seller_id=seller.id))
        stored = product_repo.entities["soda"]

        removed = product_repo.delete("soda")

        assert removed == stored
        assert removed is not stored
        assert product_repo.delete("soda") is None


class TestPurchase:
    """Test the purchase protocol."""

    def test_buy_returns_change(self, engine, ledger, catalog, account_repo, product_repo, buyer, seller):
        add_product(catalog, seller, cost=30, stock=5)
        fund(ledger, buyer, 50, 50)

        receipt = engine.buy(buyer.id, "soda", 1)

        assert receipt.total_spent == 30
        assert receipt.change == [50, 20]
        assert receipt.product.amount_available == 4
        assert product_repo.get("soda").amount_available == 4
        assert account_repo.get(buyer.id).deposit == 0

    def test_buy_several_units(self, engine, ledger, catalog, account_repo, product_repo, buyer, seller):
        add_product(catalog, seller, cost=15, stock=3)
        fund(ledger, buyer, 100)

        receipt = engine.buy(buyer.id, "soda", 3)

        assert receipt.total_spent == 45
        assert sum(receipt.change) == 100 - 45
        assert receipt.change == [50, 5]
        assert product_repo.get("soda").amount_available == 0
        assert account_repo.get(buyer.id).deposit == 0

    def test_insufficient_stock_leaves_state(self, engine, ledger, catalog, account_repo, product_repo, buyer, seller):
        add_product(catalog, seller, cost=5, stock=2)
        fund(ledger, buyer, 100)

        with pytest.raises(InsufficientStock):
            engine.buy(buyer.id, "soda", 3)

        assert product_repo.get("soda").amount_available == 2
        assert account_repo.get(buyer.id).deposit == 100

    def test_insufficient_funds_leaves_state(self, engine, ledger, catalog, account_repo, product_repo, buyer, seller):
        add_product(catalog, seller, cost=30, stock=5)
        fund(ledger, buyer, 20, 5)

        with pytest.raises(InsufficientFunds):
            engine.buy(buyer.id, "soda", 1)

        assert product_repo.get("soda").amount_available == 5
        assert account_repo.get(buyer.id).deposit == 25

    def test_unrepresentable_change_leaves_state(self, engine, ledger, catalog, account_repo, product_repo, buyer, seller):
        # Catalog refuses such a cost, so the product is stored directly
        product_repo.put(Product(id="soda", product_name="Soda", cost=3, amount_available=5, seller_id=seller.id))
        fund(ledger, buyer, 5)

        with pytest.raises(ChangeUnrepresentable):
            engine.buy(buyer.id, "soda", 1)

        assert product_repo.get("soda").amount_available == 5
        assert account_repo.get(buyer.id).deposit == 5

    def test_unknown_product(self, engine, buyer):
        with pytest.raises(NotFound):
            engine.buy(buyer.id, "missing", 1)

    def test_buyer_required(self, engine, catalog, seller):
        add_product(catalog, seller)

        with pytest.raises(Unauthorized):
            engine.buy(seller.id, "soda", 1)
        with pytest.raises(Unauthorized):
            engine.buy("nobody", "soda", 1)
        with pytest.raises(Unauthorized):
            engine.buy(None, "soda", 1)

    def test_quantity_must_be_positive(self, engine, catalog, buyer, seller):
        add_product(catalog, seller)

        with pytest.raises(InvalidAmount):
            engine.buy(buyer.id, "soda", 0)

    def test_receipt_is_a_snapshot(self, engine, ledger, catalog, buyer, seller):
        add_product(catalog, seller, cost=10, stock=5)
        fund(ledger, buyer, 10)
        receipt = engine.buy(buyer.id, "soda", 1)

        catalog.update_product(seller.id, "soda", ProductUpdateRequest(productName="Soda", cost=10, amountAvailable=50))

        assert receipt.product.amount_available == 4


class TestConcurrency:
    """Test that parallel requests do not lose updates or oversell."""

    def test_parallel_deposits(self, ledger, account_repo, buyer):
        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(lambda _: ledger.deposit(buyer.id, 5), range(100)))

        assert account_repo.get(buyer.id).deposit == 500

    def test_parallel_buyers_cannot_oversell(self, directory, ledger, catalog, engine, product_repo, seller):
        add_product(catalog, seller, cost=5, stock=3)
        buyers = [
            directory.create_account(AccountCreateRequest(id=f"buyer_{i}", username=f"b{i}", role=Role.buyer))
            for i in range(10)
        ]
        for buyer in buyers:
            fund(ledger, buyer, 5)

        def attempt(buyer):
            try:
                engine.buy(buyer.id, "soda", 1)
                return True
            except InsufficientStock:
                return False

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(attempt, buyers))

        assert results.count(True) == 3
        assert results.count(False) == 7
        assert product_repo.get("soda").amount_available == 0

    def test_parallel_purchases_spend_balance_once(self, ledger, catalog, engine, account_repo, product_repo, buyer, seller):
        add_product(catalog, seller, cost=50, stock=10)
        fund(ledger, buyer, 100)

        def attempt(_):
            try:
                return engine.buy(buyer.id, "soda", 1)
            except InsufficientFunds:
                return None

        with ThreadPoolExecutor(max_workers=5) as pool:
            receipts = [r for r in pool.map(attempt, range(5)) if r is not None]

        assert len(receipts) == 1
        assert receipts[0].change == [50]
        assert product_repo.get("soda").amount_available == 9
        assert account_repo.get(buyer.id).deposit == 0
