from typing import Iterable, List, Optional, Sequence, Tuple

from exceptions import ChangeUnrepresentable, InvalidAmount

DEFAULT_DENOMINATIONS: Tuple[int, ...] = (100, 50, 20, 10, 5)


def make_change(amount: int, denominations: Sequence[int] = DEFAULT_DENOMINATIONS) -> List[int]:
    """Break ``amount`` into coins, largest denominations first.

    Greedy selection is only minimal for canonical coin systems; configured
    denomination sets are checked with :func:`is_canonical` at startup.
    Raises ``ChangeUnrepresentable`` if a remainder is left once every
    denomination has been tried.
    """
    if amount < 0:
        raise InvalidAmount(f"Cannot make change for negative amount {amount}")

    change: List[int] = []
    remaining = amount
    for coin in sorted(denominations, reverse=True):
        while remaining >= coin:
            change.append(coin)
            remaining -= coin

    if remaining != 0:
        raise ChangeUnrepresentable(amount, remaining)

    return change


def _coin_count_table(limit: int, denominations: Sequence[int]) -> List[Optional[int]]:
    """Fewest coins for every amount from 0 to ``limit`` (None where unreachable)."""
    best: List[Optional[int]] = [0] + [None] * limit
    for value in range(1, limit + 1):
        counts = [
            best[value - coin]
            for coin in denominations
            if coin <= value and best[value - coin] is not None
        ]
        if counts:
            best[value] = min(counts) + 1
    return best


def minimum_coin_count(amount: int, denominations: Sequence[int]) -> Optional[int]:
    """Fewest coins summing to ``amount``, or None if no combination exists."""
    return _coin_count_table(amount, denominations)[amount]


def is_canonical(denominations: Sequence[int]) -> bool:
    """Check that greedy change-making is optimal for ``denominations``.

    The smallest coin must divide every other one, so that dividing through
    by it yields a system containing 1. For such systems the smallest amount
    where greedy loses (if any) is below the sum of the two largest coins
    (Kozen & Zaks), which bounds the search.
    """
    coins = sorted(denominations, reverse=True)
    unit = coins[-1]
    if any(coin % unit for coin in coins):
        return False
    if len(coins) < 3:
        return True

    # Work in multiples of the smallest coin; greedy(v) = 1 + greedy(v - largest coin <= v)
    scaled = [coin // unit for coin in coins]
    limit = scaled[0] + scaled[1]
    optimal = _coin_count_table(limit, scaled)
    greedy = [0] * (limit + 1)
    for amount in range(1, limit + 1):
        largest = next(coin for coin in scaled if coin <= amount)
        greedy[amount] = greedy[amount - largest] + 1
        if greedy[amount] != optimal[amount]:
            return False
    return True


def validate_denominations(values: Iterable[int]) -> Tuple[int, ...]:
    """Normalise a configured coin set to a descending tuple or raise ValueError."""
    coins = tuple(sorted(values, reverse=True))
    if not coins:
        raise ValueError("At least one coin denomination is required")
    if any(coin <= 0 for coin in coins):
        raise ValueError("Coin denominations must be positive")
    if len(set(coins)) != len(coins):
        raise ValueError("Coin denominations must be unique")
    if not is_canonical(coins):
        raise ValueError(f"Greedy change-making is not optimal for denominations {list(coins)}")
    return coins
