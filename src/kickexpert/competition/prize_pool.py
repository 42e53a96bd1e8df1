"""Prize-pool tiers, prize amounts, XP and trophy rules.

Pure functions, no I/O. The pool scales with the number of players who
actually completed the competition:

    < 50 players   -> 40% of revenue, 3 winners
    < 100 players  -> 45% of revenue, 5 winners
    100+ players   -> 50% of revenue, 10 winners
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

_SMALL_TIER_LIMIT = 50
_MEDIUM_TIER_LIMIT = 100

_WINNER_XP_PER_ANSWER = 5

# (keyword in competition name, value), checked in order
_CREDIT_COST_BY_TIER = (("Starter", 5), ("Pro", 10), ("Elite", 20))
_DEFAULT_CREDIT_COST = 5
_PARTICIPATION_XP_BY_TIER = (("Starter", 10), ("Pro", 20), ("Elite", 30))
_DEFAULT_PARTICIPATION_XP = 10

_TROPHY_TITLES = {
    1: "Champion",
    2: "Runner-up",
    3: "Third Place",
    4: "Fourth Place",
    5: "Fifth Place",
    6: "Sixth Place",
    7: "Seventh Place",
    8: "Eighth Place",
    9: "Ninth Place",
    10: "Tenth Place",
}


@dataclass(frozen=True)
class PrizePoolConfig:
    """Share of revenue paid out, number of paid ranks and per-rank fractions."""

    percentage: float
    winner_count: int
    distribution: tuple[float, ...]


def calculate_prize_pool(participant_count: int, credit_cost: int = 0) -> PrizePoolConfig:  # noqa: ARG001
    """Return the prize-pool tier for the number of completed sessions.

    ``credit_cost`` does not influence the tier; it is accepted so callers can
    pass the full pool context in one place.
    """
    if participant_count < _SMALL_TIER_LIMIT:
        return PrizePoolConfig(
            percentage=0.4,
            winner_count=3,
            distribution=(0.2, 0.12, 0.08),
        )
    if participant_count < _MEDIUM_TIER_LIMIT:
        return PrizePoolConfig(
            percentage=0.45,
            winner_count=5,
            distribution=(0.2, 0.12, 0.07, 0.03, 0.03),
        )
    return PrizePoolConfig(
        percentage=0.5,
        winner_count=10,
        distribution=(0.2, 0.1, 0.07, 0.04, 0.03, 0.02, 0.01, 0.01, 0.01, 0.01),
    )


def _exact(fraction: float) -> Decimal:
    # repr() gives the shortest decimal string, so 0.07 stays 0.07 and not 0.07000000000000000666
    return Decimal(repr(fraction))


def prize_for_rank(config: PrizePoolConfig, rank: int, total_revenue: int) -> int:
    """Credits paid to ``rank``: ceil(revenue * fraction) for winners, else 0."""
    if rank < 1 or rank > config.winner_count or rank > len(config.distribution):
        return 0
    amount = Decimal(total_revenue) * _exact(config.distribution[rank - 1])
    return int(amount.to_integral_value(rounding=ROUND_CEILING))


def prize_pool_total(config: PrizePoolConfig, total_revenue: int) -> int:
    """Advertised pool size: floor(revenue * percentage)."""
    amount = Decimal(total_revenue) * _exact(config.percentage)
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def resolve_credit_cost(competition_name: str | None, credit_cost: int | None) -> int:
    """Entry fee of a competition, falling back to the name-based tier price."""
    if credit_cost:
        return credit_cost
    name = competition_name or ""
    for keyword, cost in _CREDIT_COST_BY_TIER:
        if keyword in name:
            return cost
    return _DEFAULT_CREDIT_COST


def xp_for_rank(rank: int, correct_answers: int, competition_name: str | None, winner_count: int) -> int:
    """XP for a finisher.

    Winners earn 5 XP per correct answer; everyone else earns a flat
    participation amount based on the competition tier.
    """
    if rank <= winner_count:
        return correct_answers * _WINNER_XP_PER_ANSWER
    name = competition_name or ""
    for keyword, xp in _PARTICIPATION_XP_BY_TIER:
        if keyword in name:
            return xp
    return _DEFAULT_PARTICIPATION_XP


def trophy_title(rank: int) -> str:
    return _TROPHY_TITLES.get(rank, f"Place {rank}")


def ordinal(rank: int) -> str:
    """1 -> '1st', 2 -> '2nd', 11 -> '11th'."""
    if 10 <= rank % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(rank % 10, "th")
    return f"{rank}{suffix}"


def expected_payout(config: PrizePoolConfig, participant_count: int, total_revenue: int) -> int:
    """Sum of prizes actually paid for ``participant_count`` finishers."""
    paid_ranks = min(config.winner_count, participant_count)
    return sum(prize_for_rank(config, rank, total_revenue) for rank in range(1, paid_ranks + 1))

