"""Position ledger: integer balance arithmetic for per-(user, market) positions.

Every mutation is read-modify-write on a ``UserPosition`` row and finishes by
recomputing the derived flags from the balances, so ``has_outcome_tokens`` and
``has_lp_tokens`` can never drift from the numbers they summarize. Amounts are
base-unit token counts as emitted on chain; floats never enter this module.
"""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from app.domain import MalformedEventError
from app.models import UserPosition


def holds_outcome_tokens(balances: Sequence[int]) -> bool:
    return any(balance > 0 for balance in balances)


def refresh_flags(position: UserPosition) -> None:
    position.has_outcome_tokens = holds_outcome_tokens(position.outcome_balances)
    position.has_lp_tokens = position.lp_balance > 0


def _clamped(current: int, delta: int, *, label: str, position: UserPosition) -> int:
    updated = current + delta
    if updated < 0:
        logger.warning(
            "{} for {} in {} would go negative ({} {:+d}); clamping to zero",
            label,
            position.user_address,
            position.market_address,
            current,
            delta,
        )
        return 0
    return updated


def apply_outcome_delta(position: UserPosition, outcome: int, delta: int) -> int:
    """Add ``delta`` (negative for sells) to one outcome balance and return it."""

    balances = list(position.outcome_balances)
    if not 0 <= outcome < len(balances):
        raise MalformedEventError(
            f"Outcome index {outcome} out of range for market {position.market_address} "
            f"with {len(balances)} outcomes"
        )
    balances[outcome] = _clamped(
        balances[outcome], delta, label=f"Outcome {outcome} balance", position=position
    )
    # Assign a new list so the JSON column registers the change.
    position.outcome_balances = balances
    refresh_flags(position)
    return balances[outcome]


def apply_lp_delta(position: UserPosition, delta: int) -> int:
    position.lp_balance = _clamped(position.lp_balance, delta, label="LP balance", position=position)
    refresh_flags(position)
    return position.lp_balance


def record_claim(position: UserPosition, total_claimed: int) -> None:
    """Adopt the running total reported by the contract and mark the position claimed."""

    position.total_claimed = total_claimed
    position.has_claimed = True


__all__ = [
    "apply_lp_delta",
    "apply_outcome_delta",
    "holds_outcome_tokens",
    "record_claim",
    "refresh_flags",
]
