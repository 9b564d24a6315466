from __future__ import annotations

import pytest

from app.domain import MalformedEventError
from app.models import UserPosition
from app.services import ledger

from conftest import ALICE, MARKET_A


def _position(outcomes: int = 2) -> UserPosition:
    return UserPosition(
        user_address=ALICE,
        market_address=MARKET_A,
        outcome_balances=[0] * outcomes,
        lp_balance=0,
        total_claimed=0,
        has_outcome_tokens=False,
        has_lp_tokens=False,
        has_claimed=False,
    )


def test_outcome_delta_updates_balance_and_flag():
    """Verify buys and sells move one outcome balance and keep the holder flag in sync."""
    position = _position()

    assert ledger.apply_outcome_delta(position, 1, 250) == 250
    assert position.outcome_balances == [0, 250]
    assert position.has_outcome_tokens is True

    assert ledger.apply_outcome_delta(position, 1, -250) == 0
    assert position.has_outcome_tokens is False


def test_outcome_delta_clamps_oversell_to_zero():
    """Verify a sell larger than the recorded balance never produces a negative balance."""
    position = _position()
    ledger.apply_outcome_delta(position, 0, 10)

    assert ledger.apply_outcome_delta(position, 0, -25) == 0
    assert position.outcome_balances == [0, 0]
    assert position.has_outcome_tokens is False


def test_outcome_delta_rejects_unknown_outcome():
    """Verify an outcome index outside the market's outcome list is malformed."""
    position = _position(outcomes=3)

    with pytest.raises(MalformedEventError):
        ledger.apply_outcome_delta(position, 3, 1)


def test_balances_beyond_64_bits_stay_exact():
    """Verify 18-decimal token amounts are kept as exact integers."""
    position = _position()
    amount = 10**30 + 7

    ledger.apply_outcome_delta(position, 0, amount)
    ledger.apply_outcome_delta(position, 0, -7)

    assert position.outcome_balances[0] == 10**30


def test_lp_delta_and_flag():
    """Verify LP adds and removes keep has_lp_tokens equal to lp_balance > 0."""
    position = _position()

    ledger.apply_lp_delta(position, 500)
    assert position.has_lp_tokens is True
    ledger.apply_lp_delta(position, -200)
    assert position.lp_balance == 300
    ledger.apply_lp_delta(position, -400)
    assert position.lp_balance == 0
    assert position.has_lp_tokens is False


def test_record_claim_adopts_reported_total():
    """Verify a claim records the contract's running total and leaves balances alone."""
    position = _position()
    ledger.apply_outcome_delta(position, 0, 40)

    ledger.record_claim(position, 75)

    assert position.total_claimed == 75
    assert position.has_claimed is True
    assert position.outcome_balances == [40, 0]
    assert position.has_outcome_tokens is True
