"""
custody.py - Reference Custody and Swap Router

In-memory stand-ins for the asset layer the engine talks to through the
Custody and SwapRouter protocols.

InMemoryCustody keeps per-holder balances and per-asset supply. The vault
wallet is exempt from balance validation, the way a double-entry ledger
exempts its system wallet, so the engine's own holdings may go negative when
a scenario pays out more than was ever deposited.
"""

from __future__ import annotations
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import logging

from .core import VAULT_WALLET, InsufficientBalance, PriceOracle
from .units import ZERO, to_decimal, to_rate


logger = logging.getLogger(__name__)


class InMemoryCustody:
    """
    Balances and supplies held in dictionaries.

    Example:
        custody = InMemoryCustody()
        custody.credit("alice", "USDC", Decimal("1000"))
        custody.pull("alice", "USDC", Decimal("250"))
        custody.balance_of(VAULT_WALLET, "USDC")   # Decimal("250")
    """

    def __init__(self, vault: str = VAULT_WALLET):
        self.vault = vault
        self.balances: Dict[str, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
        self.supply: Dict[str, Decimal] = defaultdict(lambda: ZERO)

    # ------------------------------------------------------------------------
    # Read-only
    # ------------------------------------------------------------------------

    def balance_of(self, holder: str, asset: str) -> Decimal:
        return self.balances[holder][asset]

    def total_supply(self, asset: str) -> Decimal:
        return self.supply[asset]

    def owner_of(self, asset: str) -> Optional[str]:
        """Holder of a receipt, or None once it has been burned."""
        for holder, balances in self.balances.items():
            if balances.get(asset, ZERO) > ZERO:
                return holder
        return None

    # ------------------------------------------------------------------------
    # Custody protocol
    # ------------------------------------------------------------------------

    def pull(self, holder: str, asset: str, amount: Decimal) -> None:
        """Move `amount` from a holder into the vault."""
        amount = self._positive(amount)
        self._debit(holder, asset, amount)
        self.balances[self.vault][asset] += amount

    def push(self, holder: str, asset: str, amount: Decimal) -> None:
        """Move `amount` from the vault to a holder."""
        amount = self._positive(amount)
        self._debit(self.vault, asset, amount)
        self.balances[holder][asset] += amount

    def mint(self, holder: str, asset: str, amount: Decimal) -> None:
        amount = self._positive(amount)
        self.balances[holder][asset] += amount
        self.supply[asset] += amount

    def burn(self, holder: str, asset: str, amount: Decimal) -> None:
        amount = self._positive(amount)
        self._debit(holder, asset, amount)
        self.supply[asset] -= amount

    # ------------------------------------------------------------------------
    # Helpers outside the protocol
    # ------------------------------------------------------------------------

    def credit(self, holder: str, asset: str, amount: Decimal) -> None:
        """Issue an external asset to a holder (a faucet for simulations)."""
        self.mint(holder, asset, amount)

    def transfer(self, sender: str, recipient: str, asset: str, amount: Decimal) -> None:
        """Holder-to-holder transfer, e.g. handing LP shares or receipts on."""
        amount = self._positive(amount)
        self._debit(sender, asset, amount)
        self.balances[recipient][asset] += amount

    def exchange(self, give_asset: str, give_amount: Decimal, take_asset: str, take_amount: Decimal) -> None:
        """Rebalance the vault: `give_amount` of one asset leaves, `take_amount` of another arrives."""
        self.balances[self.vault][give_asset] -= to_decimal(give_amount)
        self.balances[self.vault][take_asset] += to_decimal(take_amount)

    def _debit(self, holder: str, asset: str, amount: Decimal) -> None:
        if holder != self.vault:
            available = self.balances[holder][asset]
            if available < amount:
                raise InsufficientBalance(f"{holder} holds {available} {asset}, needs {amount}")
        self.balances[holder][asset] -= amount

    @staticmethod
    def _positive(amount: Decimal) -> Decimal:
        amount = to_decimal(amount)
        if not amount.is_finite() or amount <= ZERO:
            raise ValueError(f"amount must be positive and finite, got {amount}")
        return amount

    def __repr__(self):
        return f"InMemoryCustody({len(self.balances)} holders, {len(self.supply)} assets)"


class OracleSwapRouter:
    """
    Swaps vault assets at the oracle's mark price plus a flat fee.

    Only the quote/base pair is supported. Every swap is recorded in `swaps`
    as (from_asset, to_asset, amount_in, amount_out).
    """

    def __init__(
        self,
        custody: InMemoryCustody,
        oracle: PriceOracle,
        quote_asset: str,
        base_asset: str,
        fee_rate: Decimal = ZERO,
    ):
        self.custody = custody
        self.oracle = oracle
        self.quote_asset = quote_asset
        self.base_asset = base_asset
        self.fee_rate = to_rate(fee_rate)
        if self.fee_rate < ZERO:
            raise ValueError(f"fee_rate cannot be negative, got {self.fee_rate}")
        self.swaps: List[Tuple[str, str, Decimal, Decimal]] = []

    def swap_exact_out(self, from_asset: str, to_asset: str, exact_amount_out: Decimal) -> Decimal:
        """Spend vault `from_asset` to receive exactly `exact_amount_out` of `to_asset`."""
        amount_out = to_decimal(exact_amount_out)
        if amount_out <= ZERO:
            raise ValueError(f"exact_amount_out must be positive, got {amount_out}")
        price = to_decimal(self.oracle.current_mark_price())
        pair = (from_asset, to_asset)
        if pair == (self.base_asset, self.quote_asset):
            amount_in = amount_out / price
        elif pair == (self.quote_asset, self.base_asset):
            amount_in = amount_out * price
        else:
            raise ValueError(f"unsupported swap {from_asset} -> {to_asset}")
        amount_in = amount_in * (1 + self.fee_rate)

        self.custody.exchange(from_asset, amount_in, to_asset, amount_out)
        self.swaps.append((from_asset, to_asset, amount_in, amount_out))
        logger.debug("swap %s %s -> %s %s at %s", amount_in, from_asset, amount_out, to_asset, price)
        return amount_in

    def __repr__(self):
        return f"OracleSwapRouter({self.base_asset}/{self.quote_asset}, fee={self.fee_rate})"
