"""Pure alert rule evaluation."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class RuleDecision:
    fired: bool
    reason: str


def evaluate_price_drop(
    old_price: Optional[Decimal],
    new_price: Decimal,
    min_drop_percent: Optional[Decimal] = None,
    min_drop_amount: Optional[Decimal] = None,
) -> RuleDecision:
    """
    PRICE_DROP fires when the price fell and the drop meets either threshold.

    With no thresholds configured any drop fires. When both are set, meeting
    one of them is enough.
    """
    if old_price is None or new_price >= old_price:
        return RuleDecision(False, "no_drop")

    drop = old_price - new_price
    drop_pct = drop / old_price * 100 if old_price > 0 else Decimal(0)

    if min_drop_percent is None and min_drop_amount is None:
        return RuleDecision(True, f"Price dropped from ${old_price:.2f} to ${new_price:.2f}")

    if min_drop_percent is not None and drop_pct >= min_drop_percent:
        return RuleDecision(
            True, f"Price dropped {drop_pct:.1f}% from ${old_price:.2f} to ${new_price:.2f}"
        )
    if min_drop_amount is not None and drop >= min_drop_amount:
        return RuleDecision(
            True, f"Price dropped ${drop:.2f} from ${old_price:.2f} to ${new_price:.2f}"
        )
    return RuleDecision(False, "below_threshold")


def evaluate_back_in_stock(old_in_stock: Optional[bool], new_in_stock: bool) -> RuleDecision:
    """BACK_IN_STOCK fires on a transition to in stock; an unknown previous state counts as out."""
    if not new_in_stock:
        return RuleDecision(False, "out_of_stock")
    if old_in_stock is True:
        return RuleDecision(False, "already_in_stock")
    return RuleDecision(True, "Product is back in stock")
