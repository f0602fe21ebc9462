"""
Fee index accrual shared by every caller that mutates the ledger.
"""

from typing import TYPE_CHECKING

from ..core.types import IndexSnapshot

if TYPE_CHECKING:
    from .borrow import BorrowFeeEngine
    from .funding import FundingEngine


def accrue_indices(caller: str, market_id: int, borrow: "BorrowFeeEngine",
                   funding: "FundingEngine") -> IndexSnapshot:
    """
    Bring both fee engines up to now and return their indices.

    Must run before any OI change so funding accrues over the interval at
    the OI that actually held during it.
    """
    borrow_state = borrow.accrue(caller, market_id)
    funding_state = funding.accrue(caller, market_id)
    return IndexSnapshot(
        borrow_index=borrow_state.index,
        long_funding_index=funding_state.long_index,
        short_funding_index=funding_state.short_index,
    )
