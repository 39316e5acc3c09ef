from dataclasses import dataclass, field
from datetime import datetime

from tokenflow.core.enums import BackfillState
from tokenflow.utils.time import get_current_datetime


@dataclass
class BackfillProgress:
    """Tracks backfill progress of a single mint"""

    mint: str
    state: BackfillState = BackfillState.PAGING
    pages: int = 0
    transactions: int = 0
    transfers: int = 0
    start_time: datetime = field(default_factory=get_current_datetime)
    last_page_time: datetime | None = None

    def update(self, transactions: int, transfers: int) -> None:
        """
        Record one consumed page.

        Args:
            transactions (int): Transactions read from the page.
            transfers (int): Transfers written from the page.
        """
        self.pages += 1
        self.transactions += transactions
        self.transfers += transfers
        self.last_page_time = get_current_datetime()

    def finish(self, state: BackfillState) -> None:
        self.state = state

    def elapsed_seconds(self) -> float:
        return (get_current_datetime() - self.start_time).total_seconds()

    def __str__(self) -> str:
        return (
            f"Backfill {self.mint}: page {self.pages}, "
            f"{self.transactions} transactions, {self.transfers} transfers "
            f"({self.elapsed_seconds():.1f}s)"
        )

    def get_completion_summary(self) -> str:
        """
        Summary line logged when the run reaches a terminal state

        Returns:
            str: Human-readable summary.
        """
        return (
            f"Backfill of {self.mint} finished ({self.state.value}): "
            f"{self.pages} pages, {self.transactions} transactions, "
            f"{self.transfers} transfers in {self.elapsed_seconds():.1f}s"
        )
