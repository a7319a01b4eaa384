import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from database import Database
from ledger import LoanLedger
from loan import LoanStatus, compute_days_overdue, to_iso, utcnow
from validators import FINE_RATE_MESSAGE, validate_amount

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    updated_count: int
    skipped_count: int
    fine_per_day: float
    timestamp: datetime
    trigger: str = "manual"

    def to_dict(self) -> dict:
        return {
            "updated_count": self.updated_count,
            "skipped_count": self.skipped_count,
            "fine_per_day": self.fine_per_day,
            "timestamp": to_iso(self.timestamp),
            "trigger": self.trigger,
        }


class OverdueSweeper:
    """Recomputes status, days overdue and fine for every open loan past its due date.

    Each run overwrites the fine from scratch (``days_overdue * fine_per_day``),
    so repeating a sweep for the same instant changes nothing, and the fine
    only grows as time passes.
    """

    def __init__(self, db: Database, ledger: LoanLedger, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.ledger = ledger
        self.clock = clock

    def sweep(self, fine_per_day, as_of: Optional[datetime] = None, trigger: str = "manual") -> SweepReport:
        rate = validate_amount(fine_per_day, FINE_RATE_MESSAGE)
        as_of = as_of or self.clock()

        loans, malformed = self.ledger.scan_active_loans(as_of)
        updated = 0
        skipped = len(malformed)
        for loan in loans:
            days = compute_days_overdue(loan.due_date, as_of)
            fields = {
                "status": LoanStatus.OVERDUE,
                "days_overdue": days,
                "fine": days * rate,
                "last_recalculated_at": as_of,
            }
            try:
                # Status is re-checked in the write itself so a concurrent return is never undone.
                if self.ledger.update_loan(loan.id, fields, expected_statuses=LoanStatus.open_statuses()):
                    updated += 1
                else:
                    logger.info(f"Loan {loan.id} was returned during the sweep; left untouched")
            except (sqlite3.Error, ValueError) as e:
                skipped += 1
                logger.error(f"Failed to recalculate loan {loan.id}: {e}")

        report = SweepReport(
            updated_count=updated,
            skipped_count=skipped,
            fine_per_day=rate,
            timestamp=as_of,
            trigger=trigger,
        )
        try:
            self.db.record_fine_update(to_iso(as_of), updated, skipped, rate, trigger)
        except sqlite3.Error as e:
            logger.error(f"Failed to record fine update log: {e}")

        logger.info(f"Overdue sweep ({trigger}) updated {updated} loans at {rate} per day; skipped {skipped}")
        return report
