"""Ledger persistence queries and the duplicate-payout guard."""

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from settlepay.common.errors import DuplicateLedger, NotFound
from settlepay.common.logging import logger
from settlepay.common.weeks import WeekWindow
from settlepay.services.ledger.models import LedgerTimeline, PayoutLedger


class LedgerStore:
    """Query helpers over `payout_ledgers`; callers own the session/transaction."""

    def get(self, db, ledger_id: str) -> PayoutLedger:
        ledger = db.get(PayoutLedger, ledger_id)
        if ledger is None:
            raise NotFound(f"payout {ledger_id} not found", code="ledger_not_found")
        return ledger

    def find_for_week(self, db, professional_id: str, window: WeekWindow) -> PayoutLedger | None:
        return db.execute(
            select(PayoutLedger).where(
                PayoutLedger.professional_id == professional_id,
                PayoutLedger.week_start == window.start,
                PayoutLedger.week_end == window.end,
            )
        ).scalar_one_or_none()

    def find_by_gateway_payout_id(self, db, gateway_payout_id: str) -> PayoutLedger | None:
        return db.execute(
            select(PayoutLedger).where(PayoutLedger.gateway_payout_id == gateway_payout_id)
        ).scalar_one_or_none()

    def add(self, db, ledger: PayoutLedger, window: WeekWindow) -> PayoutLedger:
        """Stage a new ledger and flush it so the unique key is checked now.

        The lookup catches the common case; the unique constraint settles a
        race between two concurrent inserts. Either way the loser gets
        `DuplicateLedger` carrying the surviving row and its session is
        rolled back.
        """

        existing = self.find_for_week(db, ledger.professional_id, window)
        if existing is not None:
            raise DuplicateLedger(existing)
        db.add(ledger)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            logger.info(
                "duplicate ledger insert rejected professional_id=%s week_start=%s",
                ledger.professional_id,
                window.start.isoformat(),
            )
            existing = self.find_for_week(db, ledger.professional_id, window)
            if existing is None:
                raise
            raise DuplicateLedger(existing)
        return ledger

    def list_by_status(self, db, status: str, page: int = 1, limit: int = 50) -> tuple[list[PayoutLedger], int]:
        rows = (
            db.execute(
                select(PayoutLedger)
                .where(PayoutLedger.status == status)
                .order_by(PayoutLedger.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        total = db.execute(
            select(func.count()).select_from(PayoutLedger).where(PayoutLedger.status == status)
        ).scalar_one()
        return list(rows), int(total)

    def history(self, db, professional_id: str, page: int = 1, limit: int = 20) -> tuple[list[PayoutLedger], int]:
        rows = (
            db.execute(
                select(PayoutLedger)
                .where(PayoutLedger.professional_id == professional_id)
                .order_by(PayoutLedger.week_start.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        total = db.execute(
            select(func.count()).select_from(PayoutLedger).where(PayoutLedger.professional_id == professional_id)
        ).scalar_one()
        return list(rows), int(total)

    def stale_processing(self, db, updated_before) -> list[PayoutLedger]:
        return list(
            db.execute(
                select(PayoutLedger)
                .where(PayoutLedger.status == "processing", PayoutLedger.updated_at <= updated_before)
                .order_by(PayoutLedger.updated_at)
            )
            .scalars()
            .all()
        )

    def timeline(self, db, ledger_id: str) -> list[LedgerTimeline]:
        return list(
            db.execute(
                select(LedgerTimeline)
                .where(LedgerTimeline.ledger_id == ledger_id)
                .order_by(LedgerTimeline.created_at, LedgerTimeline.timeline_id)
            )
            .scalars()
            .all()
        )
