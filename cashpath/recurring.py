"""
Recurring transactions.

A *template* is a transaction with ``is_recurring`` set, a frequency and no
``recurring_template_id``. Once a day the scheduler finds the templates whose
next occurrence is due and emits one ``RecurringWorkUnit`` per template; the
worker turns each unit into a dated occurrence, moves the wallet balance and
advances the template's ``last_processed_at`` cursor.

The unique ``(recurring_template_id, date)`` key on transactions makes a
re-delivered unit harmless: the occurrence is found instead of created again.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from typing import Callable, Iterable, List

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import models
from .database import atomic
from .ledger import adjust_balance

logger = logging.getLogger(__name__)

PERIODS = {
    "daily": relativedelta(days=1),
    "weekly": relativedelta(weeks=1),
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(years=1),
}

OCCURRENCE_SUFFIX = "(recurring transaction)"
OCCURRENCE_DEFAULT_DESCRIPTION = "Automatic recurring transaction"


class RecurringWorkUnit(BaseModel):
    """Snapshot of a due template, taken when the scheduler ran."""

    transaction_id: int
    user_id: int
    name: str
    type: str
    amount: int
    category_id: int
    wallet_id: int
    frequency: str
    description: str | None = None
    original_date: datetime


def start_of_day(moment: datetime) -> datetime:
    return datetime(moment.year, moment.month, moment.day)


def next_occurrence(reference: datetime, frequency: str) -> datetime:
    if frequency not in PERIODS:
        raise ValueError(f"Unknown frequency: {frequency!r}")
    return reference + PERIODS[frequency]


def is_due(
    last_processed_at: datetime | None,
    original_date: datetime,
    frequency: str,
    today: datetime | date,
) -> bool:
    """
    True when the template's next occurrence falls before or on ``today``.

    Only calendar days are compared, time of day is ignored.
    """
    reference = last_processed_at or original_date
    upcoming = next_occurrence(reference, frequency)
    today_day = today.date() if isinstance(today, datetime) else today
    return upcoming.date() <= today_day


def occurrence_description(template_description: str | None) -> str:
    if template_description:
        return f"{template_description} {OCCURRENCE_SUFFIX}"
    return OCCURRENCE_DEFAULT_DESCRIPTION


class RecurringScheduler:
    def __init__(self, db: Session):
        self.db = db

    def candidates(self, today: datetime, user_id: int | None = None) -> List[models.Transaction]:
        query = (
            self.db.query(models.Transaction)
            .filter(models.Transaction.is_recurring.is_(True))
            .filter(models.Transaction.frequency.isnot(None))
            .filter(models.Transaction.recurring_template_id.is_(None))
            .filter(models.Transaction.date <= start_of_day(today))
        )
        if user_id is not None:
            query = query.filter(models.Transaction.user_id == user_id)
        return query.order_by(models.Transaction.id.asc()).all()

    def due_units(self, today: datetime | None = None, user_id: int | None = None) -> List[RecurringWorkUnit]:
        today = start_of_day(today or datetime.utcnow())
        units = []
        for tx in self.candidates(today, user_id):
            try:
                due = is_due(tx.last_processed_at, tx.date, tx.frequency, today)
            except ValueError as exc:
                logger.warning("skipping recurring template %s: %s", tx.id, exc)
                continue
            if not due:
                continue
            units.append(
                RecurringWorkUnit(
                    transaction_id=tx.id,
                    user_id=tx.user_id,
                    name=tx.name,
                    type=tx.type,
                    amount=tx.amount,
                    category_id=tx.category_id,
                    wallet_id=tx.wallet_id,
                    frequency=tx.frequency,
                    description=tx.description,
                    original_date=tx.date,
                )
            )
        return units

    def run(
        self,
        dispatch: Callable[[List[RecurringWorkUnit]], object],
        today: datetime | None = None,
        user_id: int | None = None,
    ) -> dict:
        """Find due templates and hand them to ``dispatch``."""
        units = self.due_units(today, user_id)
        if not units:
            logger.info("no recurring transactions due (user=%s)", user_id)
            return {"processed": 0, "message": "No transactions due for processing today"}

        dispatch(units)
        logger.info("queued %d recurring transactions (user=%s)", len(units), user_id)
        return {"processed": len(units), "message": f"Queued {len(units)} recurring transactions for processing"}


class RecurringWorker:
    """
    Processes one work unit in three steps:

    1. create the occurrence dated today,
    2. apply its effect to the wallet,
    3. move the template's ``last_processed_at`` cursor to now.

    Steps 1 and 2 commit together. Step 3 commits on its own.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_transaction_entry(self, db: Session, unit: RecurringWorkUnit, today: datetime) -> models.Transaction:
        occurrence = models.Transaction(
            user_id=unit.user_id,
            name=unit.name,
            type=unit.type,
            amount=unit.amount,
            date=today,
            category_id=unit.category_id,
            wallet_id=unit.wallet_id,
            is_recurring=True,
            frequency=unit.frequency,
            recurring_template_id=unit.transaction_id,
            description=occurrence_description(unit.description),
        )
        db.add(occurrence)
        return occurrence

    def update_wallet_balance(self, db: Session, unit: RecurringWorkUnit) -> None:
        adjust_balance(db, unit.wallet_id, models.signed_amount(unit.type, unit.amount))

    def update_last_processed_at(self, db: Session, unit: RecurringWorkUnit, now: datetime) -> None:
        db.query(models.Transaction).filter(models.Transaction.id == unit.transaction_id).update(
            {models.Transaction.last_processed_at: now, models.Transaction.updated_at: now}
        )

    def _existing_occurrence(self, db: Session, unit: RecurringWorkUnit, today: datetime):
        return (
            db.query(models.Transaction)
            .filter(models.Transaction.recurring_template_id == unit.transaction_id)
            .filter(models.Transaction.date == today)
            .first()
        )

    def process(self, unit: RecurringWorkUnit, now: datetime | None = None) -> int | None:
        """Returns the id of today's occurrence, or None if the unit was skipped."""
        now = now or datetime.utcnow()
        today = start_of_day(now)

        db = self.session_factory()
        try:
            if db.get(models.Transaction, unit.transaction_id) is None:
                logger.warning("recurring template %s no longer exists, skipping", unit.transaction_id)
                return None
            if db.get(models.Wallet, unit.wallet_id) is None:
                logger.warning("wallet %s of template %s is gone, skipping", unit.wallet_id, unit.transaction_id)
                return None

            occurrence = self._existing_occurrence(db, unit, today)
            if occurrence is not None:
                logger.info("template %s already has an occurrence for %s", unit.transaction_id, today.date())
            else:
                try:
                    with atomic(db):
                        occurrence = self.create_transaction_entry(db, unit, today)
                        self.update_wallet_balance(db, unit)
                except IntegrityError:
                    # another delivery of the same unit won the race
                    occurrence = self._existing_occurrence(db, unit, today)
                    if occurrence is None:
                        raise
            occurrence_id = occurrence.id

            with atomic(db):
                self.update_last_processed_at(db, unit, now)
        finally:
            db.close()

        logger.info("template %s -> occurrence %s", unit.transaction_id, occurrence_id)
        return occurrence_id


class RecurringJobRunner:
    """In-process job runtime: bounded concurrency and per-unit retries."""

    def __init__(self, worker: RecurringWorker, max_workers: int = 10, retries: int = 3):
        self.worker = worker
        self.max_workers = max_workers
        self.retries = retries

    def _run_unit(self, unit: RecurringWorkUnit, now: datetime | None):
        for attempt in range(1, self.retries + 1):
            try:
                return self.worker.process(unit, now=now)
            except Exception:
                if attempt == self.retries:
                    logger.exception(
                        "recurring template %s failed after %d attempts", unit.transaction_id, attempt
                    )
                    raise
                logger.warning("recurring template %s failed (attempt %d), retrying", unit.transaction_id, attempt)

    def run(self, units: Iterable[RecurringWorkUnit], now: datetime | None = None) -> dict:
        units = list(units)
        occurrence_ids = []
        failed = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(self._run_unit, unit, now): unit for unit in units}
            for future, unit in futures.items():
                try:
                    occurrence_id = future.result()
                except Exception:
                    failed.append(unit.transaction_id)
                    continue
                if occurrence_id is not None:
                    occurrence_ids.append(occurrence_id)
        return {"processed": len(occurrence_ids), "failed": failed, "occurrence_ids": occurrence_ids}
