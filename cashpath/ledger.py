"""
Wallets, categories and transactions.

Every change to a transaction moves exactly one wallet balance (two on a
wallet switch) and happens inside the same database transaction as the row
write. Balances are always changed with a SQL expression
(``balance = balance + delta``) so concurrent writers never lose updates.
"""

import logging
import math
from datetime import datetime
from typing import List

from dateutil.relativedelta import relativedelta
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from . import models
from .database import atomic
from .errors import NotFoundError, ValidationError
from .schemas import (
    CategoryCreate,
    CategoryUpdate,
    TransactionCreate,
    TransactionUpdate,
    WalletCreate,
    WalletUpdate,
)

logger = logging.getLogger(__name__)


def adjust_balance(db: Session, wallet_id: int, delta: int) -> None:
    if delta == 0:
        return
    db.query(models.Wallet).filter(models.Wallet.id == wallet_id).update(
        {models.Wallet.balance: models.Wallet.balance + delta}
    )
    logger.debug("wallet %s balance adjusted by %s", wallet_id, delta)


def withdraw(db: Session, wallet_id: int, amount: int) -> bool:
    """Debit ``amount`` only if the wallet can cover it. Returns False otherwise."""
    updated = (
        db.query(models.Wallet)
        .filter(models.Wallet.id == wallet_id)
        .filter(models.Wallet.balance >= amount)
        .update({models.Wallet.balance: models.Wallet.balance - amount})
    )
    return updated == 1


def get_owned_wallet(db: Session, user_id: int, wallet_id: int) -> models.Wallet | None:
    return (
        db.query(models.Wallet)
        .filter(models.Wallet.id == wallet_id)
        .filter(models.Wallet.user_id == user_id)
        .first()
    )


def get_owned_category(db: Session, user_id: int, category_id: int) -> models.Category | None:
    return (
        db.query(models.Category)
        .filter(models.Category.id == category_id)
        .filter(models.Category.user_id == user_id)
        .first()
    )


def total_of(type_: str):
    """SUM of the amounts of one transaction type, 0 when there are none."""
    return func.coalesce(
        func.sum(case((models.Transaction.type == type_, models.Transaction.amount), else_=0)), 0
    )


def wallet_stats(db: Session, wallet_id: int) -> dict:
    total_count, total_income, total_expense = (
        db.query(func.count(models.Transaction.id), total_of("income"), total_of("expense"))
        .filter(models.Transaction.wallet_id == wallet_id)
        .one()
    )
    return {
        "total_transactions": int(total_count),
        "total_income": int(total_income),
        "total_expense": int(total_expense),
    }


class WalletService:
    def __init__(self, db: Session):
        self.db = db

    def list(self, user: models.User) -> List[models.Wallet]:
        return (
            self.db.query(models.Wallet)
            .filter(models.Wallet.user_id == user.id)
            .order_by(models.Wallet.name.asc())
            .all()
        )

    def get(self, user: models.User, wallet_id: int) -> models.Wallet:
        wallet = get_owned_wallet(self.db, user.id, wallet_id)
        if not wallet:
            raise NotFoundError("Wallet not found")
        return wallet

    def create(self, user: models.User, payload: WalletCreate) -> models.Wallet:
        wallet = models.Wallet(
            user_id=user.id,
            name=payload.name,
            type=payload.type,
            balance=payload.balance,
        )
        with atomic(self.db):
            self.db.add(wallet)
        self.db.refresh(wallet)
        logger.info("created wallet %s for user %s", wallet.id, user.id)
        return wallet

    def update(self, user: models.User, wallet_id: int, patch: WalletUpdate) -> models.Wallet:
        wallet = self.get(user, wallet_id)
        with atomic(self.db):
            for field, value in patch.changes().items():
                setattr(wallet, field, value)
        self.db.refresh(wallet)
        return wallet

    def delete(self, user: models.User, wallet_id: int) -> None:
        wallet = self.get(user, wallet_id)
        with atomic(self.db):
            # transactions cascade; goal history keeps its rows with wallet_id null
            self.db.delete(wallet)
        logger.info("deleted wallet %s for user %s", wallet_id, user.id)

    def details(self, user: models.User, wallet_id: int, limit: int = 10) -> dict:
        wallet = self.get(user, wallet_id)
        recent = (
            self.db.query(models.Transaction)
            .filter(models.Transaction.wallet_id == wallet.id)
            .order_by(models.Transaction.date.desc(), models.Transaction.id.desc())
            .limit(limit)
            .all()
        )
        return {"wallet": wallet, "transactions": recent, "stats": wallet_stats(self.db, wallet.id)}

    def stats(self, user: models.User) -> List[dict]:
        """Transaction totals for every wallet of the user, empty wallets included."""
        rows = (
            self.db.query(
                models.Wallet.id,
                func.count(models.Transaction.id),
                total_of("income"),
                total_of("expense"),
            )
            .outerjoin(models.Transaction, models.Transaction.wallet_id == models.Wallet.id)
            .filter(models.Wallet.user_id == user.id)
            .group_by(models.Wallet.id)
            .order_by(models.Wallet.name.asc(), models.Wallet.id.asc())
            .all()
        )
        return [
            {
                "wallet_id": wallet_id,
                "total_transactions": int(count),
                "total_income": int(income),
                "total_expense": int(expense),
            }
            for wallet_id, count, income, expense in rows
        ]

    def monthly_stats(
        self,
        user: models.User,
        wallet_id: int,
        months: int = 6,
        today: datetime | None = None,
    ) -> List[dict]:
        """Income and expense per calendar month, for the current month and the ``months - 1`` before it."""
        if not 1 <= months <= 12:
            raise ValidationError("months must be between 1 and 12")
        wallet = self.get(user, wallet_id)
        today = today or datetime.utcnow()
        start = datetime(today.year, today.month, 1) - relativedelta(months=months - 1)

        year = func.extract("year", models.Transaction.date)
        month = func.extract("month", models.Transaction.date)
        rows = (
            self.db.query(year, month, total_of("income"), total_of("expense"))
            .filter(models.Transaction.wallet_id == wallet.id)
            .filter(models.Transaction.date >= start)
            .group_by(year, month)
            .order_by(year, month)
            .all()
        )
        return [
            {"month": f"{int(y):04d}-{int(m):02d}", "income": int(income), "expense": int(expense)}
            for y, m, income, expense in rows
        ]

    def category_breakdown(self, user: models.User, wallet_id: int, type: str | None = None) -> List[dict]:
        wallet = self.get(user, wallet_id)
        total = func.sum(models.Transaction.amount)
        query = (
            self.db.query(
                models.Transaction.category_id,
                models.Category.name,
                models.Transaction.type,
                total,
                func.count(models.Transaction.id),
            )
            .join(models.Category, models.Transaction.category_id == models.Category.id)
            .filter(models.Transaction.wallet_id == wallet.id)
        )
        if type:
            query = query.filter(models.Transaction.type == type)
        rows = (
            query.group_by(models.Transaction.category_id, models.Category.name, models.Transaction.type)
            .order_by(total.desc())
            .all()
        )
        return [
            {"category_id": category_id, "category_name": name, "type": type_, "total": int(amount), "count": int(n)}
            for category_id, name, type_, amount, n in rows
        ]


class CategoryService:
    def __init__(self, db: Session):
        self.db = db

    def list(self, user: models.User) -> List[models.Category]:
        return (
            self.db.query(models.Category)
            .filter(models.Category.user_id == user.id)
            .order_by(models.Category.name.asc())
            .all()
        )

    def get(self, user: models.User, category_id: int) -> models.Category:
        category = get_owned_category(self.db, user.id, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def create(self, user: models.User, payload: CategoryCreate) -> models.Category:
        category = models.Category(user_id=user.id, **payload.model_dump())
        with atomic(self.db):
            self.db.add(category)
        self.db.refresh(category)
        return category

    def update(self, user: models.User, category_id: int, patch: CategoryUpdate) -> models.Category:
        category = self.get(user, category_id)
        with atomic(self.db):
            for field, value in patch.changes().items():
                setattr(category, field, value)
        self.db.refresh(category)
        return category

    def stats(self, user: models.User) -> List[dict]:
        rows = (
            self.db.query(
                models.Category.id,
                func.count(models.Transaction.id),
                func.coalesce(func.sum(models.Transaction.amount), 0),
            )
            .outerjoin(models.Transaction, models.Transaction.category_id == models.Category.id)
            .filter(models.Category.user_id == user.id)
            .group_by(models.Category.id)
            .order_by(models.Category.name.asc(), models.Category.id.asc())
            .all()
        )
        return [
            {"category_id": category_id, "total_transactions": int(count), "total_amount": int(amount)}
            for category_id, count, amount in rows
        ]

    def delete(self, user: models.User, category_id: int) -> None:
        category = self.get(user, category_id)
        in_use = (
            self.db.query(func.count(models.Transaction.id))
            .filter(models.Transaction.category_id == category.id)
            .scalar()
        )
        if in_use:
            raise ValidationError(
                "You can't delete this category because it is used by one or more transactions.",
                transaction_count=int(in_use),
            )
        with atomic(self.db):
            self.db.delete(category)


class TransactionEngine:
    """Keeps wallet balances consistent with the transactions that reference them."""

    def __init__(self, db: Session):
        self.db = db

    def _get_owned(self, user: models.User, transaction_id: int) -> models.Transaction:
        txn = (
            self.db.query(models.Transaction)
            .filter(models.Transaction.id == transaction_id)
            .filter(models.Transaction.user_id == user.id)
            .first()
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def _check_references(self, user: models.User, category_id: int | None, wallet_id: int | None):
        if category_id is not None and not get_owned_category(self.db, user.id, category_id):
            raise ValidationError("Invalid category")
        if wallet_id is not None and not get_owned_wallet(self.db, user.id, wallet_id):
            raise ValidationError("Invalid wallet")

    def get(self, user: models.User, transaction_id: int) -> models.Transaction:
        return self._get_owned(user, transaction_id)

    def create(self, user: models.User, payload: TransactionCreate) -> models.Transaction:
        if payload.amount <= 0:
            raise ValidationError("Amount must be greater than 0")
        if payload.is_recurring and not payload.frequency:
            raise ValidationError("Frequency is required for recurring transactions")
        self._check_references(user, payload.category_id, payload.wallet_id)

        txn = models.Transaction(
            user_id=user.id,
            name=payload.name,
            type=payload.type,
            amount=payload.amount,
            date=payload.date,
            category_id=payload.category_id,
            wallet_id=payload.wallet_id,
            is_recurring=payload.is_recurring,
            frequency=payload.frequency if payload.is_recurring else None,
            description=payload.description,
            receipt_url=payload.receipt_url,
        )
        with atomic(self.db):
            self.db.add(txn)
            adjust_balance(self.db, txn.wallet_id, txn.signed_amount)
        self.db.refresh(txn)
        logger.info(
            "created %s transaction %s (%s) on wallet %s", txn.type, txn.id, txn.amount, txn.wallet_id
        )
        return txn

    def update(self, user: models.User, transaction_id: int, patch: TransactionUpdate) -> models.Transaction:
        existing = self._get_owned(user, transaction_id)
        changes = patch.changes()
        self._check_references(user, changes.get("category_id"), changes.get("wallet_id"))

        old_wallet_id = existing.wallet_id
        old_effect = existing.signed_amount
        new_wallet_id = changes.get("wallet_id") or existing.wallet_id
        new_effect = models.signed_amount(
            changes.get("type") or existing.type,
            changes.get("amount") or existing.amount,
        )

        # is_recurring and frequency are judged on the row as it will be after the patch
        if not changes.get("is_recurring", existing.is_recurring):
            changes["frequency"] = None
        elif not changes.get("frequency", existing.frequency):
            raise ValidationError("Frequency is required for recurring transactions")

        with atomic(self.db):
            # reverse on the old wallet, then apply on the new one, even when it's the same wallet
            adjust_balance(self.db, old_wallet_id, -old_effect)
            adjust_balance(self.db, new_wallet_id, new_effect)
            for field, value in changes.items():
                setattr(existing, field, value)
        self.db.refresh(existing)
        logger.info(
            "updated transaction %s: wallet %s %+d, wallet %s %+d",
            existing.id, old_wallet_id, -old_effect, new_wallet_id, new_effect,
        )
        return existing

    def delete(self, user: models.User, transaction_id: int) -> None:
        existing = self._get_owned(user, transaction_id)
        wallet_id = existing.wallet_id
        with atomic(self.db):
            adjust_balance(self.db, wallet_id, -existing.signed_amount)
            if existing.recurring_template_id is None and existing.is_recurring:
                # occurrences of a deleted template become ordinary one-offs
                self.db.query(models.Transaction).filter(
                    models.Transaction.recurring_template_id == existing.id
                ).update(
                    {
                        models.Transaction.recurring_template_id: None,
                        models.Transaction.is_recurring: False,
                        models.Transaction.frequency: None,
                    },
                    synchronize_session=False,
                )
            self.db.delete(existing)
        logger.info("deleted transaction %s from wallet %s", transaction_id, wallet_id)

    def list(
        self,
        user: models.User,
        page: int = 1,
        limit: int = 10,
        type: str | None = None,
        category_id: int | None = None,
        wallet_id: int | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        search: str | None = None,
    ) -> dict:
        query = self.db.query(models.Transaction).filter(models.Transaction.user_id == user.id)
        if type:
            query = query.filter(models.Transaction.type == type)
        if category_id:
            query = query.filter(models.Transaction.category_id == category_id)
        if wallet_id:
            query = query.filter(models.Transaction.wallet_id == wallet_id)
        if start_date:
            query = query.filter(models.Transaction.date >= start_date)
        if end_date:
            query = query.filter(models.Transaction.date <= end_date)
        if search:
            query = query.filter(models.Transaction.name.ilike(f"%{search}%"))

        total_count = query.count()
        total_pages = math.ceil(total_count / limit)
        data = (
            query.order_by(models.Transaction.date.desc(), models.Transaction.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "data": data,
            "total_count": total_count,
            "total_pages": total_pages,
            "current_page": page,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        }

    def recent(self, user: models.User, limit: int = 5) -> List[models.Transaction]:
        return (
            self.db.query(models.Transaction)
            .filter(models.Transaction.user_id == user.id)
            .order_by(models.Transaction.date.desc(), models.Transaction.created_at.desc())
            .limit(limit)
            .all()
        )

    def stats(
        self,
        user: models.User,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> dict:
        query = self.db.query(models.Transaction.type, func.sum(models.Transaction.amount), func.count())
        query = query.filter(models.Transaction.user_id == user.id)
        if start_date:
            query = query.filter(models.Transaction.date >= start_date)
        if end_date:
            query = query.filter(models.Transaction.date <= end_date)

        totals = {"income": 0, "expense": 0}
        count = 0
        for type_, total, n in query.group_by(models.Transaction.type).all():
            totals[type_] = int(total or 0)
            count += n
        return {
            "total_income": totals["income"],
            "total_expense": totals["expense"],
            "balance": totals["income"] - totals["expense"],
            "transaction_count": count,
        }
