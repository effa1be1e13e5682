"""
Savings goals.

Money only reaches a goal through ``add_amount`` and leaves it through
``remove_amount`` (or goal deletion). Each move debits/credits a wallet,
changes ``current_amount`` and appends one signed ``GoalTransaction`` row, all
inside a single database transaction, so that

    goal.current_amount == sum(goal_transaction.amount for the goal)

holds after every operation. Milestone completion flags are recomputed
against ``current_amount`` after every move.
"""

import logging
from datetime import datetime
from typing import Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models
from .database import atomic
from .errors import InsufficientFundsError, NotFoundError, UnauthorizedError, ValidationError
from .ledger import adjust_balance, get_owned_wallet, withdraw
from .milestones import GoalContext, MilestoneSuggester, milestone_count, plan_milestones
from .schemas import GoalCreate, GoalUpdate, MilestoneUpdate

logger = logging.getLogger(__name__)


def recompute_status(goal: models.Goal) -> str:
    # cancelled goals stay cancelled whatever happens to their balance
    if goal.status == "cancelled":
        return goal.status
    return "completed" if goal.current_amount >= goal.target_amount else "active"


class GoalEngine:
    def __init__(self, db: Session, suggester: MilestoneSuggester):
        self.db = db
        self.suggester = suggester

    # ---------- lookups ----------

    def get(self, user: models.User, goal_id: int) -> models.Goal:
        goal = (
            self.db.query(models.Goal)
            .filter(models.Goal.id == goal_id)
            .filter(models.Goal.user_id == user.id)
            .first()
        )
        if not goal:
            raise NotFoundError("Goal not found")
        return goal

    def _get_wallet(self, user: models.User, wallet_id: int) -> models.Wallet:
        wallet = get_owned_wallet(self.db, user.id, wallet_id)
        if not wallet:
            raise NotFoundError("Wallet not found")
        return wallet

    def list(self, user: models.User, active_only: bool = False) -> List[models.Goal]:
        query = self.db.query(models.Goal).filter(models.Goal.user_id == user.id)
        if active_only:
            query = query.filter(models.Goal.status == "active")
        return query.order_by(models.Goal.created_at.desc(), models.Goal.id.desc()).all()

    # ---------- lifecycle ----------

    def _insert_milestones(self, goal: models.Goal, count: int, now: datetime) -> None:
        planned = plan_milestones(
            GoalContext(name=goal.name, target_amount=goal.target_amount, current_amount=goal.current_amount),
            goal.target_date,
            count,
            self.suggester,
            now=now,
        )
        for p in planned:
            reached = goal.current_amount >= p.target_amount
            goal.milestones.append(
                models.Milestone(
                    name=p.name,
                    target_amount=p.target_amount,
                    target_date=p.target_date,
                    order=p.order,
                    is_completed=reached,
                    # reached some time ago; the exact moment is not recorded
                    completed_at=now if reached else None,
                    advice=p.advice or None,
                )
            )

    def create(self, user: models.User, payload: GoalCreate, now: datetime | None = None) -> models.Goal:
        now = now or datetime.utcnow()
        if payload.target_amount <= 0:
            raise ValidationError("Target amount must be greater than 0")

        goal = models.Goal(
            user_id=user.id,
            name=payload.name,
            target_amount=payload.target_amount,
            current_amount=0,
            target_date=payload.target_date,
            status="active",
        )
        with atomic(self.db):
            self.db.add(goal)
            self._insert_milestones(goal, milestone_count(payload.milestone_pace), now)
        self.db.refresh(goal)
        logger.info("created goal %s for user %s with %d milestones", goal.id, user.id, len(goal.milestones))
        return goal

    def update(self, user: models.User, goal_id: int, patch: GoalUpdate) -> models.Goal:
        goal = self.get(user, goal_id)
        with atomic(self.db):
            for field, value in patch.changes().items():
                setattr(goal, field, value)
        self.db.refresh(goal)
        return goal

    def regenerate_milestones(
        self,
        user: models.User,
        goal_id: int,
        pace: str = "moderate",
        custom_count: int | None = None,
        now: datetime | None = None,
    ) -> models.Goal:
        now = now or datetime.utcnow()
        goal = self.get(user, goal_id)
        count = milestone_count(pace, custom_count)
        with atomic(self.db):
            goal.milestones.clear()
            self.db.flush()
            self._insert_milestones(goal, count, now)
        self.db.refresh(goal)
        logger.info("regenerated %d milestones for goal %s", count, goal.id)
        return goal

    def delete(self, user: models.User, goal_id: int) -> Dict[int, int]:
        """Delete a goal and hand every still-allocated amount back to its wallet."""
        goal = self.get(user, goal_id)
        rows = (
            self.db.query(models.GoalTransaction.wallet_id, func.sum(models.GoalTransaction.amount))
            .filter(models.GoalTransaction.goal_id == goal.id)
            .filter(models.GoalTransaction.wallet_id.isnot(None))
            .group_by(models.GoalTransaction.wallet_id)
            .all()
        )
        returned = {wallet_id: int(net) for wallet_id, net in rows if net and net > 0}

        with atomic(self.db):
            for wallet_id, amount in returned.items():
                adjust_balance(self.db, wallet_id, amount)
            self.db.delete(goal)
        logger.info("deleted goal %s, returned %s", goal_id, returned)
        return returned

    # ---------- fund transfers ----------

    def add_amount(self, user: models.User, goal_id: int, wallet_id: int, amount: int, now: datetime | None = None):
        """
        Move ``amount`` from a wallet into a goal.

        Returns ``(goal, newly_completed_milestone_ids, is_goal_completed)``;
        the flag is true only when this call completed the goal.
        """
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0")
        now = now or datetime.utcnow()
        goal = self.get(user, goal_id)
        wallet = self._get_wallet(user, wallet_id)
        previous_status = goal.status

        newly_completed = []
        with atomic(self.db):
            if not withdraw(self.db, wallet.id, amount):
                self.db.refresh(wallet)
                raise InsufficientFundsError("Insufficient wallet balance", available=wallet.balance)

            self.db.query(models.Goal).filter(models.Goal.id == goal.id).update(
                {models.Goal.current_amount: models.Goal.current_amount + amount}
            )
            self.db.refresh(goal)
            goal.status = recompute_status(goal)

            self.db.add(
                models.GoalTransaction(
                    goal_id=goal.id,
                    user_id=user.id,
                    wallet_id=wallet.id,
                    amount=amount,
                    description=f"Added from {wallet.name}",
                    created_at=now,
                )
            )
            for m in goal.milestones:
                if not m.is_completed and m.target_amount <= goal.current_amount:
                    m.is_completed = True
                    m.completed_at = now
                    newly_completed.append(m.id)

        self.db.refresh(goal)
        is_goal_completed = goal.status == "completed" and previous_status != "completed"
        logger.info(
            "moved %s from wallet %s into goal %s (now %s/%s)",
            amount, wallet_id, goal.id, goal.current_amount, goal.target_amount,
        )
        return goal, newly_completed, is_goal_completed

    def remove_amount(self, user: models.User, goal_id: int, wallet_id: int, amount: int, now: datetime | None = None):
        """Move ``amount`` from a goal back into a wallet."""
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0")
        now = now or datetime.utcnow()
        goal = self.get(user, goal_id)
        wallet = self._get_wallet(user, wallet_id)

        with atomic(self.db):
            taken = (
                self.db.query(models.Goal)
                .filter(models.Goal.id == goal.id)
                .filter(models.Goal.current_amount >= amount)
                .update({models.Goal.current_amount: models.Goal.current_amount - amount})
            )
            if taken != 1:
                self.db.refresh(goal)
                raise InsufficientFundsError("Insufficient goal balance", available=goal.current_amount)

            adjust_balance(self.db, wallet.id, amount)
            self.db.refresh(goal)
            goal.status = recompute_status(goal)

            self.db.add(
                models.GoalTransaction(
                    goal_id=goal.id,
                    user_id=user.id,
                    wallet_id=wallet.id,
                    amount=-amount,
                    description=f"Withdrawn to {wallet.name}",
                    created_at=now,
                )
            )
            for m in goal.milestones:
                if m.is_completed and m.target_amount > goal.current_amount:
                    m.is_completed = False
                    m.completed_at = None

        self.db.refresh(goal)
        logger.info("moved %s from goal %s back to wallet %s", amount, goal.id, wallet_id)
        return goal

    # ---------- milestones & history ----------

    def update_milestone(self, user: models.User, milestone_id: int, patch: MilestoneUpdate) -> models.Milestone:
        milestone = self.db.query(models.Milestone).filter(models.Milestone.id == milestone_id).first()
        if not milestone:
            raise NotFoundError("Milestone not found")
        if milestone.goal.user_id != user.id:
            raise UnauthorizedError("You don't have access to this milestone")

        changes = patch.changes()
        with atomic(self.db):
            for field, value in changes.items():
                setattr(milestone, field, value)
            if "is_completed" in changes:
                milestone.completed_at = datetime.utcnow() if changes["is_completed"] else None
        self.db.refresh(milestone)
        return milestone

    def get_transaction_history(
        self,
        user: models.User,
        goal_id: int,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> List[dict]:
        goal = self.get(user, goal_id)
        query = (
            self.db.query(models.GoalTransaction, models.Wallet)
            .outerjoin(models.Wallet, models.GoalTransaction.wallet_id == models.Wallet.id)
            .filter(models.GoalTransaction.goal_id == goal.id)
        )
        if start_date:
            query = query.filter(models.GoalTransaction.created_at >= start_date)
        if end_date:
            query = query.filter(models.GoalTransaction.created_at <= end_date)
        rows = query.order_by(models.GoalTransaction.created_at.asc(), models.GoalTransaction.id.asc()).all()

        running = 0
        history = []
        for gt, wallet in rows:
            running += gt.amount
            history.append(
                {
                    "date": gt.created_at,
                    "amount": running,
                    "transaction_amount": gt.amount,
                    "description": gt.description,
                    "wallet": {"id": wallet.id, "name": wallet.name, "type": wallet.type} if wallet else None,
                }
            )
        return history

