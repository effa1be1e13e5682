from datetime import datetime
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base

# All money columns hold integers in the smallest currency unit.

WALLET_TYPES = ("bank", "e-wallet", "cash")
CATEGORY_TYPES = ("income", "expense", "both")
TRANSACTION_TYPES = ("income", "expense")
FREQUENCIES = ("daily", "weekly", "monthly", "yearly")
GOAL_STATUSES = ("active", "completed", "cancelled")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    wallets = relationship("Wallet", back_populates="user", cascade="all, delete-orphan")
    categories = relationship("Category", back_populates="user", cascade="all, delete-orphan")
    goals = relationship("Goal", back_populates="user", cascade="all, delete-orphan")


class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)  # bank / e-wallet / cash
    balance = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="wallets")
    transactions = relationship(
        "Transaction",
        back_populates="wallet",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)  # income / expense / both
    icon = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="categories")
    transactions = relationship("Transaction", back_populates="category")


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String, nullable=False)
    type = Column(String, nullable=False)  # income / expense
    amount = Column(Integer, nullable=False)
    date = Column(DateTime, nullable=False, index=True)
    description = Column(String, nullable=True)
    receipt_url = Column(String, nullable=True)

    is_recurring = Column(Boolean, nullable=False, default=False)
    frequency = Column(String, nullable=True)  # daily / weekly / monthly / yearly
    # null on templates and one-offs, set on generated occurrences
    recurring_template_id = Column(
        Integer, ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # cursor of the recurring scheduler, only meaningful on templates
    last_processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    wallet = relationship("Wallet", back_populates="transactions")
    category = relationship("Category", back_populates="transactions")
    template = relationship("Transaction", remote_side=[id], backref="occurrences")

    __table_args__ = (
        UniqueConstraint("recurring_template_id", "date", name="uq_transactions_template_date"),
    )

    @property
    def signed_amount(self) -> int:
        return signed_amount(self.type, self.amount)


def signed_amount(type_: str, amount: int) -> int:
    """Effect of a transaction on its wallet balance."""
    return amount if type_ == "income" else -amount


class Goal(Base):
    __tablename__ = "goals"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String, nullable=False)
    target_amount = Column(Integer, nullable=False)
    current_amount = Column(Integer, nullable=False, default=0)  # only moved by add/remove
    target_date = Column(DateTime, nullable=True)

    status = Column(String, nullable=False, default="active", index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="goals")
    milestones = relationship(
        "Milestone",
        back_populates="goal",
        order_by="Milestone.order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    transactions = relationship(
        "GoalTransaction",
        back_populates="goal",
        order_by="GoalTransaction.created_at",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Milestone(Base):
    __tablename__ = "milestones"

    id = Column(Integer, primary_key=True, index=True)
    goal_id = Column(Integer, ForeignKey("goals.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String, nullable=False)
    target_amount = Column(Integer, nullable=False)
    target_date = Column(DateTime, nullable=True)
    order = Column(Integer, nullable=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    advice = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    goal = relationship("Goal", back_populates="milestones")


class GoalTransaction(Base):
    __tablename__ = "goal_transactions"

    id = Column(Integer, primary_key=True, index=True)
    goal_id = Column(Integer, ForeignKey("goals.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id", ondelete="SET NULL"), nullable=True)

    amount = Column(Integer, nullable=False)  # positive = into goal, negative = back to wallet
    description = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    goal = relationship("Goal", back_populates="transactions")
    wallet = relationship("Wallet")


class Scenario(Base):
    __tablename__ = "scenarios"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String, nullable=False)
    items = Column(JSON, nullable=False, default=list)  # [{"name", "amount", "type"}]
    frequency = Column(String, nullable=False, default="monthly")  # daily / monthly
    net_monthly = Column(Integer, nullable=False, default=0)
    projection_1_year = Column(Integer, nullable=False, default=0)
    projection_5_years = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

