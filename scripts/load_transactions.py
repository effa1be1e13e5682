# scripts/load_transactions.py
import os
import sys

# Ensure project root is on sys.path
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(SCRIPT_DIR)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pandas as pd
from sqlalchemy.orm import Session

from cashpath import models
from cashpath.database import SessionLocal, engine, init_db
from cashpath.ledger import TransactionEngine
from cashpath.schemas import TransactionCreate

# Ensure tables exist
init_db(engine)

# Bank exports spell some categories differently from ours
CATEGORY_ALIASES = {
    "Groceries & Supermarkets": "Groceries",
    "Eating Out": "Restaurant",
    "Film/enjoyment": "Entertainment",
    "Salary/Wages": "Salary",
}


def get_or_create_user(db: Session) -> models.User:
    user = db.query(models.User).order_by(models.User.id.asc()).first()
    if not user:
        user = models.User(name="Demo User", email=None)
        db.add(user)
        db.commit()
        db.refresh(user)
    return user


def get_or_create_wallet(db: Session, user: models.User, name: str) -> models.Wallet:
    wallet = (
        db.query(models.Wallet)
        .filter(models.Wallet.user_id == user.id)
        .filter(models.Wallet.name == name)
        .first()
    )
    if not wallet:
        wallet = models.Wallet(user_id=user.id, name=name, type="bank", balance=0)
        db.add(wallet)
        db.commit()
        db.refresh(wallet)
    return wallet


def get_or_create_category(db: Session, user: models.User, raw_name: str) -> models.Category:
    name = CATEGORY_ALIASES.get(raw_name.strip(), raw_name.strip())
    existing = (
        db.query(models.Category)
        .filter(models.Category.user_id == user.id)
        .filter(models.Category.name == name)
        .first()
    )
    if existing:
        return existing

    cat = models.Category(user_id=user.id, name=name, type="both")
    db.add(cat)
    db.commit()
    db.refresh(cat)
    return cat


def load_csv(file_path: str = "data/transactions.csv", default_wallet: str = "Main Account"):
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"CSV not found: {file_path}")

    df = pd.read_csv(file_path)

    # Expecting columns: date, category, amount (+ optional name, type, wallet)
    required_cols = {"date", "category", "amount"}
    if not required_cols.issubset(df.columns):
        raise ValueError(f"CSV must contain columns: {required_cols}")

    db = SessionLocal()
    try:
        user = get_or_create_user(db)
        transactions = TransactionEngine(db)

        inserted = 0
        for _, row in df.iterrows():
            dt = pd.to_datetime(row["date"])
            amount = int(round(float(row["amount"])))
            if amount == 0:
                continue

            # Without an explicit type, negative amounts are expenses
            txn_type = str(row["type"]).strip().lower() if "type" in df.columns and pd.notna(row["type"]) else None
            if txn_type is None:
                txn_type = "expense" if amount < 0 else "income"

            raw_category = str(row["category"])
            category = get_or_create_category(db, user, raw_category)
            wallet_name = row["wallet"] if "wallet" in df.columns and pd.notna(row["wallet"]) else default_wallet
            wallet = get_or_create_wallet(db, user, str(wallet_name))
            name = row["name"] if "name" in df.columns and pd.notna(row["name"]) else category.name

            transactions.create(
                user,
                TransactionCreate(
                    name=str(name),
                    type=txn_type,
                    amount=abs(amount),
                    date=dt.to_pydatetime().replace(tzinfo=None),
                    category_id=category.id,
                    wallet_id=wallet.id,
                ),
            )
            inserted += 1

        print(f"Inserted {inserted} transactions.")
    finally:
        db.close()


if __name__ == "__main__":
    load_csv()
