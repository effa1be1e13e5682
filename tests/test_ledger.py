from datetime import datetime

import pytest

from cashpath import models
from cashpath.errors import NotFoundError, ValidationError
from cashpath.ledger import CategoryService, TransactionEngine, WalletService
from cashpath.schemas import TransactionCreate, TransactionUpdate, WalletUpdate

from conftest import make_category, make_wallet


def new_txn(wallet, category, type="expense", amount=100, **extra):
    return TransactionCreate(
        name=extra.pop("name", "Lunch"),
        type=type,
        amount=amount,
        date=extra.pop("date", datetime(2025, 3, 1)),
        category_id=category.id,
        wallet_id=wallet.id,
        **extra,
    )


def balance(db, wallet):
    db.refresh(wallet)
    return wallet.balance


def test_create_expense_and_income_move_balance(db, user, wallet, category):
    engine = TransactionEngine(db)
    engine.create(user, new_txn(wallet, category, "expense", 300))
    assert balance(db, wallet) == 700

    engine.create(user, new_txn(wallet, category, "income", 50))
    assert balance(db, wallet) == 750


def test_balance_equals_initial_plus_signed_sum(db, user, wallet, category):
    engine = TransactionEngine(db)
    for type_, amount in [("income", 500), ("expense", 120), ("expense", 80), ("income", 5)]:
        engine.create(user, new_txn(wallet, category, type_, amount))

    signed = sum(t.signed_amount for t in db.query(models.Transaction).all())
    assert balance(db, wallet) == 1000 + signed == 1305


def test_create_non_recurring_clears_frequency(db, user, wallet, category):
    txn = TransactionEngine(db).create(user, new_txn(wallet, category, frequency="monthly"))
    assert txn.is_recurring is False
    assert txn.frequency is None


def test_create_rejects_wallet_of_other_user(db, user, other_user, category):
    foreign = make_wallet(db, other_user, name="Theirs", balance=500)
    with pytest.raises(ValidationError):
        TransactionEngine(db).create(user, new_txn(foreign, category))
    assert balance(db, foreign) == 500
    assert db.query(models.Transaction).count() == 0


def test_create_rejects_category_of_other_user(db, user, other_user, wallet):
    foreign = make_category(db, other_user, name="Theirs")
    with pytest.raises(ValidationError):
        TransactionEngine(db).create(user, new_txn(wallet, foreign))


def test_update_amount_same_wallet(db, user, wallet, category):
    engine = TransactionEngine(db)
    txn = engine.create(user, new_txn(wallet, category, "expense", 100))
    engine.update(user, txn.id, TransactionUpdate(amount=250))
    assert balance(db, wallet) == 750


def test_update_type_flips_effect(db, user, wallet, category):
    engine = TransactionEngine(db)
    txn = engine.create(user, new_txn(wallet, category, "expense", 100))
    engine.update(user, txn.id, TransactionUpdate(type="income"))
    assert balance(db, wallet) == 1100


def test_update_moves_transaction_to_another_wallet(db, user, wallet, category):
    savings = make_wallet(db, user, name="Savings", balance=200)
    engine = TransactionEngine(db)
    txn = engine.create(user, new_txn(wallet, category, "expense", 100))

    engine.update(user, txn.id, TransactionUpdate(wallet_id=savings.id, amount=40))

    assert balance(db, wallet) == 1000
    assert balance(db, savings) == 160
    assert engine.get(user, txn.id).wallet_id == savings.id


def test_update_to_non_recurring_clears_frequency(db, user, wallet, category):
    engine = TransactionEngine(db)
    txn = engine.create(user, new_txn(wallet, category, is_recurring=True, frequency="weekly"))
    updated = engine.update(user, txn.id, TransactionUpdate(is_recurring=False))
    assert updated.frequency is None


def test_update_unknown_transaction(db, user):
    with pytest.raises(NotFoundError):
        TransactionEngine(db).update(user, 999, TransactionUpdate(amount=1))


def test_update_other_users_transaction_is_not_found(db, user, other_user, wallet, category):
    engine = TransactionEngine(db)
    txn = engine.create(user, new_txn(wallet, category))
    with pytest.raises(NotFoundError):
        engine.update(other_user, txn.id, TransactionUpdate(amount=1))
    assert balance(db, wallet) == 900


def test_delete_reverses_effect(db, user, wallet, category):
    engine = TransactionEngine(db)
    txn = engine.create(user, new_txn(wallet, category, "income", 400))
    engine.delete(user, txn.id)
    assert balance(db, wallet) == 1000
    assert db.query(models.Transaction).count() == 0


def test_delete_template_keeps_occurrences_as_one_offs(db, user, wallet, category):
    engine = TransactionEngine(db)
    template = engine.create(user, new_txn(wallet, category, is_recurring=True, frequency="daily"))
    occurrence = models.Transaction(
        user_id=user.id,
        name=template.name,
        type="expense",
        amount=100,
        date=datetime(2025, 3, 2),
        category_id=category.id,
        wallet_id=wallet.id,
        is_recurring=True,
        frequency="daily",
        recurring_template_id=template.id,
    )
    db.add(occurrence)
    db.commit()
    occurrence_id = occurrence.id

    engine.delete(user, template.id)

    left = db.get(models.Transaction, occurrence_id)
    db.refresh(left)
    assert left.recurring_template_id is None
    assert left.is_recurring is False
    assert left.frequency is None


def test_list_paginates_and_filters(db, user, wallet, category):
    engine = TransactionEngine(db)
    for day in range(1, 13):
        engine.create(user, new_txn(wallet, category, amount=day, date=datetime(2025, 1, day), name=f"Item {day}"))
    engine.create(user, new_txn(wallet, category, "income", 999, name="Salary"))

    page = engine.list(user, page=2, limit=5, type="expense")
    assert page["total_count"] == 12
    assert page["total_pages"] == 3
    assert page["has_next_page"] and page["has_prev_page"]
    assert [t.amount for t in page["data"]] == [7, 6, 5, 4, 3]

    found = engine.list(user, search="sal")
    assert [t.name for t in found["data"]] == ["Salary"]


def test_stats(db, user, wallet, category):
    engine = TransactionEngine(db)
    engine.create(user, new_txn(wallet, category, "income", 1000))
    engine.create(user, new_txn(wallet, category, "expense", 250))
    engine.create(user, new_txn(wallet, category, "expense", 50))

    stats = engine.stats(user)
    assert stats == {"total_income": 1000, "total_expense": 300, "balance": 700, "transaction_count": 3}


def test_wallet_update_cannot_touch_balance(db, user, wallet):
    updated = WalletService(db).update(user, wallet.id, WalletUpdate(name="Checking"))
    assert updated.name == "Checking"
    assert updated.balance == 1000
    assert "balance" not in WalletUpdate.model_fields


def test_wallet_delete_cascades_transactions(db, user, wallet, category):
    TransactionEngine(db).create(user, new_txn(wallet, category))
    WalletService(db).delete(user, wallet.id)
    assert db.query(models.Transaction).count() == 0


def test_wallet_details(db, user, wallet, category):
    engine = TransactionEngine(db)
    engine.create(user, new_txn(wallet, category, "income", 10))
    engine.create(user, new_txn(wallet, category, "expense", 4))

    details = WalletService(db).details(user, wallet.id)
    assert details["stats"] == {"total_transactions": 2, "total_income": 10, "total_expense": 4}
    assert len(details["transactions"]) == 2


def test_category_in_use_cannot_be_deleted(db, user, wallet, category):
    TransactionEngine(db).create(user, new_txn(wallet, category))
    with pytest.raises(ValidationError) as excinfo:
        CategoryService(db).delete(user, category.id)
    assert excinfo.value.extra["transaction_count"] == 1


def test_unused_category_can_be_deleted(db, user, category):
    CategoryService(db).delete(user, category.id)
    with pytest.raises(NotFoundError):
        CategoryService(db).get(user, category.id)


def test_frequency_patch_on_one_off_is_dropped(db, user, wallet, category):
    engine = TransactionEngine(db)
    txn = engine.create(user, new_txn(wallet, category))

    updated = engine.update(user, txn.id, TransactionUpdate(frequency="weekly"))

    assert updated.is_recurring is False
    assert updated.frequency is None


def test_clearing_frequency_of_template_is_rejected(db, user, wallet, category):
    engine = TransactionEngine(db)
    txn = engine.create(user, new_txn(wallet, category, is_recurring=True, frequency="monthly"))

    with pytest.raises(ValidationError):
        engine.update(user, txn.id, TransactionUpdate.model_validate({"frequency": None}))

    db.refresh(txn)
    assert txn.frequency == "monthly"
    assert balance(db, wallet) == 900


def test_mark_recurring_uses_stored_frequency_or_fails(db, user, wallet, category):
    engine = TransactionEngine(db)
    template = engine.create(user, new_txn(wallet, category, is_recurring=True, frequency="weekly"))
    assert engine.update(user, template.id, TransactionUpdate(is_recurring=True)).frequency == "weekly"

    one_off = engine.create(user, new_txn(wallet, category))
    with pytest.raises(ValidationError):
        engine.update(user, one_off.id, TransactionUpdate(is_recurring=True))

    updated = engine.update(user, one_off.id, TransactionUpdate(is_recurring=True, frequency="daily"))
    assert (updated.is_recurring, updated.frequency) == (True, "daily")


def test_explicit_nulls_leave_required_fields_alone(db, user, wallet, category):
    engine = TransactionEngine(db)
    txn = engine.create(user, new_txn(wallet, category, amount=100, description="note"))
    patch = TransactionUpdate.model_validate(
        {"name": None, "type": None, "amount": None, "category_id": None, "wallet_id": None, "description": None}
    )

    updated = engine.update(user, txn.id, patch)

    assert (updated.name, updated.type, updated.amount) == ("Lunch", "expense", 100)
    assert (updated.category_id, updated.wallet_id) == (category.id, wallet.id)
    assert updated.description is None
    assert balance(db, wallet) == 900


def test_balances_after_many_edits(db, user, category):
    w1 = make_wallet(db, user, name="W1", balance=1000)
    w2 = make_wallet(db, user, name="W2", balance=500)
    engine = TransactionEngine(db)

    a = engine.create(user, new_txn(w1, category, "expense", 200))
    b = engine.create(user, new_txn(w1, category, "income", 300))
    c = engine.create(user, new_txn(w2, category, "expense", 50))
    engine.update(user, a.id, TransactionUpdate(amount=250))
    engine.update(user, a.id, TransactionUpdate(type="income"))
    engine.update(user, b.id, TransactionUpdate(wallet_id=w2.id, amount=120))
    engine.update(user, a.id, TransactionUpdate(wallet_id=w2.id, type="expense", amount=10))
    engine.update(user, a.id, TransactionUpdate(wallet_id=w1.id))
    engine.update(user, c.id, TransactionUpdate(type="income"))
    d = engine.create(user, new_txn(w1, category, "expense", 999))
    engine.delete(user, d.id)
    engine.delete(user, c.id)

    for w, initial in ((w1, 1000), (w2, 500)):
        current = db.query(models.Transaction).filter(models.Transaction.wallet_id == w.id).all()
        assert balance(db, w) == initial + sum(t.signed_amount for t in current)
    assert (balance(db, w1), balance(db, w2)) == (990, 620)


def test_wallet_stats_for_all_wallets(db, user, wallet, category):
    empty = make_wallet(db, user, name="Zero")
    engine = TransactionEngine(db)
    engine.create(user, new_txn(wallet, category, "income", 300))
    engine.create(user, new_txn(wallet, category, "expense", 120))

    stats = WalletService(db).stats(user)

    assert stats == [
        {"wallet_id": wallet.id, "total_transactions": 2, "total_income": 300, "total_expense": 120},
        {"wallet_id": empty.id, "total_transactions": 0, "total_income": 0, "total_expense": 0},
    ]


def test_wallet_monthly_stats(db, user, wallet, category):
    engine = TransactionEngine(db)
    engine.create(user, new_txn(wallet, category, "income", 1000, date=datetime(2025, 1, 5)))
    engine.create(user, new_txn(wallet, category, "expense", 40, date=datetime(2025, 2, 10)))
    engine.create(user, new_txn(wallet, category, "expense", 60, date=datetime(2025, 3, 1)))
    engine.create(user, new_txn(wallet, category, "income", 5, date=datetime(2025, 3, 20)))

    months = WalletService(db).monthly_stats(user, wallet.id, months=2, today=datetime(2025, 3, 25))

    assert months == [
        {"month": "2025-02", "income": 0, "expense": 40},
        {"month": "2025-03", "income": 5, "expense": 60},
    ]


def test_wallet_monthly_stats_rejects_bad_window(db, user, wallet):
    with pytest.raises(ValidationError):
        WalletService(db).monthly_stats(user, wallet.id, months=13)


def test_wallet_category_breakdown(db, user, wallet, category):
    food = make_category(db, user, name="Food", type="expense")
    engine = TransactionEngine(db)
    engine.create(user, new_txn(wallet, food, "expense", 30))
    engine.create(user, new_txn(wallet, food, "expense", 45))
    engine.create(user, new_txn(wallet, category, "expense", 20))
    engine.create(user, new_txn(wallet, category, "income", 500))

    service = WalletService(db)
    expenses = service.category_breakdown(user, wallet.id, type="expense")
    assert expenses == [
        {"category_id": food.id, "category_name": "Food", "type": "expense", "total": 75, "count": 2},
        {"category_id": category.id, "category_name": "General", "type": "expense", "total": 20, "count": 1},
    ]
    assert [row["type"] for row in service.category_breakdown(user, wallet.id)] == ["income", "expense", "expense"]


def test_wallet_stats_of_other_user_wallet(db, other_user, wallet):
    with pytest.raises(NotFoundError):
        WalletService(db).category_breakdown(other_user, wallet.id)


def test_category_stats(db, user, wallet, category):
    unused = make_category(db, user, name="Travel")
    engine = TransactionEngine(db)
    engine.create(user, new_txn(wallet, category, "expense", 25))
    engine.create(user, new_txn(wallet, category, "income", 75))

    assert CategoryService(db).stats(user) == [
        {"category_id": category.id, "total_transactions": 2, "total_amount": 100},
        {"category_id": unused.id, "total_transactions": 0, "total_amount": 0},
    ]
