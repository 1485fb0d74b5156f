import pytest
from decimal import Decimal

from budget_sync.crud import crud_category
from budget_sync.db.core import TransactionDB, TransactionStatus
from budget_sync.models.transaction import CanonicalTransaction, TransactionSourceEnum, TransactionStatusEnum
from budget_sync.services.normalizer import from_aggregator
from budget_sync.services.persistence import TransactionPersister, dedupe_by_user_tx_id

from tests.factories import make_plaid_tx, on


def make_tx(user_tx_id, account_id, category_id, day=1, amount="10.00", **overrides):
    fields = dict(
        user_tx_id=user_tx_id,
        fin_account_id=account_id,
        source=TransactionSourceEnum.MANUAL,
        transaction_date=on(day),
        amount=Decimal(amount),
        iso_currency_code="USD",
        category_id=category_id,
    )
    fields.update(overrides)
    return CanonicalTransaction(**fields)


@pytest.fixture
def groceries(db):
    return crud_category.read_category_by_name(db, "Groceries")


def test_persisting_twice_inserts_once(db, user, manual_account, groceries):
    transactions = [make_tx(f"tx-{i}", manual_account.id, groceries.id, day=i) for i in range(1, 4)]
    persister = TransactionPersister(db, user.id, batch_delay=0)

    first = persister.persist(transactions)
    second = persister.persist(transactions)

    assert first.inserted_count == 3
    assert [tx.user_tx_id for tx in first.inserted] == ["tx-1", "tx-2", "tx-3"]
    assert second.inserted_count == 0
    assert second.skipped_count == 3
    assert db.query(TransactionDB).count() == 3


def test_duplicates_inside_one_call_keep_the_first(db, user, manual_account, groceries):
    transactions = [
        make_tx("dup", manual_account.id, groceries.id, amount="1.00"),
        make_tx("dup", manual_account.id, groceries.id, amount="2.00"),
    ]

    result = TransactionPersister(db, user.id, batch_delay=0).persist(transactions)

    assert result.inserted_count == 1
    assert result.skipped_count == 1
    assert db.query(TransactionDB).one().amount == Decimal("1.00")


def test_dedupe_by_user_tx_id():
    first = CanonicalTransaction(user_tx_id="a", fin_account_id=1, source=TransactionSourceEnum.CSV,
                                 transaction_date=on(1), amount=Decimal("1"), iso_currency_code="USD")
    unique, dropped = dedupe_by_user_tx_id([first, first.model_copy(), first.model_copy(update={"user_tx_id": "b"})])

    assert [tx.user_tx_id for tx in unique] == ["a", "b"]
    assert dropped == 1


def test_unresolved_category_is_rejected(db, user, manual_account):
    with pytest.raises(ValueError):
        TransactionPersister(db, user.id, batch_delay=0).persist([make_tx("x", manual_account.id, None)])
    assert db.query(TransactionDB).count() == 0


def test_small_batches_commit_everything(db, user, manual_account, groceries):
    transactions = [make_tx(f"tx-{i}", manual_account.id, groceries.id, day=10 - i) for i in range(5)]

    result = TransactionPersister(db, user.id, batch_size=2, batch_delay=0).persist(transactions)

    assert result.inserted_count == 5
    # Inserted records come back date ascending
    assert [tx.transaction_date.day for tx in result.inserted] == [6, 7, 8, 9, 10]


def test_batch_size_must_be_positive(db, user):
    with pytest.raises(ValueError):
        TransactionPersister(db, user.id, batch_size=0)


def test_posted_transaction_settles_its_pending_row(db, user, connection, groceries):
    account_id = connection.fin_accounts[0].id
    pending = from_aggregator(make_plaid_tx("pend-1", amount=20, pending=True), account_id)
    persister = TransactionPersister(db, user.id, batch_delay=0)
    persister.persist([pending.model_copy(update={"category_id": groceries.id})])

    posted = from_aggregator(make_plaid_tx("post-1", amount=21.5, tx_date="2026-10-03",
                                           pending_transaction_id="pend-1"), account_id)
    settled, remaining = persister.update_pending_to_posted([posted.model_copy(update={"category_id": groceries.id})])

    assert settled == 1
    assert remaining == []
    row = db.query(TransactionDB).one()
    assert row.user_tx_id == "pend-1"
    assert row.plaid_tx_id == "post-1"
    assert row.status == TransactionStatus.POSTED
    assert row.amount == Decimal("21.50")
    assert row.transaction_date == on(3)


def test_removals_spare_superseded_ids(db, user, connection, groceries):
    account_id = connection.fin_accounts[0].id
    persister = TransactionPersister(db, user.id, batch_delay=0)
    persister.persist([
        from_aggregator(make_plaid_tx(tx_id), account_id).model_copy(update={"category_id": groceries.id})
        for tx_id in ("keep", "drop")
    ])

    removed = persister.apply_removals(["keep", "drop", "never-stored"], superseded={"keep"})

    assert removed == 1
    assert [row.plaid_tx_id for row in db.query(TransactionDB).all()] == ["keep"]


def test_modifications_leave_category_alone(db, user, connection, groceries):
    account_id = connection.fin_accounts[0].id
    coffee = crud_category.read_category_by_name(db, "Coffee")
    persister = TransactionPersister(db, user.id, batch_delay=0)
    persister.persist([from_aggregator(make_plaid_tx("m-1"), account_id).model_copy(update={"category_id": coffee.id})])

    modified = from_aggregator(make_plaid_tx("m-1", amount=99, merchant_name="Renamed"), account_id)
    updated, missing = persister.apply_modifications([modified.model_copy(update={"category_id": groceries.id})])

    assert (updated, missing) == (1, [])
    row = db.query(TransactionDB).one()
    assert row.amount == Decimal("99.00")
    assert row.merchant_name == "Renamed"
    assert row.category_id == coffee.id
    assert row.status == TransactionStatus(TransactionStatusEnum.POSTED.value)
