import pytest
from decimal import Decimal

from budget_sync.crud import crud_account, crud_category
from budget_sync.db.core import FinAccountDB, NotFoundError, TransactionDB, TransactionSource, TransactionStatus
from budget_sync.services.csv_import import (
    SKIP_DUPLICATE_IN_FILE,
    SKIP_UNKNOWN_ACCOUNT,
    SKIP_UNMAPPED_CATEGORY,
    CsvImportError,
    import_csv,
    read_rows,
    validate_row,
)
from budget_sync.services.normalizer import from_aggregator
from budget_sync.services.persistence import TransactionPersister

from tests.factories import CSV_HEADER, make_csv, make_csv_row, make_plaid_tx


def run_import(db, user, budget, content, **kwargs):
    return import_csv(db, user.id, budget.id, content, batch_delay=0, **kwargs)


def test_rows_with_unknown_categories_are_skipped(db, user, budget, manual_account):
    content = make_csv(
        make_csv_row("A1"),
        make_csv_row("A2", category="Not A Category"),
        make_csv_row("A3", category="dining out", amount="18.00"),
    )

    result = run_import(db, user, budget, content)

    assert result.inserted_count == 2
    assert result.duplicate_count == 0
    assert [(s.reference, s.reason, s.index) for s in result.skipped] == [("A2", SKIP_UNMAPPED_CATEGORY, 2)]
    rows = {row.user_tx_id: row for row in db.query(TransactionDB).all()}
    assert set(rows) == {"A1", "A3"}
    assert rows["A1"].source == TransactionSource.CSV
    assert rows["A1"].fin_account_id == manual_account.id
    assert rows["A3"].category.name == "Dining Out"
    assert rows["A3"].meta_data == {"created_for": budget.id}


def test_missing_headers_reject_the_file(db, user, budget, manual_account):
    header = CSV_HEADER.replace(",AccountMask", "")

    with pytest.raises(CsvImportError) as exc_info:
        run_import(db, user, budget, make_csv("A1,posted,10/02/2026,1,M,Groceries,First Bank,FB,Checking,depository",
                                             header=header))

    assert exc_info.value.missing_columns == ["AccountMask"]
    assert db.query(TransactionDB).count() == 0


def test_reimporting_counts_duplicates(db, user, budget, manual_account):
    content = make_csv(make_csv_row("A1"), make_csv_row("A2"))

    run_import(db, user, budget, content)
    second = run_import(db, user, budget, content)

    assert second.inserted_count == 0
    assert second.duplicate_count == 2
    assert db.query(TransactionDB).count() == 2


def test_duplicate_ids_inside_one_file(db, user, budget, manual_account):
    content = make_csv(make_csv_row("A1", amount="1.00"), make_csv_row("A1", amount="2.00"))

    result = run_import(db, user, budget, content)

    assert result.inserted_count == 1
    assert result.duplicate_count == 0
    assert [(s.reference, s.reason, s.index) for s in result.skipped] == [("A1", SKIP_DUPLICATE_IN_FILE, 2)]
    assert db.query(TransactionDB).one().amount == Decimal("1.00")


def test_csv_row_wins_over_later_aggregator_copy(db, user, budget, manual_account, connection):
    run_import(db, user, budget, make_csv(make_csv_row("ABC123", amount="42.10")))

    groceries = crud_category.read_category_by_name(db, "Groceries")
    plaid_copy = from_aggregator(make_plaid_tx("ABC123", amount=99), connection.fin_accounts[0].id)
    result = TransactionPersister(db, user.id, batch_delay=0).persist(
        [plaid_copy.model_copy(update={"category_id": groceries.id})]
    )

    assert result.inserted_count == 0
    row = db.query(TransactionDB).one()
    assert row.source == TransactionSource.CSV
    assert row.amount == Decimal("42.10")


def test_unknown_account_is_skipped_unless_creation_is_allowed(db, user, budget, manual_account):
    content = make_csv(make_csv_row("S1", account_name="Savings", mask="9876", account_type="DEPOSITORY"))

    skipped = run_import(db, user, budget, content)
    assert skipped.inserted_count == 0
    assert skipped.skipped[0].reason == SKIP_UNKNOWN_ACCOUNT

    created = run_import(db, user, budget, content, create_missing_accounts=True)
    assert created.inserted_count == 1
    assert [a.name for a in created.created_accounts] == ["Savings"]
    account = db.query(FinAccountDB).filter(FinAccountDB.name == "Savings").one()
    assert account.id in {a.id for a in crud_account.read_budget_accounts(db, budget.id)}


def test_existing_account_gets_linked_to_the_budget(db, user, budget, manual_account):
    crud_account.unlink_account_from_budget(db, user.id, budget.id, manual_account.id)

    result = run_import(db, user, budget, make_csv(make_csv_row("L1")))

    assert result.inserted_count == 1
    assert [a.id for a in crud_account.read_budget_accounts(db, budget.id)] == [manual_account.id]


def test_invalid_rows_report_their_reason(db, user, budget, manual_account):
    content = make_csv(
        make_csv_row("V1", mask="12"),
        make_csv_row("V2", tx_date="2026-10-02"),
        make_csv_row("V3", amount="lots"),
        make_csv_row("V4", status="cleared"),
        make_csv_row("V5", bank_symbol="FB1"),
        make_csv_row("V6", account_type="brokerage"),
        make_csv_row("V7", status="PENDING"),
    )

    result = run_import(db, user, budget, content)

    assert {s.reference: s.reason for s in result.skipped} == {
        "V1": "invalid_AccountMask",
        "V2": "invalid_TransactionDate",
        "V3": "invalid_TransactionAmount",
        "V4": "invalid_TransactionStatus",
        "V5": "invalid_BankSymbol",
        "V6": "invalid_AccountType",
    }
    assert result.inserted_count == 1
    assert db.query(TransactionDB).one().status == TransactionStatus.PENDING


def test_unknown_budget_raises(db, user):
    with pytest.raises(NotFoundError):
        import_csv(db, user.id, 999, make_csv(make_csv_row("A1")), batch_delay=0)


def test_read_rows_numbers_data_rows_and_drops_blank_lines():
    content = ("\ufeff" + make_csv(make_csv_row("A1"), ",,,,,,,,,,", make_csv_row("A2"))).encode("utf-8")

    rows = read_rows(content)

    assert [(number, row["TransactionId"]) for number, row in rows] == [(1, "A1"), (3, "A2")]
    assert validate_row(rows[0][1]) is None


def test_bank_symbol_is_three_to_five_letters_in_any_case(db, user, budget, manual_account):
    content = make_csv(
        make_csv_row("B1", bank_symbol="fbk"),
        make_csv_row("B2", bank_symbol="FB"),
        make_csv_row("B3", bank_symbol="FIRSTB"),
    )

    result = run_import(db, user, budget, content)

    assert result.inserted_count == 1
    assert {s.reference: s.reason for s in result.skipped} == {
        "B2": "invalid_BankSymbol",
        "B3": "invalid_BankSymbol",
    }
    assert db.query(TransactionDB).one().fin_account_id == manual_account.id
