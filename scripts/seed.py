import sys
import os
import random
from sqlalchemy.orm import Session
from datetime import date, timedelta
from decimal import Decimal
from faker import Faker

# Add the project root to the Python path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from budget_sync.db.core import session_local, UserDB, OnboardingStep
from budget_sync.crud import crud_account, crud_budget, crud_category, crud_transaction
from budget_sync.models.account import ManualAccountCreate
from budget_sync.models.budget import BudgetCreate
from budget_sync.models.transaction import ManualTransactionCreate
from budget_sync.logging_config import setup_logging, get_logger

fake = Faker()
logger = get_logger("scripts.seed")

# (category, low, high, times per month)
SAMPLE_SPENDING = [
    ("Rent", Decimal("1400"), Decimal("1400"), 1),
    ("Gas & Electricity", Decimal("60"), Decimal("140"), 1),
    ("Internet & Cable", Decimal("70"), Decimal("70"), 1),
    ("Groceries", Decimal("40"), Decimal("160"), 6),
    ("Dining Out", Decimal("15"), Decimal("90"), 5),
    ("Coffee", Decimal("4"), Decimal("9"), 8),
    ("Shopping", Decimal("20"), Decimal("250"), 3),
    ("TV & Movies", Decimal("12"), Decimal("18"), 1),
    ("Transportation", Decimal("30"), Decimal("65"), 3),
]

MONTHLY_INCOME = Decimal("5200")


def _random_amount(low: Decimal, high: Decimal) -> Decimal:
    return round(low + (high - low) * Decimal(str(random.random())), 2)


def seed_database(months: int = 3):
    """
    Create the placeholder user, the built-in categories and one demo budget.

    The budget gets a manual checking account with a few months of
    transactions and is left at the analyze_spending step, ready for
    POST /budgets/{id}/analysis.
    """
    db: Session = session_local()

    try:
        created = crud_category.seed_built_in_categories(db)
        logger.info(f"{created} built-in categories created")

        if db.query(UserDB).count() > 0:
            logger.info("Database appears to be already seeded. Exiting.")
            return

        user = UserDB(email=fake.email(), display_name=fake.first_name())
        db.add(user)
        db.commit()
        db.refresh(user)

        budget = crud_budget.create_budget(db, user.id, BudgetCreate(name="Household"))
        account = crud_account.create_manual_account(
            db, user.id,
            ManualAccountCreate(
                institution_name=fake.company(),
                institution_symbol="DEMO",
                name="Main Checking",
                account_type="depository",
                mask=f"{random.randint(0, 9999):04d}",
                balance_current=Decimal("8000"),
            ),
            budget_id=budget.id,
        )

        start = date.today().replace(day=1)
        count = 0
        for month_offset in range(months):
            month_start = (start - timedelta(days=1)).replace(day=1) if month_offset else start
            start = month_start

            entries = [("Income", -MONTHLY_INCOME, month_start, fake.company())]
            for category, low, high, times in SAMPLE_SPENDING:
                for _ in range(times):
                    day = month_start + timedelta(days=random.randint(0, 27))
                    entries.append((category, _random_amount(low, high), day, fake.company()))

            for category, amount, day, merchant in entries:
                if day > date.today():
                    continue
                crud_transaction.create_manual_transaction(
                    db, user.id, budget.id,
                    ManualTransactionCreate(
                        fin_account_id=account.id,
                        transaction_date=day,
                        amount=amount,
                        category=category,
                        merchant_name=merchant,
                    )
                )
                count += 1

        for expected, target in [
            (OnboardingStep.START, OnboardingStep.MANUAL),
            (OnboardingStep.MANUAL, OnboardingStep.PROFILE_GOALS),
            (OnboardingStep.PROFILE_GOALS, OnboardingStep.ANALYZE_SPENDING),
        ]:
            crud_budget.transition_onboarding_step(db, budget.id, expected, target)

        logger.info(f"Seeded user {user.id} with budget {budget.id} and {count} transactions")

    except Exception as e:
        logger.exception(f"An error occurred: {e}")
        db.rollback()
    finally:
        db.close()

if __name__ == "__main__":
    setup_logging()
    seed_database()
