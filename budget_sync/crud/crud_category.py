from sqlalchemy.orm import Session, joinedload
from sqlalchemy.exc import IntegrityError
from sqlalchemy import or_
from typing import List, Optional, Tuple

from budget_sync.db.core import CategoryDB, CategoryGroupDB, BudgetDB, NotFoundError
from budget_sync.models.category import CategoryCreate
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)


OTHER_GROUP_NAME = "Other"
INCOME_GROUP_NAME = "Income"

DISCRETIONARY_CATEGORIES = {
    "Shopping",
    "Online Marketplaces",
    "Superstores",
    "Other Entertainment",
    "Events & Amusement",
    "Video Games",
    "TV & Movies",
    "Music & Audio",
}

# (group name, group description, [(category name, category description), ...])
BUILT_IN_CATEGORY_GROUPS: List[Tuple[str, str, List[Tuple[str, str]]]] = [
    ("Income", "Income from various sources", [
        ("Income", "Income from various sources"),
    ]),
    ("Savings & Transfers", "Savings and money transfers", [
        ("Inbound Transfer", "Loans and cash advances deposited into a bank account"),
        ("Investment Income", "Inbound transfers to an investment or retirement account"),
        ("Account Transfer", "General inbound transfers from another account"),
        ("Other Inbound", "Other miscellaneous inbound transactions"),
        ("Investment Transfer", "Transfers to an investment or retirement account"),
        ("Outbound Transfer", "Outbound transfers to savings accounts"),
        ("Withdrawal", "Withdrawals from a bank account"),
        ("Other Outbound", "Other miscellaneous outbound transactions"),
    ]),
    ("Debt Payments", "Debt and loan payments", [
        ("Debt Payments", "Payments on mortgages, loans and credit cards"),
    ]),
    ("Bank Fees", "Bank and financial institution fees", [
        ("Bank Fees", "ATM, overdraft, interest and other bank fees"),
    ]),
    ("Entertainment", "Entertainment and recreation expenses", [
        ("Gambling", "Gambling, casinos, and sports betting"),
        ("Music & Audio", "Digital and in-person music purchases, including streaming"),
        ("Events & Amusement", "Sporting events, concerts, museums, and amusement parks"),
        ("TV & Movies", "Movie streaming services and movie theaters"),
        ("Video Games", "Digital and in-person video game purchases"),
        ("Other Entertainment", "Other miscellaneous entertainment purchases"),
    ]),
    ("Food & Drink", "Food, dining and groceries", [
        ("Alcohol", "Beer, wine and liquor stores"),
        ("Coffee", "Coffee shops and cafes"),
        ("Fast Food", "Fast food chains"),
        ("Groceries", "Groceries and farmers' markets"),
        ("Dining Out", "Restaurants, bars, gastropubs, and diners"),
        ("Vending Machines", "Vending machine operators"),
        ("Other Food & Drink", "Desserts, juice bars, delis and other food"),
    ]),
    ("Retail & Goods", "Shopping and retail purchases", [
        ("Shopping", "Retail stores with wide ranges of consumer goods"),
        ("Online Marketplaces", "Multi-purpose e-commerce platforms"),
        ("Superstores", "Superstores selling groceries and general merchandise"),
    ]),
    ("Home Improvement", "Home maintenance and improvements", [
        ("Furniture", "Furniture, bedding, and home accessories"),
        ("Hardware", "Building materials, hardware stores, paint"),
        ("Repair & Maintenance", "Plumbing, lighting, gardening, and roofing"),
        ("Security", "Home security systems"),
        ("Other Home Improvement", "Other miscellaneous home purchases"),
    ]),
    ("Medical", "Healthcare and medical expenses", [
        ("Dental Care", "Dentists and general dental care"),
        ("Eye Care", "Optometrists, contacts, and glasses"),
        ("Nursing Care", "Nursing care and facilities"),
        ("Pharmacies & Supplements", "Pharmacies and nutrition shops"),
        ("Primary Care", "Doctors and physicians"),
        ("Veterinary Services", "Care procedures for animals"),
        ("Other Medical", "Blood work, hospitals, ambulances and other medical"),
    ]),
    ("Personal Care", "Personal care and services", [
        ("Gyms & Fitness", "Gyms, fitness centers, and workout classes"),
        ("Hair & Beauty", "Haircuts, manicures, spa and beauty products"),
        ("Laundry & Dry Cleaning", "Wash and fold, and dry cleaning"),
        ("Other Personal Care", "Other miscellaneous personal care"),
    ]),
    ("General Services", "Various professional services", [
        ("Financial Planning", "Financial planning, tax and accounting services"),
        ("Automotive", "Oil changes, car washes, repairs, and towing"),
        ("Childcare", "Babysitters and daycare"),
        ("Consulting & Legal", "Consulting and legal services"),
        ("Education", "School and college tuition"),
        ("Insurance", "Auto, home, and healthcare insurance"),
        ("Postage & Shipping", "Mail, packaging, and shipping"),
        ("Storage", "Storage services and facilities"),
        ("Other Services", "Other miscellaneous services"),
    ]),
    ("Government & Non-Profit", "Government and charitable expenses", [
        ("Donations", "Charitable, political, and religious donations"),
        ("Government Services", "Government departments and agencies"),
        ("Tax Payment", "Income and property taxes"),
        ("Other Government & Non-Profit", "Other government and non-profit agencies"),
    ]),
    ("Transport & Travel", "Transportation and travel costs", [
        ("Bikes & Scooters", "Bike and scooter rentals"),
        ("Transportation", "Gas stations"),
        ("Other Transportation", "Parking, transit, ride shares and tolls"),
        ("Flights", "Airline expenses"),
        ("Lodging", "Hotels, motels, and hosted accommodation"),
        ("Rental Cars", "Rental cars, charter buses, and trucks"),
        ("Other Travel", "Other miscellaneous travel expenses"),
    ]),
    ("Rent & Utilities", "Housing rent and utility bills", [
        ("Gas & Electricity", "Gas and electricity bills"),
        ("Internet & Cable", "Internet and cable bills"),
        ("Rent", "Rent payment"),
        ("Sewage & Waste", "Sewage and garbage disposal bills"),
        ("Telephone", "Cell phone bills"),
        ("Water", "Water bills"),
        ("Other Utilities", "Other miscellaneous utility bills"),
    ]),
    (OTHER_GROUP_NAME, "Other catch-all category", [
        ("Other", "Other catch-all category"),
    ]),
]


# ===== DATABASE OPERATIONS =====

def seed_built_in_categories(db: Session) -> int:
    """Insert any missing built-in groups and categories. Returns the number of categories added."""
    added = 0
    for group_name, group_description, categories in BUILT_IN_CATEGORY_GROUPS:
        group = db.query(CategoryGroupDB).filter(
            CategoryGroupDB.budget_id.is_(None),
            CategoryGroupDB.name == group_name
        ).first()
        if not group:
            group = CategoryGroupDB(
                name=group_name,
                description=group_description,
                is_enabled=group_name != OTHER_GROUP_NAME,
            )
            db.add(group)
            db.flush()

        for category_name, category_description in categories:
            exists = db.query(CategoryDB.id).filter(
                CategoryDB.budget_id.is_(None),
                CategoryDB.name == category_name
            ).first()
            if exists:
                continue
            db.add(CategoryDB(
                group_id=group.id,
                name=category_name,
                description=category_description,
                is_discretionary=category_name in DISCRETIONARY_CATEGORIES,
            ))
            added += 1

    db.commit()
    if added:
        logger.info(f"Seeded {added} built-in categories")
    return added


def read_categories_for_budget(db: Session, budget_id: Optional[int] = None) -> List[CategoryDB]:
    """Built-in categories plus the budget's own, with their groups loaded."""
    query = db.query(CategoryDB).options(joinedload(CategoryDB.group))
    if budget_id is None:
        query = query.filter(CategoryDB.budget_id.is_(None))
    else:
        query = query.filter(or_(CategoryDB.budget_id.is_(None), CategoryDB.budget_id == budget_id))
    return query.order_by(CategoryDB.id).all()


def read_category_by_name(db: Session, name: str, budget_id: Optional[int] = None) -> Optional[CategoryDB]:
    query = db.query(CategoryDB).filter(CategoryDB.name == name)
    if budget_id is None:
        query = query.filter(CategoryDB.budget_id.is_(None))
    else:
        query = query.filter(or_(CategoryDB.budget_id.is_(None), CategoryDB.budget_id == budget_id))
    # Budget-specific rows sort after NULLs, take the most specific
    return query.order_by(CategoryDB.budget_id.desc()).first()


def create_budget_category(db: Session, budget_id: int, category_data: CategoryCreate) -> CategoryDB:
    """Create a custom category for one budget, creating its group if needed"""
    budget = db.query(BudgetDB).filter(BudgetDB.id == budget_id).first()
    if not budget:
        raise NotFoundError(f"Budget with id {budget_id} not found")

    existing = db.query(CategoryDB).filter(
        CategoryDB.budget_id == budget_id,
        CategoryDB.name.ilike(category_data.name)
    ).first()
    if existing:
        raise ValueError(f"Category with name '{category_data.name}' already exists in this budget")

    if category_data.is_composite:
        known = {c.name for c in read_categories_for_budget(db, budget_id)}
        missing = [c.category_name for c in category_data.composite_data if c.category_name not in known]
        if missing:
            raise ValueError(f"Composite components reference unknown categories: {', '.join(missing)}")

    group = db.query(CategoryGroupDB).filter(
        or_(CategoryGroupDB.budget_id.is_(None), CategoryGroupDB.budget_id == budget_id),
        CategoryGroupDB.name == category_data.group_name
    ).order_by(CategoryGroupDB.budget_id.desc()).first()
    if not group:
        group = CategoryGroupDB(budget_id=budget_id, name=category_data.group_name)
        db.add(group)
        db.flush()

    db_category = CategoryDB(
        group_id=group.id,
        budget_id=budget_id,
        name=category_data.name,
        description=category_data.description,
        is_discretionary=category_data.is_discretionary,
        is_composite=category_data.is_composite,
        composite_data=[c.model_dump(mode="json") for c in category_data.composite_data] if category_data.composite_data else None,
    )

    try:
        db.add(db_category)
        db.commit()
        db.refresh(db_category)
        return db_category
    except IntegrityError:
        db.rollback()
        raise ValueError("Category creation failed due to a database constraint.")
