"""
Category resolution.

Maps free-text category labels (aggregator categories, CSV columns, manual
entry) onto the internal category taxonomy. Labels are compared after
normalisation; a label that matches nothing is left out of the result and
callers skip the record carrying it.
"""
import re
from typing import Dict, Iterable, List, Optional

from budget_sync.models.category import MappedCategory
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)


_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


# Aggregator detailed category code -> internal category name
AGGREGATOR_CATEGORY_MAP: Dict[str, str] = {
    # Income
    "INCOME_DIVIDENDS": "Income",
    "INCOME_INTEREST_EARNED": "Income",
    "INCOME_RETIREMENT_PENSION": "Income",
    "INCOME_TAX_REFUND": "Income",
    "INCOME_UNEMPLOYMENT": "Income",
    "INCOME_WAGES": "Income",
    "INCOME_OTHER_INCOME": "Income",
    # Transfers in
    "TRANSFER_IN_CASH_ADVANCES_AND_LOANS": "Inbound Transfer",
    "TRANSFER_IN_INVESTMENT_AND_RETIREMENT_FUNDS": "Investment Income",
    "TRANSFER_IN_ACCOUNT_TRANSFER": "Account Transfer",
    "TRANSFER_IN_DEPOSIT": "Other Inbound",
    "TRANSFER_IN_SAVINGS": "Other Inbound",
    "TRANSFER_IN_OTHER_TRANSFER_IN": "Other Inbound",
    # Transfers out
    "TRANSFER_OUT_INVESTMENT_AND_RETIREMENT_FUNDS": "Investment Transfer",
    "TRANSFER_OUT_SAVINGS": "Outbound Transfer",
    "TRANSFER_OUT_WITHDRAWAL": "Withdrawal",
    "TRANSFER_OUT_ACCOUNT_TRANSFER": "Other Outbound",
    "TRANSFER_OUT_OTHER_TRANSFER_OUT": "Other Outbound",
    # Loan payments
    "LOAN_PAYMENTS_CAR_PAYMENT": "Debt Payments",
    "LOAN_PAYMENTS_CREDIT_CARD_PAYMENT": "Debt Payments",
    "LOAN_PAYMENTS_PERSONAL_LOAN_PAYMENT": "Debt Payments",
    "LOAN_PAYMENTS_MORTGAGE_PAYMENT": "Debt Payments",
    "LOAN_PAYMENTS_STUDENT_LOAN_PAYMENT": "Debt Payments",
    "LOAN_PAYMENTS_OTHER_PAYMENT": "Debt Payments",
    # Bank fees
    "BANK_FEES_ATM_FEES": "Bank Fees",
    "BANK_FEES_FOREIGN_TRANSACTION_FEES": "Bank Fees",
    "BANK_FEES_INSUFFICIENT_FUNDS": "Bank Fees",
    "BANK_FEES_INTEREST_CHARGE": "Bank Fees",
    "BANK_FEES_OVERDRAFT_FEES": "Bank Fees",
    "BANK_FEES_OTHER_BANK_FEES": "Bank Fees",
    # Entertainment
    "ENTERTAINMENT_CASINOS_AND_GAMBLING": "Gambling",
    "ENTERTAINMENT_MUSIC_AND_AUDIO": "Music & Audio",
    "ENTERTAINMENT_SPORTING_EVENTS_AMUSEMENT_PARKS_AND_MUSEUMS": "Events & Amusement",
    "ENTERTAINMENT_TV_AND_MOVIES": "TV & Movies",
    "ENTERTAINMENT_VIDEO_GAMES": "Video Games",
    "ENTERTAINMENT_OTHER_ENTERTAINMENT": "Other Entertainment",
    # Food & drink
    "FOOD_AND_DRINK_BEER_WINE_AND_LIQUOR": "Alcohol",
    "FOOD_AND_DRINK_COFFEE": "Coffee",
    "FOOD_AND_DRINK_FAST_FOOD": "Fast Food",
    "FOOD_AND_DRINK_GROCERIES": "Groceries",
    "FOOD_AND_DRINK_RESTAURANT": "Dining Out",
    "FOOD_AND_DRINK_VENDING_MACHINES": "Vending Machines",
    "FOOD_AND_DRINK_OTHER_FOOD_AND_DRINK": "Other Food & Drink",
    # General merchandise
    "GENERAL_MERCHANDISE_BOOKSTORES_AND_NEWSSTANDS": "Shopping",
    "GENERAL_MERCHANDISE_CLOTHING_AND_ACCESSORIES": "Shopping",
    "GENERAL_MERCHANDISE_CONVENIENCE_STORES": "Shopping",
    "GENERAL_MERCHANDISE_DEPARTMENT_STORES": "Shopping",
    "GENERAL_MERCHANDISE_DISCOUNT_STORES": "Shopping",
    "GENERAL_MERCHANDISE_ELECTRONICS": "Shopping",
    "GENERAL_MERCHANDISE_GIFTS_AND_NOVELTIES": "Shopping",
    "GENERAL_MERCHANDISE_OFFICE_SUPPLIES": "Shopping",
    "GENERAL_MERCHANDISE_PET_SUPPLIES": "Shopping",
    "GENERAL_MERCHANDISE_SPORTING_GOODS": "Shopping",
    "GENERAL_MERCHANDISE_TOBACCO_AND_VAPE": "Shopping",
    "GENERAL_MERCHANDISE_OTHER_GENERAL_MERCHANDISE": "Shopping",
    "GENERAL_MERCHANDISE_ONLINE_MARKETPLACES": "Online Marketplaces",
    "GENERAL_MERCHANDISE_SUPERSTORES": "Superstores",
    # Home improvement
    "HOME_IMPROVEMENT_FURNITURE": "Furniture",
    "HOME_IMPROVEMENT_HARDWARE": "Hardware",
    "HOME_IMPROVEMENT_REPAIR_AND_MAINTENANCE": "Repair & Maintenance",
    "HOME_IMPROVEMENT_SECURITY": "Security",
    "HOME_IMPROVEMENT_OTHER_HOME_IMPROVEMENT": "Other Home Improvement",
    # Medical
    "MEDICAL_DENTAL_CARE": "Dental Care",
    "MEDICAL_EYE_CARE": "Eye Care",
    "MEDICAL_NURSING_CARE": "Nursing Care",
    "MEDICAL_PHARMACIES_AND_SUPPLEMENTS": "Pharmacies & Supplements",
    "MEDICAL_PRIMARY_CARE": "Primary Care",
    "MEDICAL_VETERINARY_SERVICES": "Veterinary Services",
    "MEDICAL_OTHER_MEDICAL": "Other Medical",
    # Personal care
    "PERSONAL_CARE_GYMS_AND_FITNESS_CENTERS": "Gyms & Fitness",
    "PERSONAL_CARE_HAIR_AND_BEAUTY": "Hair & Beauty",
    "PERSONAL_CARE_LAUNDRY_AND_DRY_CLEANING": "Laundry & Dry Cleaning",
    "PERSONAL_CARE_OTHER_PERSONAL_CARE": "Other Personal Care",
    # General services
    "GENERAL_SERVICES_ACCOUNTING_AND_FINANCIAL_PLANNING": "Financial Planning",
    "GENERAL_SERVICES_AUTOMOTIVE": "Automotive",
    "GENERAL_SERVICES_CHILDCARE": "Childcare",
    "GENERAL_SERVICES_CONSULTING_AND_LEGAL": "Consulting & Legal",
    "GENERAL_SERVICES_EDUCATION": "Education",
    "GENERAL_SERVICES_INSURANCE": "Insurance",
    "GENERAL_SERVICES_POSTAGE_AND_SHIPPING": "Postage & Shipping",
    "GENERAL_SERVICES_STORAGE": "Storage",
    "GENERAL_SERVICES_OTHER_GENERAL_SERVICES": "Other Services",
    # Government & non-profit
    "GOVERNMENT_AND_NON_PROFIT_DONATIONS": "Donations",
    "GOVERNMENT_AND_NON_PROFIT_GOVERNMENT_DEPARTMENTS_AND_AGENCIES": "Government Services",
    "GOVERNMENT_AND_NON_PROFIT_TAX_PAYMENT": "Tax Payment",
    "GOVERNMENT_AND_NON_PROFIT_OTHER_GOVERNMENT_AND_NON_PROFIT": "Other Government & Non-Profit",
    # Transportation
    "TRANSPORTATION_BIKES_AND_SCOOTERS": "Bikes & Scooters",
    "TRANSPORTATION_GAS": "Transportation",
    "TRANSPORTATION_PARKING": "Other Transportation",
    "TRANSPORTATION_PUBLIC_TRANSIT": "Other Transportation",
    "TRANSPORTATION_TAXIS_AND_RIDE_SHARES": "Other Transportation",
    "TRANSPORTATION_TOLLS": "Other Transportation",
    "TRANSPORTATION_OTHER_TRANSPORTATION": "Other Transportation",
    # Travel
    "TRAVEL_FLIGHTS": "Flights",
    "TRAVEL_LODGING": "Lodging",
    "TRAVEL_RENTAL_CARS": "Rental Cars",
    "TRAVEL_OTHER_TRAVEL": "Other Travel",
    # Rent & utilities
    "RENT_AND_UTILITIES_GAS_AND_ELECTRICITY": "Gas & Electricity",
    "RENT_AND_UTILITIES_INTERNET_AND_CABLE": "Internet & Cable",
    "RENT_AND_UTILITIES_RENT": "Rent",
    "RENT_AND_UTILITIES_SEWAGE_AND_WASTE_MANAGEMENT": "Sewage & Waste",
    "RENT_AND_UTILITIES_TELEPHONE": "Telephone",
    "RENT_AND_UTILITIES_WATER": "Water",
    "RENT_AND_UTILITIES_OTHER_UTILITIES": "Other Utilities",
    # Catch-all
    "OTHER_OTHER": "Other",
}


def normalize_category(label: Optional[str]) -> str:
    """Trim, lowercase, strip punctuation and collapse whitespace."""
    if not label:
        return ""
    normalized = _NON_ALPHANUMERIC.sub("", label.strip().lower())
    return _WHITESPACE.sub(" ", normalized).strip()


def to_internal_label(aggregator_code: Optional[str]) -> Optional[str]:
    """Translate an aggregator detailed category code to an internal category name."""
    if not aggregator_code:
        return None
    return AGGREGATOR_CATEGORY_MAP.get(aggregator_code.strip().upper())


class CategoryMapper:
    """
    Resolves labels against a fixed category set.

    ``categories`` is any iterable of objects with ``id``, ``name``,
    ``budget_id`` and ``group`` (with a ``name``), typically the rows
    returned by ``crud_category.read_categories_for_budget``. The set is
    read once at construction; the mapper never touches the store.
    """

    def __init__(self, categories: Iterable):
        self._by_normalized: Dict[str, MappedCategory] = {}
        custom: List = []
        for category in categories:
            # Budget-specific categories are applied last so they win collisions
            if getattr(category, "budget_id", None) is not None:
                custom.append(category)
            else:
                self._register(category)
        for category in custom:
            self._register(category)

    def _register(self, category) -> None:
        key = normalize_category(category.name)
        if not key:
            return
        self._by_normalized[key] = MappedCategory(
            category_id=category.id,
            category_name=category.name,
            group_name=category.group.name,
        )

    def __len__(self) -> int:
        return len(self._by_normalized)

    def resolve(self, label: Optional[str]) -> Optional[MappedCategory]:
        return self._by_normalized.get(normalize_category(label))

    def map_labels(self, labels: Iterable[Optional[str]]) -> Dict[str, MappedCategory]:
        """
        Map each distinct label to its internal category.

        Null, empty and unmatched labels are absent from the result.
        """
        mapped: Dict[str, MappedCategory] = {}
        unmatched = set()
        for label in labels:
            if not label or label in mapped or label in unmatched:
                continue
            match = self.resolve(label)
            if match is None:
                unmatched.add(label)
                continue
            mapped[label] = match

        if unmatched:
            logger.debug(f"{len(unmatched)} category labels did not match: {sorted(unmatched)}")
        return mapped
