from types import SimpleNamespace

from budget_sync.crud import crud_category
from budget_sync.services.category_mapper import CategoryMapper, normalize_category, to_internal_label


def make_category(id, name, group="Food & Drink", budget_id=None):
    return SimpleNamespace(id=id, name=name, budget_id=budget_id, group=SimpleNamespace(name=group))


def test_normalize_category_strips_punctuation_case_and_whitespace():
    assert normalize_category("Loan Payments: Credit Card!!") == normalize_category("loan payments  credit card")
    assert normalize_category("  Food   &  Drink ") == "food drink"
    assert normalize_category(None) == ""


def test_to_internal_label_translates_aggregator_codes():
    assert to_internal_label("FOOD_AND_DRINK_GROCERIES") == "Groceries"
    assert to_internal_label("income_wages") == "Income"
    assert to_internal_label("NOT_A_REAL_CODE") is None
    assert to_internal_label(None) is None


def test_resolve_matches_normalized_names():
    mapper = CategoryMapper([make_category(1, "Groceries"), make_category(2, "TV & Movies", "Entertainment")])

    assert mapper.resolve("groceries!").category_id == 1
    assert mapper.resolve("tv movies").category_name == "TV & Movies"
    assert mapper.resolve("Some Unknown Category") is None


def test_budget_categories_win_over_built_in_names():
    mapper = CategoryMapper([
        make_category(10, "Coffee", budget_id=3),
        make_category(1, "Coffee"),
    ])

    assert mapper.resolve("Coffee").category_id == 10


def test_map_labels_drops_empty_and_unmatched_labels():
    mapper = CategoryMapper([make_category(1, "Groceries"), make_category(2, "Rent", "Rent & Utilities")])

    mapped = mapper.map_labels(["Groceries", None, "", "Rent", "Groceries", "Mystery"])

    assert set(mapped) == {"Groceries", "Rent"}
    assert mapped["Rent"].group_name == "Rent & Utilities"


def test_built_in_taxonomy_is_seeded_once(db):
    first_count = len(crud_category.read_categories_for_budget(db))

    assert crud_category.seed_built_in_categories(db) == 0
    assert len(crud_category.read_categories_for_budget(db)) == first_count

    mapper = CategoryMapper(crud_category.read_categories_for_budget(db))
    assert mapper.resolve(to_internal_label("GENERAL_MERCHANDISE_OTHER_GENERAL_MERCHANDISE")).category_name == "Shopping"
