"""
Budget analysis run: sync, persist, recommend, behind a one-flag guard.

The budget's onboarding step is the guard. A run claims it with a
compare-and-swap from ``analyze_spending`` to
``analyze_spending_in_progress``; a second caller finds the flag taken and
is turned away. Any failure after the claim puts the step back so the run
can be retried.
"""
from datetime import date
from decimal import Decimal
from typing import Callable, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from budget_sync.crud import crud_budget, crud_category, crud_connection, crud_transaction
from budget_sync.db.core import OnboardingStep
from budget_sync.models.analysis import AnalysisCategory, AnalysisGoal, AnalysisTransaction, Recommendation
from budget_sync.models.category import CompositeComponent
from budget_sync.models.sync import MultiSyncResult
from budget_sync.services.aggregator import AggregatorClient
from budget_sync.services.category_mapper import CategoryMapper
from budget_sync.services.recommendation import PostureFactors, RecommendationEngine
from budget_sync.services.sync_engine import SYNC_MAX_WORKERS, sync_connections
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)


class AnalysisInProgressError(Exception):
    """Another analysis run already holds the guard for this budget."""

    def __init__(self, budget_id: int):
        super().__init__("Already analyzing spending")
        self.budget_id = budget_id


class InvalidOnboardingStepError(Exception):
    """The budget is not at the step where analysis can start."""

    def __init__(self, budget_id: int, step: Optional[str]):
        super().__init__(f"Budget {budget_id} is not ready for spending analysis")
        self.budget_id = budget_id
        self.step = step


class AnalysisError(Exception):
    """A claimed run failed; the guard has been released."""

    def __init__(self, budget_id: int):
        super().__init__("Failed to analyze spending")
        self.budget_id = budget_id


class AnalysisOutcome(BaseModel):
    budget_id: int
    sync: MultiSyncResult
    recommendation: Recommendation


class BudgetAnalysisOrchestrator:

    def __init__(
        self,
        db: Session,
        aggregator: AggregatorClient,
        session_factory: Callable[[], Session],
        today: Optional[date] = None,
        factors: Optional[PostureFactors] = None,
        max_workers: int = SYNC_MAX_WORKERS,
        sync_batch_delay: Optional[float] = None,
    ):
        self.db = db
        self.aggregator = aggregator
        self.session_factory = session_factory
        self.today = today
        self.factors = factors
        self.max_workers = max_workers
        self.sync_batch_delay = sync_batch_delay

    def run(self, budget_id: int) -> AnalysisOutcome:
        self._claim(budget_id)

        try:
            sync_result = self._sync(budget_id)
            recommendation = self._recommend(budget_id)
            crud_budget.save_recommendation(self.db, recommendation)

            if not crud_budget.transition_onboarding_step(
                self.db, budget_id,
                OnboardingStep.ANALYZE_SPENDING_IN_PROGRESS, OnboardingStep.BUDGET_SETUP
            ):
                raise RuntimeError(f"Budget {budget_id} lost the analysis guard before completing")
        except Exception as e:
            logger.exception(f"Analysis failed for budget {budget_id}: {e}")
            self._release(budget_id)
            raise AnalysisError(budget_id) from e

        logger.info(f"Analysis complete for budget {budget_id}")
        return AnalysisOutcome(budget_id=budget_id, sync=sync_result, recommendation=recommendation)

    # ===== GUARD =====

    def _claim(self, budget_id: int) -> None:
        claimed = crud_budget.transition_onboarding_step(
            self.db, budget_id,
            OnboardingStep.ANALYZE_SPENDING, OnboardingStep.ANALYZE_SPENDING_IN_PROGRESS
        )
        if claimed:
            return

        budget = crud_budget.read_budget(self.db, budget_id)
        step = budget.onboarding_step if budget else None
        if step == OnboardingStep.ANALYZE_SPENDING_IN_PROGRESS:
            logger.warning(f"Analysis already running for budget {budget_id}")
            raise AnalysisInProgressError(budget_id)
        raise InvalidOnboardingStepError(budget_id, step.value if step else None)

    def _release(self, budget_id: int) -> None:
        try:
            self.db.rollback()
            released = crud_budget.transition_onboarding_step(
                self.db, budget_id,
                OnboardingStep.ANALYZE_SPENDING_IN_PROGRESS, OnboardingStep.ANALYZE_SPENDING
            )
        except Exception as e:
            logger.exception(f"Failed to roll back onboarding step for budget {budget_id}: {e}")
            return
        if released:
            logger.info(f"Rolled budget {budget_id} back to analyze_spending")

    # ===== STEPS =====

    def _sync(self, budget_id: int) -> MultiSyncResult:
        connections = crud_connection.read_connections_for_budget(self.db, budget_id)
        mapper = CategoryMapper(crud_category.read_categories_for_budget(self.db, budget_id))

        options = {}
        if self.sync_batch_delay is not None:
            options["batch_delay"] = self.sync_batch_delay

        result = sync_connections(
            [c.id for c in connections],
            self.session_factory,
            self.aggregator,
            max_workers=self.max_workers,
            mapper=mapper,
            **options,
        )
        if result.failed:
            raise RuntimeError(f"Sync failed for connections {result.failed}")

        # Rows written through other sessions
        self.db.expire_all()
        return result

    def _recommend(self, budget_id: int) -> Recommendation:
        categories = [
            AnalysisCategory(
                name=c.name,
                group_name=c.group.name,
                is_discretionary=bool(c.is_discretionary),
                is_composite=bool(c.is_composite),
                composite_data=[CompositeComponent(**component) for component in c.composite_data]
                if c.composite_data else None,
            )
            for c in crud_category.read_categories_for_budget(self.db, budget_id)
        ]
        transactions = [
            AnalysisTransaction(
                user_tx_id=t.user_tx_id,
                transaction_date=t.transaction_date,
                amount=t.amount,
                category_name=t.category.name,
            )
            for t in crud_transaction.read_budget_transactions(self.db, budget_id)
        ]
        goals = [
            AnalysisGoal(
                goal_id=g.id,
                name=g.name,
                amount=g.amount,
                target_date=g.target_date,
                starting_balance=g.balance if g.balance is not None else Decimal("0"),
                spending_tracking=g.spending_tracking or {},
            )
            for g in crud_budget.read_budget_goals(self.db, budget_id)
        ]

        engine = RecommendationEngine(categories, today=self.today, factors=self.factors)
        recommendation = engine.recommend(transactions, None, goals, budget_id)

        empty = [name for name, posture in recommendation.postures().items() if not posture.spending]
        if empty:
            raise ValueError(f"No spending to recommend from for budget {budget_id} ({', '.join(empty)})")
        return recommendation
