"""
Category prediction fallback chain.

Strategies are tried in order and the first one that returns a prediction wins:

1. learned   - the vendor learning engine, if confident enough
2. rules     - the static vendor → category rule table
3. amount    - a coarse guess from the invoice total
4. default   - Miscellaneous Expenses
"""

from typing import Callable

from loguru import logger

from ..core.config import settings
from .invoice_types import CategoryAlternative, CategoryPrediction
from .learning import VendorLearningEngine
from .rule_tables import RuleTables, get_rule_tables

DEFAULT_CATEGORY = "5140"
ALTERNATIVE_CONFIDENCE = 25

Strategy = Callable[[str, float | None], CategoryPrediction | None]


def alternative_categories(exclude: str, count: int, tables: RuleTables | None = None) -> list[CategoryAlternative]:
    """The first expense accounts other than ``exclude``, offered as low-confidence picks."""
    tables = tables or get_rule_tables()
    expense = [c for c in tables.categories if c.code.startswith("5") and c.code != exclude]
    return [
        CategoryAlternative(category=c.code, name=c.name, confidence=ALTERNATIVE_CONFIDENCE)
        for c in expense[:count]
    ]


def predict_from_rules(vendor: str, amount: float | None = None, tables: RuleTables | None = None) -> CategoryPrediction | None:
    tables = tables or get_rule_tables()
    for rule in tables.category_rules:
        if rule.pattern.search(vendor or ""):
            return CategoryPrediction(
                category=rule.category,
                confidence=rule.confidence,
                reason="Matched vendor rule",
                name=tables.category_name(rule.category),
                source="rules",
                alternatives=alternative_categories(rule.category, 2, tables),
            )
    return None


def predict_from_amount(amount: float | None, tables: RuleTables | None = None) -> CategoryPrediction | None:
    """Small totals are usually meals or supplies; anything else is miscellaneous."""
    if not amount or amount <= 0:
        return None

    tables = tables or get_rule_tables()
    if amount < 20:
        category, confidence, alternative_count = "5050", 25, 3
    elif amount < 100:
        category, confidence, alternative_count = "5010", 25, 3
    else:
        category, confidence, alternative_count = DEFAULT_CATEGORY, 30, 0

    return CategoryPrediction(
        category=category,
        confidence=confidence,
        reason=f"Guessed from amount ${amount:.2f}",
        name=tables.category_name(category),
        source="amount",
        alternatives=alternative_categories(category, alternative_count, tables),
    )


def default_prediction(tables: RuleTables | None = None) -> CategoryPrediction:
    tables = tables or get_rule_tables()
    return CategoryPrediction(
        category=DEFAULT_CATEGORY,
        confidence=20,
        reason="No matching rule or history",
        name=tables.category_name(DEFAULT_CATEGORY),
        source="default",
        alternatives=alternative_categories(DEFAULT_CATEGORY, 3, tables),
    )


class CategoryPredictor:
    """Runs the fallback chain; learned predictions are optional."""

    def __init__(
        self,
        engine: VendorLearningEngine | None = None,
        tables: RuleTables | None = None,
        learned_min_confidence: float | None = None,
    ):
        self.engine = engine
        self.tables = tables or get_rule_tables()
        self.learned_min_confidence = (
            settings.learned_min_confidence if learned_min_confidence is None else learned_min_confidence
        )

    def _learned(self, vendor: str, amount: float | None) -> CategoryPrediction | None:
        if self.engine is None:
            return None
        prediction = self.engine.predict_category(vendor, amount)
        if prediction is None or prediction.confidence < self.learned_min_confidence:
            return None
        return prediction.model_copy(update={
            "name": self.tables.category_name(prediction.category),
            "alternatives": [
                a.model_copy(update={"name": self.tables.category_name(a.category)})
                for a in prediction.alternatives
            ],
        })

    def _rules(self, vendor: str, amount: float | None) -> CategoryPrediction | None:
        return predict_from_rules(vendor, amount, self.tables)

    def _amount(self, vendor: str, amount: float | None) -> CategoryPrediction | None:
        return predict_from_amount(amount, self.tables)

    @property
    def strategies(self) -> list[Strategy]:
        return [self._learned, self._rules, self._amount]

    def predict(self, vendor: str, amount: float | None = None) -> CategoryPrediction:
        for strategy in self.strategies:
            prediction = strategy(vendor, amount)
            if prediction is not None:
                logger.debug(
                    "Category predicted",
                    vendor=vendor,
                    category=prediction.category,
                    confidence=prediction.confidence,
                    source=prediction.source,
                )
                return prediction
        return default_prediction(self.tables)
