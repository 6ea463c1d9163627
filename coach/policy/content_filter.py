"""
Keyword Content Filter
======================

Default ContentFilterPolicy used while a fasting session is open.

Each food keyword found in an item raises the food confidence by 0.1,
each healthy keyword lowers it by 0.05 (clamped to [0, 1]). An item is
suppressed when the confidence clears the severity's threshold and its
category is one the severity blocks; the suppressed item is replaced by
an encouraging message for that category.
"""
import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from coach.core.ports import ALLOW, ContentItem, FilterDecision
from coach.core.types import SessionState

logger = logging.getLogger(__name__)


class FilterSeverity(str, Enum):
    LENIENT = "lenient"
    MODERATE = "moderate"
    STRICT = "strict"
    EXTREME = "extreme"


FOOD_KEYWORDS = (
    "food", "meal", "eat", "eating", "restaurant", "recipe", "cooking", "cook",
    "snack", "dessert", "pizza", "burger", "pasta", "cake", "chocolate",
    "breakfast", "lunch", "dinner", "buffet", "delicious", "tasty", "menu",
    "takeout", "delivery", "bakery", "fried", "drink", "soda", "coffee shop",
)

HEALTHY_KEYWORDS = (
    "water", "hydration", "meditation", "exercise", "walk", "sleep", "tea",
    "mindfulness", "breathing", "yoga", "stretch",
)

CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "restaurant": ("restaurant", "takeout", "delivery", "menu", "buffet", "bakery"),
    "cooking": ("recipe", "cooking", "cook", "fried"),
    "snacks": ("snack", "dessert", "cake", "chocolate"),
    "drinks": ("drink", "soda", "coffee shop"),
}

# (minimum confidence, categories blocked; None means any)
SEVERITY_RULES: Dict[FilterSeverity, Tuple[float, Optional[FrozenSet[str]]]] = {
    FilterSeverity.LENIENT: (0.8, frozenset({"food"})),
    FilterSeverity.MODERATE: (0.6, frozenset({"food", "restaurant", "snacks"})),
    FilterSeverity.STRICT: (
        0.4, frozenset({"food", "restaurant", "cooking", "snacks", "drinks"}),
    ),
    FilterSeverity.EXTREME: (0.3, None),
}

SUBSTITUTE_MESSAGES: Dict[str, str] = {
    "food": "Stay strong! Focus on your fasting goals.",
    "restaurant": "Your fast is going well. Save the restaurant for later!",
    "cooking": "Plan your next healthy meal for after your fast.",
    "snacks": "Cravings pass. You've got this!",
    "drinks": "Water is your best friend during fasting.",
}


def severity_for_progress(progress: float) -> FilterSeverity:
    """Stricter early in the fast, when cravings are strongest."""
    if progress < 0.25:
        return FilterSeverity.EXTREME
    if progress < 0.5:
        return FilterSeverity.STRICT
    return FilterSeverity.MODERATE


class KeywordContentFilter:
    """Keyword scoring ContentFilterPolicy."""

    def _text(self, item: ContentItem) -> str:
        return " ".join([item.title, item.description, item.category, *item.tags]).lower()

    def food_confidence(self, item: ContentItem) -> float:
        text = self._text(item)
        score = 0.0
        score += 0.1 * sum(1 for kw in FOOD_KEYWORDS if kw in text)
        score -= 0.05 * sum(1 for kw in HEALTHY_KEYWORDS if kw in text)
        return min(1.0, max(0.0, score))

    def categorize(self, item: ContentItem) -> str:
        text = self._text(item)
        for category, keywords in CATEGORY_KEYWORDS.items():
            if any(kw in text for kw in keywords):
                return category
        return "food"

    def evaluate(
        self,
        item: ContentItem,
        session_state: SessionState,
        severity: FilterSeverity,
    ) -> FilterDecision:
        if not session_state.is_open:
            return ALLOW

        confidence = self.food_confidence(item)
        threshold, blocked = SEVERITY_RULES[FilterSeverity(severity)]
        category = self.categorize(item)

        if confidence <= threshold:
            return FilterDecision(allowed=True, confidence=confidence)
        if blocked is not None and category not in blocked:
            return FilterDecision(allowed=True, confidence=confidence)

        logger.debug(
            f"Content '{item.item_id}' suppressed: category={category}, "
            f"confidence={confidence:.2f}, severity={severity}"
        )
        return FilterDecision(
            allowed=False,
            substitute=SUBSTITUTE_MESSAGES.get(category, SUBSTITUTE_MESSAGES["food"]),
            matched_category=category,
            confidence=confidence,
        )
