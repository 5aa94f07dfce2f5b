"""
Scenario cache and tag matching.

Keeps a TTL-bound snapshot of active scenarios and picks a background for a
set of products.

Matching order:
1. Tag match - any scenario tag and product keyword overlap (substring
   either way, case-insensitive)
2. Category match - first product's category mapped to a scenario category
3. Any active scenario
4. None, only when the cache holds nothing
"""

import logging
import random
import re
import threading
import time
from concurrent.futures import Future
from typing import Callable, Iterable, List, Optional, Sequence

from tryon_core.storage.models import ProductRecord, ScenarioRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0

# Product category keyword -> scenario category. Checked in order by substring.
CATEGORY_MAP = {
    "calçados": "urban",
    "calcados": "urban",
    "tênis": "urban",
    "tenis": "urban",
    "sneaker": "urban",
    "sneakers": "urban",
    "bota": "winter",
    "botas": "winter",
    "praia": "beach",
    "biquini": "beach",
    "maio": "beach",
    "sunga": "beach",
    "fitness": "fitness",
    "academia": "fitness",
    "yoga": "fitness",
    "treino": "fitness",
    "festa": "party",
    "balada": "party",
    "gala": "party",
    "noite": "party",
    "inverno": "winter",
    "frio": "winter",
    "social": "social",
    "formal": "social",
    "trabalho": "social",
    "executivo": "social",
    "natureza": "nature",
    "campo": "nature",
    "urbano": "urban",
    "streetwear": "urban",
}

_WORD_SPLIT = re.compile(r"[\s,\-.]+")


def _words(text: str, min_length: int) -> List[str]:
    return [w.strip() for w in _WORD_SPLIT.split(text.lower()) if len(w.strip()) > min_length]


def extract_product_keywords(product: ProductRecord) -> List[str]:
    """Keywords from a product's name, category and description.

    Name and category words must be longer than 2 characters, description
    words longer than 3. The whole category is kept as a keyword too.
    """
    keywords: List[str] = []
    if product.name:
        keywords.extend(_words(product.name, 2))
    if product.category:
        keywords.append(product.category.lower().strip())
        keywords.extend(_words(product.category, 2))
    if product.description:
        keywords.extend(_words(product.description, 3))

    seen = set()
    unique = []
    for keyword in keywords:
        if keyword and keyword not in seen:
            seen.add(keyword)
            unique.append(keyword)
    return unique


def map_product_category(category: Optional[str]) -> Optional[str]:
    """Scenario category for a product category, or None if nothing maps."""
    if not category:
        return None
    lowered = category.lower()
    for key, scenario_category in CATEGORY_MAP.items():
        if key in lowered:
            return scenario_category
    return None


def _tags_match(tags: Iterable[str], keywords: Sequence[str]) -> bool:
    lowered = [t.strip().lower() for t in tags if t and t.strip()]
    return any(tag in kw or kw in tag for kw in keywords for tag in lowered)


class ScenarioCache:
    """In-process snapshot of active scenarios with single-flight refresh.

    At most one load runs at a time; callers that need a refresh while one
    is in flight wait on the same future instead of loading again. Reads of
    a fresh snapshot only take the lock long enough to check its age.
    """

    def __init__(
        self,
        loader: Callable[[], Iterable[ScenarioRecord]],
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the cache.

        Args:
            loader: Zero-argument callable returning the scenarios to cache
            ttl_seconds: Snapshot lifetime
            clock: Monotonic seconds, injectable for tests
            rng: Random source for picks, injectable for tests
        """
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._snapshot: List[ScenarioRecord] = []
        self._loaded_at: Optional[float] = None
        self._inflight: Optional[Future] = None
        self.load_count = 0

    def _is_fresh(self) -> bool:
        return (
            self._loaded_at is not None
            and self._clock() - self._loaded_at < self.ttl_seconds
        )

    def get_scenarios(self, force: bool = False) -> List[ScenarioRecord]:
        """Return the active scenarios, refreshing when stale or forced.

        Raises:
            Whatever the loader raised, to every caller sharing that load.
            The previous snapshot is kept in that case.
        """
        with self._lock:
            if not force and self._is_fresh():
                return self._snapshot
            future = self._inflight
            owner = future is None
            if owner:
                future = Future()
                self._inflight = future
                self.load_count += 1

        if not owner:
            return future.result()

        try:
            scenarios = [s for s in self._loader() if s.active]
        except Exception as e:
            logger.error("Scenario load failed: %s", e)
            with self._lock:
                self._inflight = None
            future.set_exception(e)
            raise

        with self._lock:
            self._snapshot = scenarios
            self._loaded_at = self._clock()
            self._inflight = None
        future.set_result(scenarios)
        logger.info("Scenario cache refreshed with %d active scenarios", len(scenarios))
        return scenarios

    def invalidate(self) -> None:
        """Mark the snapshot stale so the next read reloads it."""
        with self._lock:
            self._loaded_at = None

    def close(self) -> None:
        """Drop the snapshot."""
        with self._lock:
            self._snapshot = []
            self._loaded_at = None

    def match(
        self,
        keywords: Iterable[str],
        first_product_category: Optional[str] = None,
    ) -> Optional[ScenarioRecord]:
        """Pick a scenario for the given keywords.

        Args:
            keywords: Product-derived keywords
            first_product_category: Category of the first product, used by
                the category fallback

        Returns:
            A scenario, or None only when no active scenario exists
        """
        scenarios = self.get_scenarios()
        if not scenarios:
            logger.warning("No active scenarios cached")
            return None

        normalized = [k.strip().lower() for k in keywords if k and k.strip()]
        if normalized:
            by_tag = [s for s in scenarios if _tags_match(s.tags, normalized)]
            if by_tag:
                chosen = self._rng.choice(by_tag)
                logger.debug("Scenario %s chosen by tags (%d candidates)", chosen.id, len(by_tag))
                return chosen

        scenario_category = map_product_category(first_product_category)
        if scenario_category:
            by_category = [s for s in scenarios if s.category == scenario_category]
            if by_category:
                chosen = self._rng.choice(by_category)
                logger.debug("Scenario %s chosen by category %s", chosen.id, scenario_category)
                return chosen

        chosen = self._rng.choice(scenarios)
        logger.debug("Scenario %s chosen at random from %d", chosen.id, len(scenarios))
        return chosen

    def match_products(self, products: Sequence[ProductRecord]) -> Optional[ScenarioRecord]:
        """Match on the keywords of all products and the first product's category."""
        keywords: List[str] = []
        for product in products:
            keywords.extend(extract_product_keywords(product))
        first_category = products[0].category if products else None
        return self.match(keywords, first_category)
