"""
Capability ports consumed by the personalization pipeline.
Abstract base classes for intent extraction, variation generation and judging.
Implementations may call a model, a remote service or a human review queue.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any

from personalization_backend.schemas.personalization import Intent, Variation, Judgment


class IntentExtractor(ABC):
    """Turns a visitor journey into an intent and a personalization prompt."""

    @abstractmethod
    async def extract(self, visitor_journey: Dict[str, Any]) -> Intent:
        """
        Extract intent from behavioural signals.
        Failures are not retried here; they abort the pipeline run.
        """
        pass


class VariationGenerator(ABC):
    """Generates DOM-level content variations for a page schema."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        page_schema: Dict[str, Any],
        visitor_id: str,
        original_content: Optional[str] = None,
    ) -> Variation:
        """
        Generate one candidate variation.
        Not deterministic: the same inputs may yield different variations.
        """
        pass


class QualityJudge(ABC):
    """Scores a candidate variation against the brand reference."""

    @abstractmethod
    async def evaluate(
        self,
        variation: Variation,
        original_content: Optional[str],
        page_schema: Dict[str, Any],
    ) -> Judgment:
        """Return pass, needs_improvement or fail with scores and feedback."""
        pass


@dataclass
class CapabilitySet:
    """The three ports the pipeline needs, wired together."""
    intent_extractor: IntentExtractor
    generator: VariationGenerator
    judge: QualityJudge
