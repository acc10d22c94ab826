"""
Capability implementations backed by a remote inference service over HTTP.
"""
import logging
from typing import Optional, Dict, Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from personalization_backend.config import settings
from personalization_backend.core.exceptions import CapabilityError
from personalization_backend.schemas.personalization import Intent, Variation, Judgment
from personalization_backend.services.capabilities.base import (
    IntentExtractor,
    VariationGenerator,
    QualityJudge,
)

logger = logging.getLogger(__name__)


class InferenceServiceClient:
    """Thin JSON-over-HTTP client for the inference service."""

    def __init__(self, base_url: str = None, client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or settings.INFERENCE_SERVICE_URL).rstrip("/")
        self.client = client

    async def post(self, path: str, payload: Dict[str, Any], timeout: float, capability: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if self.client:
                response = await self.client.post(url, json=payload, timeout=timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=payload, timeout=timeout)
        except httpx.TimeoutException:
            logger.error(f"{capability} timed out: POST {url}")
            raise CapabilityError(capability, "timeout")
        except httpx.HTTPError as e:
            logger.error(f"{capability} request failed: POST {url}: {e}")
            raise CapabilityError(capability, str(e))

        if response.status_code != 200:
            logger.error(f"{capability} error: {response.status_code} - {response.text[:200]}")
            raise CapabilityError(capability, f"HTTP {response.status_code}")

        data = response.json()
        if not data:
            raise CapabilityError(capability, "empty response")
        return data


class RemoteIntentExtractor(IntentExtractor):
    def __init__(self, service: InferenceServiceClient):
        self.service = service

    async def extract(self, visitor_journey: Dict[str, Any]) -> Intent:
        data = await self.service.post(
            "/extract-intent",
            {"visitorJourney": visitor_journey},
            settings.INTENT_TIMEOUT_S,
            "Intent extraction",
        )
        try:
            return Intent.model_validate(data)
        except PydanticValidationError as e:
            raise CapabilityError("Intent extraction", f"unexpected response shape: {e}")


class RemoteVariationGenerator(VariationGenerator):
    def __init__(self, service: InferenceServiceClient):
        self.service = service

    async def generate(
        self,
        prompt: str,
        page_schema: Dict[str, Any],
        visitor_id: str,
        original_content: Optional[str] = None,
    ) -> Variation:
        # The service runs a single generation; judging is orchestrated on this side.
        data = await self.service.post(
            "/generate-personalization",
            {
                "personalizationPrompt": prompt,
                "personalizationObj": page_schema,
                "visitorId": visitor_id,
            },
            settings.GENERATION_TIMEOUT_S,
            "Variation generation",
        )
        try:
            return Variation.model_validate(data)
        except PydanticValidationError as e:
            raise CapabilityError("Variation generation", f"unexpected response shape: {e}")


class RemoteQualityJudge(QualityJudge):
    def __init__(self, service: InferenceServiceClient):
        self.service = service

    async def evaluate(
        self,
        variation: Variation,
        original_content: Optional[str],
        page_schema: Dict[str, Any],
    ) -> Judgment:
        data = await self.service.post(
            "/judge-personalization",
            {
                "variation": variation.model_dump(mode="json", by_alias=True),
                "originalWebsiteContent": original_content,
                "personalizationObj": page_schema,
            },
            settings.JUDGE_TIMEOUT_S,
            "Quality judge",
        )
        try:
            return Judgment.model_validate(data)
        except PydanticValidationError as e:
            raise CapabilityError("Quality judge", f"unexpected response shape: {e}")
