"""
Model-backed capability implementations (Gemini or OpenAI).
"""
from openai import AsyncOpenAI
import google.generativeai as genai
from personalization_backend.config import settings
from personalization_backend.core.exceptions import CapabilityError
from personalization_backend.schemas.personalization import Intent, Variation, Judgment
from personalization_backend.services.capabilities import prompts
from personalization_backend.services.capabilities.base import (
    IntentExtractor,
    VariationGenerator,
    QualityJudge,
)
from pydantic import ValidationError as PydanticValidationError
from typing import Optional, Dict, Any
import asyncio
import logging
import json
import time

logger = logging.getLogger(__name__)


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


class LLMClient:
    def __init__(self):
        self.provider = None
        self.client = None
        self.model = settings.AI_MODEL

        # Gemini preferred when configured
        if settings.GEMINI_API_KEY:
            try:
                genai.configure(api_key=settings.GEMINI_API_KEY)
                self.client = genai.GenerativeModel(settings.AI_MODEL)
                self.provider = "gemini"
                logger.info("LLM client initialized with Gemini")
            except Exception as e:
                logger.error(f"Failed to initialize Gemini: {e}")

        if not self.client and settings.OPENAI_API_KEY:
            try:
                self.client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
                self.provider = "openai"
                logger.info("LLM client initialized with OpenAI")
            except Exception as e:
                logger.error(f"Failed to initialize OpenAI: {e}")

    async def complete_json(self, prompt: str, capability: str) -> Dict[str, Any]:
        """Run a prompt that must answer with a single JSON object."""
        if not self.client:
            raise CapabilityError(capability, "AI client not initialized")

        text = await self._generate_content(prompt, capability)
        try:
            return json.loads(_strip_code_fence(text))
        except json.JSONDecodeError as e:
            raise CapabilityError(capability, f"model returned invalid JSON: {e}")

    async def _generate_content(self, prompt: str, capability: str) -> str:
        if self.provider == "gemini":
            max_retries = settings.AI_RATE_LIMIT_RETRIES
            for attempt in range(max_retries):
                try:
                    response = await self.client.generate_content_async(prompt)
                    return response.text
                except Exception as e:
                    is_rate_limit = "429" in str(e) or "quota" in str(e).lower()
                    if is_rate_limit and attempt < max_retries - 1:
                        logger.warning(
                            f"Gemini rate limit hit during {capability}. Waiting {settings.AI_RATE_LIMIT_DELAY_S}s... "
                            f"(Attempt {attempt+1}/{max_retries})"
                        )
                        await asyncio.sleep(settings.AI_RATE_LIMIT_DELAY_S)
                    else:
                        logger.error(f"Gemini generation failed during {capability}: {e}")
                        raise CapabilityError(capability, str(e))

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
                temperature=0.2
            )
        except Exception as e:
            logger.error(f"OpenAI generation failed during {capability}: {e}")
            raise CapabilityError(capability, str(e))
        return response.choices[0].message.content


class LLMIntentExtractor(IntentExtractor):
    def __init__(self, client: LLMClient):
        self.client = client

    async def extract(self, visitor_journey: Dict[str, Any]) -> Intent:
        prompt = prompts.INTENT_PROMPT.format(
            instructions=prompts.INTENT_EXTRACTOR_INSTRUCTIONS,
            journey=json.dumps(visitor_journey, indent=2, default=str),
        )
        data = await self.client.complete_json(prompt, "Intent extraction")
        try:
            intent = Intent.model_validate(data)
        except PydanticValidationError as e:
            raise CapabilityError("Intent extraction", f"unexpected output shape: {e}")
        logger.info(f"Intent extracted: segment={intent.visitor_segment}, urgency={intent.urgency_level}")
        return intent


class LLMVariationGenerator(VariationGenerator):
    """Sends the already-built generation prompt to the model."""

    def __init__(self, client: LLMClient):
        self.client = client

    async def generate(
        self,
        prompt: str,
        page_schema: Dict[str, Any],
        visitor_id: str,
        original_content: Optional[str] = None,
    ) -> Variation:
        data = await self.client.complete_json(
            prompts.GENERATOR_INSTRUCTIONS + "\n" + prompt, "Variation generation"
        )
        try:
            variation = Variation.model_validate(data)
        except PydanticValidationError as e:
            raise CapabilityError("Variation generation", f"unexpected output shape: {e}")

        if not variation.variation_id:
            variation.variation_id = f"vis_{visitor_id}_{int(time.time() * 1000)}"
        if not variation.cache_duration:
            variation.cache_duration = settings.DEFAULT_CACHE_DURATION_S
        return variation


class LLMQualityJudge(QualityJudge):
    def __init__(self, client: LLMClient):
        self.client = client

    async def evaluate(
        self,
        variation: Variation,
        original_content: Optional[str],
        page_schema: Dict[str, Any],
    ) -> Judgment:
        content = (
            original_content[:settings.JUDGE_REFERENCE_CHARS]
            if original_content
            else prompts.NO_REFERENCE_CONTENT
        )
        prompt = prompts.JUDGE_PROMPT.format(
            instructions=prompts.JUDGE_INSTRUCTIONS,
            variation=variation.model_dump_json(indent=2),
            content=content,
            page_schema=json.dumps(page_schema, indent=2),
        )
        data = await self.client.complete_json(prompt, "Quality judge")
        try:
            return Judgment.model_validate(data)
        except PydanticValidationError as e:
            raise CapabilityError("Quality judge", f"unexpected output shape: {e}")
