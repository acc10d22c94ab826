"""
Tests for the capability adapters and contract parsing.
"""
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from personalization_backend.core.exceptions import CapabilityError
from personalization_backend.schemas.personalization import Intent, Judgment, Variation
from personalization_backend.services.capabilities import build_capabilities
from personalization_backend.services.capabilities.llm import (
    LLMClient,
    LLMIntentExtractor,
    LLMQualityJudge,
    LLMVariationGenerator,
)
from personalization_backend.services.capabilities.remote import (
    InferenceServiceClient,
    RemoteIntentExtractor,
    RemoteQualityJudge,
    RemoteVariationGenerator,
)
from tests.conftest import PAGE_SCHEMA, make_variation

REMOTE_VARIATION = {
    "variationId": "vis_v1_1700000000000",
    "confidence": 0.82,
    "layoutChanges": [{"sectionId": "pricing", "currentPriority": 3, "newPriority": 1, "reason": "intent"}],
    "contentVariations": json.dumps(
        [{"selector": "section.hero > h1", "elementType": "headline", "newText": "Plans for every team"}]
    ),
    "ctaVariations": [],
    "styleEmphasis": "",
    "reasoning": "Pricing focus",
    "cacheDuration": 86400,
}


def remote_service(handler) -> InferenceServiceClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return InferenceServiceClient("http://inference.test/", client=client)


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

def test_variation_accepts_camel_case_and_json_encoded_lists():
    variation = Variation.model_validate(REMOTE_VARIATION)

    assert variation.variation_id == "vis_v1_1700000000000"
    assert variation.layout_changes[0].new_priority == 1
    assert variation.content_variations[0].new_text == "Plans for every team"
    assert variation.style_emphasis == []
    assert variation.cache_duration == 86400


def test_variation_changes_drop_metadata():
    changes = make_variation(0.7).changes().model_dump()
    assert set(changes) == {"layout_changes", "content_variations", "cta_variations", "style_emphasis"}


def test_variation_confidence_bounded():
    with pytest.raises(ValueError):
        Variation(confidence=1.5)


def test_judgment_rejects_unknown_score():
    with pytest.raises(ValueError):
        Judgment(score="great")


def test_judgment_decodes_issues():
    judgment = Judgment.model_validate(
        {"score": "needs_improvement", "issues": '[{"selector": "h1"}]', "brandAlignmentScore": 0.6}
    )
    assert judgment.issues == [{"selector": "h1"}]
    assert judgment.brand_alignment_score == 0.6


def test_intent_decodes_string_lists():
    intent = Intent.model_validate(
        {"personalizationPrompt": "Lead with pricing", "interestSignals": '["pricing"]', "recommendedActions": None}
    )
    assert intent.personalization_prompt == "Lead with pricing"
    assert intent.interest_signals == ["pricing"]
    assert intent.recommended_actions == []


# ---------------------------------------------------------------------------
# Remote adapters
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_remote_generator_posts_camel_case_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=REMOTE_VARIATION)

    generator = RemoteVariationGenerator(remote_service(handler))
    variation = await generator.generate("Lead with pricing", PAGE_SCHEMA, "v1")

    assert seen["url"] == "http://inference.test/generate-personalization"
    assert seen["body"]["personalizationPrompt"] == "Lead with pricing"
    assert seen["body"]["personalizationObj"] == PAGE_SCHEMA
    assert seen["body"]["visitorId"] == "v1"
    assert variation.confidence == 0.82


@pytest.mark.asyncio
async def test_remote_intent_extractor():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/extract-intent"
        assert json.loads(request.content)["visitorJourney"]["visitor_id"] == "v1"
        return httpx.Response(200, json={"visitorSegment": "developer", "personalizationPrompt": "Show API docs"})

    intent = await RemoteIntentExtractor(remote_service(handler)).extract({"visitor_id": "v1"})

    assert intent.visitor_segment == "developer"
    assert intent.personalization_prompt == "Show API docs"


@pytest.mark.asyncio
async def test_remote_judge_sends_variation_and_reference():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path == "/judge-personalization"
        assert body["originalWebsiteContent"] == "Acme brand"
        assert body["variation"]["variationId"] == "judged"
        return httpx.Response(
            200, json={"score": "pass", "feedback": "ok", "brandAlignmentScore": 0.9, "textQualityScore": 0.85}
        )

    judgment = await RemoteQualityJudge(remote_service(handler)).evaluate(
        make_variation(0.8, "judged"), "Acme brand", PAGE_SCHEMA
    )

    assert judgment.score == "pass"
    assert judgment.text_quality_score == 0.85


@pytest.mark.asyncio
async def test_remote_http_error_raises_capability_error():
    service = remote_service(lambda request: httpx.Response(503, text="overloaded"))

    with pytest.raises(CapabilityError) as exc_info:
        await RemoteVariationGenerator(service).generate("p", PAGE_SCHEMA, "v1")
    assert "HTTP 503" in str(exc_info.value)


@pytest.mark.asyncio
async def test_remote_transport_error_raises_capability_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    with pytest.raises(CapabilityError):
        await RemoteIntentExtractor(remote_service(handler)).extract({})


@pytest.mark.asyncio
async def test_remote_unexpected_shape_raises_capability_error():
    service = remote_service(lambda request: httpx.Response(200, json={"score": "excellent"}))

    with pytest.raises(CapabilityError):
        await RemoteQualityJudge(service).evaluate(make_variation(), None, PAGE_SCHEMA)


# ---------------------------------------------------------------------------
# Model-backed adapters
# ---------------------------------------------------------------------------

def llm_client(response_text: str) -> LLMClient:
    client = LLMClient()
    client.client = object()
    client.provider = "openai"
    client._generate_content = AsyncMock(return_value=response_text)
    return client


@pytest.mark.asyncio
async def test_llm_generator_fills_missing_id_and_ttl():
    client = llm_client('```json\n{"confidence": 0.7, "layout_changes": [], "content_variations": "[]"}\n```')

    variation = await LLMVariationGenerator(client).generate("prompt", PAGE_SCHEMA, "v9")

    assert variation.variation_id.startswith("vis_v9_")
    assert variation.cache_duration == 43200
    assert variation.content_variations == []


@pytest.mark.asyncio
async def test_llm_intent_extractor_parses_json():
    client = llm_client(json.dumps({"visitor_segment": "founder", "personalization_prompt": "Speak to ROI"}))

    intent = await LLMIntentExtractor(client).extract({"visitor_id": "v1"})

    assert intent.visitor_segment == "founder"
    prompt = client._generate_content.call_args.args[0]
    assert '"visitor_id": "v1"' in prompt


@pytest.mark.asyncio
async def test_llm_judge_truncates_reference(monkeypatch):
    from personalization_backend.config import settings

    monkeypatch.setattr(settings, "JUDGE_REFERENCE_CHARS", 5)
    client = llm_client(json.dumps({"score": "fail", "feedback": "off brand"}))

    judgment = await LLMQualityJudge(client).evaluate(make_variation(), "ABCDEFGHIJ", PAGE_SCHEMA)

    assert judgment.score == "fail"
    prompt = client._generate_content.call_args.args[0]
    assert "ABCDE" in prompt
    assert "ABCDEF" not in prompt


@pytest.mark.asyncio
async def test_llm_invalid_json_raises_capability_error():
    client = llm_client("I cannot answer that")

    with pytest.raises(CapabilityError):
        await LLMIntentExtractor(client).extract({})


@pytest.mark.asyncio
async def test_llm_without_client_raises_capability_error():
    client = LLMClient()
    client.client = None

    with pytest.raises(CapabilityError):
        await LLMVariationGenerator(client).generate("prompt", PAGE_SCHEMA, "v1")


def test_unknown_provider_is_rejected():
    with pytest.raises(ValueError):
        build_capabilities("carrier-pigeon")


def test_remote_provider_wiring():
    capabilities = build_capabilities("remote")
    assert isinstance(capabilities.generator, RemoteVariationGenerator)
    assert isinstance(capabilities.judge, RemoteQualityJudge)
