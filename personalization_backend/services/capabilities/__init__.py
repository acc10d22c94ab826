from personalization_backend.config import settings
from personalization_backend.services.capabilities.base import (
    CapabilitySet,
    IntentExtractor,
    QualityJudge,
    VariationGenerator,
)


def build_capabilities(provider: str = None) -> CapabilitySet:
    """Wire the configured capability provider."""
    provider = provider or settings.CAPABILITY_PROVIDER
    if provider == "remote":
        from personalization_backend.services.capabilities.remote import (
            InferenceServiceClient,
            RemoteIntentExtractor,
            RemoteVariationGenerator,
            RemoteQualityJudge,
        )
        service = InferenceServiceClient()
        return CapabilitySet(
            intent_extractor=RemoteIntentExtractor(service),
            generator=RemoteVariationGenerator(service),
            judge=RemoteQualityJudge(service),
        )
    if provider == "llm":
        from personalization_backend.services.capabilities.llm import (
            LLMClient,
            LLMIntentExtractor,
            LLMVariationGenerator,
            LLMQualityJudge,
        )
        client = LLMClient()
        return CapabilitySet(
            intent_extractor=LLMIntentExtractor(client),
            generator=LLMVariationGenerator(client),
            judge=LLMQualityJudge(client),
        )
    raise ValueError(f"Unknown capability provider '{provider}'")


__all__ = [
    "CapabilitySet",
    "IntentExtractor",
    "QualityJudge",
    "VariationGenerator",
    "build_capabilities",
]
