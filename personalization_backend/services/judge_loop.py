"""
Judge loop - generate, evaluate, refine.

Each turn builds a prompt (base instruction, page schema, visitor id, reference
content excerpt, feedback from earlier needs_improvement turns), generates a
candidate and has it judged:

- pass: return the candidate immediately
- fail: retry without carrying this turn's feedback forward
- needs_improvement: keep the feedback for the next turn

When no turn passes, the highest-confidence candidate seen is returned with
judge_score="max_turns_reached". A generator error or timeout costs the turn and
the loop moves on. A judge error is treated as a pass with neutral scores when
JUDGE_FAIL_OPEN is set, otherwise as a lost turn.
"""
import asyncio
import json
import logging
from typing import Optional, List, Dict, Any

from personalization_backend.config import settings
from personalization_backend.core.exceptions import CapabilityError
from personalization_backend.schemas.personalization import (
    GenerationResult,
    JudgeFeedback,
    Judgment,
    Variation,
    JUDGE_FAIL,
    JUDGE_MAX_TURNS_REACHED,
    JUDGE_PASS,
)
from personalization_backend.services.capabilities import prompts
from personalization_backend.services.capabilities.base import VariationGenerator, QualityJudge

logger = logging.getLogger(__name__)


def build_generation_prompt(
    prompt: str,
    page_schema: Dict[str, Any],
    visitor_id: str,
    original_content: Optional[str] = None,
    history: Optional[List[JudgeFeedback]] = None,
    reference_chars: int = None,
) -> str:
    """Render the full generation request for one turn."""
    reference_chars = reference_chars or settings.REFERENCE_PROMPT_CHARS
    text = prompts.GENERATION_REQUEST.format(
        prompt=prompt,
        page_schema=json.dumps(page_schema, indent=2),
        visitor_id=visitor_id,
    )

    if original_content:
        text += prompts.REFERENCE_CONTENT_BLOCK.format(content=original_content[:reference_chars])

    if history:
        text += prompts.FEEDBACK_HEADER
        for entry in history:
            text += prompts.FEEDBACK_ENTRY.format(
                turn=entry.turn,
                brand_alignment_score=entry.brand_alignment_score,
                text_quality_score=entry.text_quality_score,
                feedback=entry.feedback,
                issues=json.dumps(entry.issues, default=str),
            )
        text += prompts.FEEDBACK_FOOTER

    text += prompts.GENERATION_FOOTER
    return text


class JudgeLoopController:
    """Drives generate -> judge -> refine with bounded turns."""

    def __init__(
        self,
        generator: VariationGenerator,
        judge: QualityJudge,
        max_turns: int = None,
        fail_open: bool = None,
        fallback_score: float = None,
        generation_timeout: float = None,
        judge_timeout: float = None,
    ):
        self.generator = generator
        self.judge = judge
        self.max_turns = max_turns or settings.JUDGE_MAX_TURNS
        self.fail_open = settings.JUDGE_FAIL_OPEN if fail_open is None else fail_open
        self.fallback_score = fallback_score if fallback_score is not None else settings.JUDGE_FALLBACK_SCORE
        self.generation_timeout = generation_timeout or settings.GENERATION_TIMEOUT_S
        self.judge_timeout = judge_timeout or settings.JUDGE_TIMEOUT_S

    @property
    def deadline(self) -> float:
        """Upper bound for a whole run."""
        return self.max_turns * (self.generation_timeout + self.judge_timeout)

    async def generate_once(
        self,
        prompt: str,
        page_schema: Dict[str, Any],
        visitor_id: str,
        original_content: Optional[str] = None,
    ) -> GenerationResult:
        """Single generation without judging; errors propagate."""
        request = build_generation_prompt(prompt, page_schema, visitor_id, original_content)
        try:
            variation = await asyncio.wait_for(
                self.generator.generate(request, page_schema, visitor_id, original_content),
                timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError:
            raise CapabilityError("Variation generation", "timeout")
        return GenerationResult(variation=variation)

    async def run(
        self,
        prompt: str,
        page_schema: Dict[str, Any],
        visitor_id: str,
        original_content: Optional[str] = None,
    ) -> GenerationResult:
        history: List[JudgeFeedback] = []
        best: Optional[Variation] = None
        best_score = 0.0
        last: Optional[Variation] = None

        for turn in range(1, self.max_turns + 1):
            logger.info(f"Judge loop turn {turn}/{self.max_turns} for visitor {visitor_id}")
            request = build_generation_prompt(prompt, page_schema, visitor_id, original_content, history)

            try:
                candidate = await asyncio.wait_for(
                    self.generator.generate(request, page_schema, visitor_id, original_content),
                    timeout=self.generation_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Generation timed out on turn {turn}")
                continue
            except Exception as e:
                logger.warning(f"Generation failed on turn {turn}: {e}")
                continue

            last = candidate
            if candidate.confidence > best_score:
                best = candidate
                best_score = candidate.confidence

            judgment = await self._evaluate(candidate, original_content, page_schema, turn)
            if judgment is None:
                continue

            if judgment.score == JUDGE_PASS:
                logger.info(f"Variation {candidate.variation_id} passed on turn {turn}")
                return GenerationResult(
                    variation=candidate,
                    judge_turns=turn,
                    judge_score=JUDGE_PASS,
                    brand_alignment_score=judgment.brand_alignment_score,
                    text_quality_score=judgment.text_quality_score,
                )

            if judgment.score == JUDGE_FAIL:
                logger.info(f"Variation failed on turn {turn}, feedback not carried forward: {judgment.feedback}")
                continue

            logger.info(f"Variation needs improvement on turn {turn}")
            history.append(
                JudgeFeedback(
                    turn=turn,
                    feedback=judgment.feedback,
                    issues=judgment.issues,
                    brand_alignment_score=judgment.brand_alignment_score,
                    text_quality_score=judgment.text_quality_score,
                )
            )

        chosen = best or last
        if chosen is None:
            raise CapabilityError(
                "Variation generation", f"no candidate produced in {self.max_turns} turns"
            )

        logger.info(
            f"Max turns reached, returning best variation {chosen.variation_id} "
            f"(confidence {chosen.confidence})"
        )
        return GenerationResult(
            variation=chosen,
            judge_turns=self.max_turns,
            judge_score=JUDGE_MAX_TURNS_REACHED,
        )

    async def _evaluate(
        self,
        candidate: Variation,
        original_content: Optional[str],
        page_schema: Dict[str, Any],
        turn: int,
    ) -> Optional[Judgment]:
        """Judge a candidate. None means the turn is lost."""
        try:
            return await asyncio.wait_for(
                self.judge.evaluate(candidate, original_content, page_schema),
                timeout=self.judge_timeout,
            )
        except Exception as e:
            if not self.fail_open:
                logger.warning(f"Judge failed on turn {turn}, discarding turn: {e}")
                return None
            logger.warning(f"Judge failed on turn {turn}, passing by default: {e}")
            return Judgment(
                score=JUDGE_PASS,
                feedback="Judge evaluation failed, passing by default",
                issues=[],
                brand_alignment_score=self.fallback_score,
                text_quality_score=self.fallback_score,
                reasoning=f"Judge error: {e}",
            )
