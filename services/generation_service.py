"""
Problem recognition and explanation generation.

Wraps the LLM client with the prompt templates, per-mode model selection,
image preprocessing and the typed retry policy.
"""
import json
import logging
from typing import Optional

import numpy as np

from config.settings import settings as default_settings
from core.cancellation import CancellationToken
from core.constants import EXPLANATION_FORMAT_RULE
from core.exceptions import GenerationError, RecognitionError
from core.models import (
    Bbox, DetectedProblem, ErrorKind, ExplanationMode, GenerationResult, ProblemType,
    VariationLevel, VariationProblem
)
from services.llm.llm_client_base import BaseLLMClient
from services.prompt_service import PromptService
from services.retry import call_with_retry
from utils.image_utils import crop_bbox, pil_to_base64, preprocess_for_ai
from utils.text_utils import extract_json, parse_explanation_payload

logger = logging.getLogger(__name__)

VARIATION_PROMPTS = {
    VariationLevel.NUMERIC: 'variationNumeric',
    VariationLevel.FORM: 'variationForm',
    VariationLevel.CREATIVE: 'variationCreative',
}


class ExplanationService:
    """
    External recognition and generation calls used by the batch orchestrator.

    Example:
        service = ExplanationService(client, PromptService(db.session))
        problem = await service.recognize_region(page.image, bbox)
        result = await service.generate_explanation(problem.full_text, ExplanationMode.FAST)
    """

    def __init__(self, llm_client: BaseLLMClient, prompts: PromptService, settings=None):
        self.llm_client = llm_client
        self.prompts = prompts
        self.settings = settings or default_settings

    async def _call(self, token: Optional[CancellationToken] = None, **call_kwargs) -> str:
        async def attempt():
            return await self.llm_client.chat_completion(**call_kwargs)

        return await call_with_retry(
            attempt,
            max_retries=self.settings.retry_max_attempts,
            initial_delay=self.settings.retry_initial_delay,
            token=token
        )

    async def recognize_region(
        self,
        image: np.ndarray,
        bbox: Bbox,
        token: Optional[CancellationToken] = None
    ) -> DetectedProblem:
        """
        Transcribe the problem inside one region of a page.

        Args:
            image: Page image array
            bbox: Normalized region on the page
            token: Optional cancellation token

        Returns:
            Recognized problem

        Raises:
            RecognitionError: If the crop is empty or no problem text came back
            GenerationError: If the AI call fails
        """
        try:
            crop = crop_bbox(image, bbox)
        except ValueError as e:
            raise RecognitionError(str(e)) from e

        processed = preprocess_for_ai(crop, max_width=self.settings.ai_image_max_width)
        content = await self._call(
            token=token,
            prompt=self.prompts.get_prompt('recognizeProblem'),
            images=[pil_to_base64(processed)],
            model=self.settings.model_vision,
            temperature=0.0
        )

        try:
            data = extract_json(content)
        except json.JSONDecodeError:
            data = {'problemType': ProblemType.FREE_RESPONSE.value, 'problemBody': content}

        if isinstance(data, list):
            data = data[0] if data and isinstance(data[0], dict) else {}
        if not isinstance(data, dict):
            data = {}

        body = str(data.get('problemBody') or '').strip()
        if not body:
            raise RecognitionError("No problem text was recognized in the selected region.")

        try:
            problem_type = ProblemType(data.get('problemType'))
        except ValueError:
            problem_type = ProblemType.FREE_RESPONSE

        choices = str(data.get('choices') or '').strip() or None
        return DetectedProblem(
            bbox=bbox,
            problem_type=problem_type,
            problem_body=body,
            choices=choices
        )

    def build_system_instruction(self, guidelines: str = "") -> str:
        """System instruction with optional user guidelines and the formatting rule."""
        parts = [self.prompts.get_prompt('systemInstruction')]
        if guidelines and guidelines.strip():
            parts.append(f"[Guidelines]\n{guidelines.strip()}")
        parts.append(EXPLANATION_FORMAT_RULE)
        return "\n\n".join(parts)

    async def generate_explanation(
        self,
        problem_text: str,
        mode: ExplanationMode,
        guidelines: str = "",
        token: Optional[CancellationToken] = None
    ) -> GenerationResult:
        """
        Generate a step-by-step explanation.

        Args:
            problem_text: Recognized problem text
            mode: Explanation mode, selects the model
            guidelines: Optional user-provided writing guidelines
            token: Optional cancellation token

        Returns:
            GenerationResult with markdown, core concepts and difficulty

        Raises:
            GenerationError: If the AI call fails or returns nothing
        """
        mode = ExplanationMode(mode)
        model = self.settings.get_model_for_mode(mode.value)
        extra = {}
        if mode == ExplanationMode.QUALITY:
            extra['max_tokens'] = self.settings.quality_max_tokens

        content = await self._call(
            token=token,
            prompt=self.prompts.render('generateExplanation', problemText=problem_text),
            system=self.build_system_instruction(guidelines),
            model=model,
            temperature=self.settings.llm_temperature,
            **extra
        )
        payload = parse_explanation_payload(content)
        markdown = payload['markdown']
        if not markdown:
            raise GenerationError(ErrorKind.OTHER, "AI returned an empty explanation.")

        if self.settings.verify_explanations and not (token and token.cancelled):
            markdown = await self.verify_explanation(markdown, model, token=token)

        return GenerationResult(
            markdown=markdown,
            core_concepts=payload['core_concepts'],
            difficulty=payload['difficulty']
        )

    async def verify_explanation(
        self,
        markdown: str,
        model: str,
        token: Optional[CancellationToken] = None
    ) -> str:
        """Second pass that checks and corrects an explanation."""
        corrected = await self._call(
            token=token,
            prompt=self.prompts.render('verifyExplanation', explanation=markdown),
            model=model,
            temperature=0.0
        )
        corrected = corrected.strip()
        if not corrected:
            logger.warning("Verification pass returned nothing; keeping the original explanation")
            return markdown
        return corrected

    async def ask_about_line(
        self,
        problem_text: str,
        full_explanation: str,
        selected_line: str,
        user_question: str
    ) -> str:
        """
        Answer a question about one line of an explanation.

        Raises:
            GenerationError: If the AI call fails or returns nothing
        """
        answer = await self._call(
            prompt=self.prompts.render(
                'askAboutLineUser',
                problemText=problem_text,
                fullExplanation=full_explanation,
                selectedLine=selected_line,
                userQuestion=user_question
            ),
            system=self.prompts.get_prompt('askAboutLineSystem'),
            model=self.settings.model_qna,
            temperature=0.2
        )
        answer = answer.strip()
        if not answer:
            raise GenerationError(ErrorKind.OTHER, "AI returned an empty answer.")
        return answer

    async def generate_variation(
        self,
        base_problem_text: str,
        level: VariationLevel,
        guidelines: str = "",
        core_idea: Optional[str] = None,
        token: Optional[CancellationToken] = None
    ) -> VariationProblem:
        """
        Create a variation of a problem together with its explanation.

        Args:
            base_problem_text: Text of the problem to vary
            level: How far the new problem departs from the base problem
            guidelines: Optional user-provided writing guidelines
            core_idea: Concept the new problem must be built around
            token: Optional cancellation token

        Returns:
            VariationProblem with the new problem and its explanation

        Raises:
            GenerationError: If the AI call fails or the answer is incomplete
        """
        level = VariationLevel(level)
        core_idea = (core_idea or '').strip()
        description = self.prompts.render(VARIATION_PROMPTS[level], selectedCoreIdea=core_idea)
        instruction = (
            f"\n- Core idea: the new problem must be built around \"{core_idea}\"."
            if core_idea else ""
        )

        content = await self._call(
            token=token,
            prompt=self.prompts.render(
                'generateVariation',
                baseProblemText=base_problem_text,
                variationLevel=level.value,
                levelDescription=description,
                coreIdeaInstruction=instruction
            ),
            system=self.build_system_instruction(guidelines),
            model=self.settings.model_quality,
            temperature=0.0
        )

        try:
            data = extract_json(content)
        except json.JSONDecodeError as e:
            raise GenerationError(ErrorKind.OTHER, "AI returned an unreadable variation.") from e

        if not isinstance(data, dict):
            data = {}
        problem = str(data.get('problem') or '').strip()
        explanation = str(data.get('explanation') or '').strip()
        if not problem or not explanation:
            raise GenerationError(ErrorKind.OTHER, "AI returned an incomplete variation.")

        logger.info(f"Generated {level.value} variation")
        return VariationProblem(problem=problem, explanation=explanation, level=level)
