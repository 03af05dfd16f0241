# src/core/flow_handlers.py
"""
Flow handlers - the two model pipelines.

Each pipeline is compose -> call -> decode. Decoding never fails, so what
reaches the caller is either a structured record or a transport-level error.
"""

from typing import Optional, Sequence
import logging

from src.core.exceptions import EmptyResponseError
from src.core.prompt_composer import PromptComposer
from src.core.response_decoder import decode_analysis, decode_interview
from src.models.flow_models import AnalysisResult, InterviewReply, Turn
from src.services.llm_service import LLMService

logger = logging.getLogger(__name__)


class FlowHandlers:
    """Runs the interview and analysis pipelines against the provider"""

    def __init__(
        self,
        llm_service: Optional[LLMService] = None,
        composer: Optional[PromptComposer] = None
    ):
        self.llm_service = llm_service or LLMService()
        self.composer = composer or PromptComposer()

    async def request_interview_reply(self, history: Sequence[Turn], message: str) -> InterviewReply:
        """
        Next interview question for the conversation so far.

        Args:
            history: Prior turns, not including the new message
            message: The new user text

        Raises:
            ValidationError: If the message is empty
            ConfigurationError: If the provider is not configured
            TransportError: If the provider call fails (EmptyResponseError included)
        """
        request = self.composer.build_interview_request(history, message)
        raw_text = await self.llm_service.call_provider(request)
        reply = decode_interview(raw_text)
        logger.info(f"Interview reply with {len(reply.options)} options (allowMultiple={reply.allow_multiple})")
        return reply

    async def request_analysis(self, history: Sequence[Turn]) -> AnalysisResult:
        """
        Differential diagnosis for the transcript.

        An envelope without text yields the 'insufficient data' placeholder.

        Raises:
            ConfigurationError: If the provider is not configured
            TransportError: If the provider call fails with a status or network error
        """
        request = self.composer.build_analysis_request(history)
        try:
            raw_text = await self.llm_service.call_provider(request)
        except EmptyResponseError as e:
            logger.warning(f"Analysis returned no text ({e.finish_reason}), using placeholder")
            return AnalysisResult.placeholder()

        result = decode_analysis(raw_text)
        logger.info(f"Analysis produced {len(result.diagnoses)} diagnoses, {len(result.symptom_links)} links")
        return result
