# src/core/prompt_composer.py
"""
Builds the provider requests for the two model tasks: the next interview
question and the differential-diagnosis analysis.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from src.core.config import settings as default_settings, Settings
from src.core.exceptions import ValidationError
from src.core.prompt_manager import PromptManager, PromptType, get_prompt_manager
from src.models.flow_models import Role, Turn

logger = logging.getLogger(__name__)

# Our role vocabulary -> the provider's chat roles
_PROVIDER_ROLES = {
    Role.USER: "user",
    Role.ASSISTANT: "assistant",
}


class RequestKind(str, Enum):
    INTERVIEW = "interview"
    ANALYSIS = "analysis"


@dataclass
class ProviderRequest:
    """Role-tagged message list plus generation parameters"""
    kind: RequestKind
    messages: List[Dict[str, str]] = field(default_factory=list)
    temperature: float = 0.5
    max_tokens: Optional[int] = None
    json_mode: bool = True


class PromptComposer:
    """Turns a transcript into a ProviderRequest"""

    def __init__(
        self,
        prompt_manager: Optional[PromptManager] = None,
        settings: Optional[Settings] = None
    ):
        self.prompt_manager = prompt_manager or get_prompt_manager()
        self.settings = settings or default_settings

    def build_interview_request(self, transcript: Sequence[Turn], new_user_text: str) -> ProviderRequest:
        """
        System instruction, then the prior turns, then the new user text.

        Raises:
            ValidationError: If the new user text is empty
        """
        if not new_user_text or not new_user_text.strip():
            raise ValidationError(message="User message cannot be empty", field="message")

        system_instruction = self.prompt_manager.get(
            PromptType.INTERVIEW_SYSTEM,
            target_language=self.settings.TARGET_LANGUAGE
        )

        messages = [{"role": "system", "content": system_instruction}]
        for turn in transcript:
            messages.append({"role": _PROVIDER_ROLES[turn.role], "content": turn.text})
        messages.append({"role": "user", "content": new_user_text.strip()})

        logger.debug(f"Built interview request with {len(messages)} messages")
        return ProviderRequest(
            kind=RequestKind.INTERVIEW,
            messages=messages,
            temperature=self.settings.INTERVIEW_TEMPERATURE,
            max_tokens=self.settings.INTERVIEW_MAX_TOKENS
        )

    def build_analysis_request(self, transcript: Sequence[Turn]) -> ProviderRequest:
        """Single user prompt embedding the whole transcript"""
        prompt = self.prompt_manager.get(
            PromptType.ANALYSIS_REQUEST,
            target_language=self.settings.TARGET_LANGUAGE,
            transcript=render_transcript(transcript)
        )

        logger.debug(f"Built analysis request for {len(transcript)} turns")
        return ProviderRequest(
            kind=RequestKind.ANALYSIS,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.settings.ANALYSIS_TEMPERATURE,
            max_tokens=self.settings.ANALYSIS_MAX_TOKENS
        )


def render_transcript(transcript: Sequence[Turn]) -> str:
    """One "{role}: {text}" line per turn"""
    return "\n".join(f"{turn.role.value}: {turn.text}" for turn in transcript)
