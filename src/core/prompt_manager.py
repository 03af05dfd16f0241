# src/core/prompt_manager.py
"""
Centralized prompt management.

Every text sent to the model or shown to the patient lives in the
src.prompts modules and is looked up here by key, with variable
substitution.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, List

from src.core.exceptions import PromptError

logger = logging.getLogger(__name__)


class PromptCategory(str, Enum):
    """Categories for organizing prompts"""
    INTERVIEW = "interview"
    ANALYSIS = "analysis"
    COMMON = "common"


class PromptType(str, Enum):
    """Enum for all prompt types - maps to prompt keys"""

    # Model instructions
    INTERVIEW_SYSTEM = "interview.system.instruction"
    ANALYSIS_REQUEST = "analysis.request.template"

    # Patient-facing texts
    GREETING = "common.greeting"
    INTERVIEW_FALLBACK = "common.interview.fallback"
    CHAT_ERROR = "common.chat.error"
    RATE_LIMITED = "common.rate.limited"
    ANALYSIS_ERROR = "common.analysis.error"
    RATE_LIMIT_HINT = "common.rate.limit.hint"

    # Export record
    EXPORT_TOO_SHORT = "common.export.too.short"
    UNKNOWN_COMPLAINT = "common.unknown.complaint"
    PENDING_DIAGNOSIS = "common.pending.diagnosis"


@dataclass
class Prompt:
    """Represents a single prompt template"""
    key: str
    template: str
    category: PromptCategory
    description: str = ""
    variables: List[str] = None

    def __post_init__(self):
        if self.variables is None:
            self.variables = self._extract_variables()

    def _extract_variables(self) -> List[str]:
        """Extract {variable} names, ignoring doubled literal braces"""
        stripped = self.template.replace("{{", "").replace("}}", "")
        return sorted(set(re.findall(r'\{(\w+)\}', stripped)))

    def format(self, **kwargs) -> str:
        """
        Format the prompt with provided variables.

        Args:
            **kwargs: Variable values

        Returns:
            Formatted prompt string

        Raises:
            PromptError: If required variables are missing
        """
        missing = set(self.variables) - set(kwargs.keys())
        if missing:
            raise PromptError(
                prompt_type=self.key,
                message=f"Missing required variables: {missing}",
                details={"missing_variables": sorted(missing)}
            )

        try:
            return self.template.format(**kwargs)
        except (KeyError, IndexError, ValueError) as e:
            raise PromptError(
                prompt_type=self.key,
                message=f"Error formatting prompt: {e}",
                details={"error": str(e)}
            ) from e


class PromptManager:
    """
    Centralized prompt registry.

    Prompts are string constants in the src.prompts modules; each
    CONSTANT_NAME in module X is registered under the key "x.constant.name".
    """

    def __init__(self):
        self.prompts: Dict[str, Prompt] = {}
        self._loaded = False

    def load_prompts(self):
        """Register the prompts of all prompt modules (idempotent)"""
        if self._loaded:
            logger.debug("Prompts already loaded")
            return

        from src.prompts import interview_prompts, analysis_prompts, common_prompts

        self._register_from_module(interview_prompts, PromptCategory.INTERVIEW, "interview")
        self._register_from_module(analysis_prompts, PromptCategory.ANALYSIS, "analysis")
        self._register_from_module(common_prompts, PromptCategory.COMMON, "common")

        self._loaded = True
        logger.info(f"Loaded {len(self.prompts)} prompts")

    def _register_from_module(self, module, category: PromptCategory, key_prefix: str):
        """Register all uppercase string constants from a module as prompts"""
        for name in dir(module):
            value = getattr(module, name)
            if isinstance(value, str) and name.isupper() and not name.startswith('_'):
                key = f"{key_prefix}.{'.'.join(name.lower().split('_'))}"
                self.add_prompt(Prompt(
                    key=key,
                    template=value.strip(),
                    category=category,
                    description=f"Auto-imported from {module.__name__}.{name}"
                ))

    def add_prompt(self, prompt: Prompt):
        """Add a prompt to the manager"""
        if prompt.key in self.prompts:
            logger.warning(f"Overwriting existing prompt: {prompt.key}")
        self.prompts[prompt.key] = prompt

    def get(self, key, **kwargs) -> str:
        """
        Get a formatted prompt by key.

        Args:
            key: Prompt key (e.g. "common.greeting") or PromptType
            **kwargs: Variables for formatting

        Returns:
            Formatted prompt string

        Raises:
            PromptError: If prompt not found or formatting fails
        """
        if not self._loaded:
            self.load_prompts()

        key = key.value if isinstance(key, PromptType) else str(key)
        if key not in self.prompts:
            raise PromptError(
                prompt_type=key,
                message=f"Prompt not found: {key}",
                details={"available_keys": list(self.prompts.keys())}
            )

        prompt = self.prompts[key]
        if not prompt.variables and not kwargs:
            return prompt.template

        return prompt.format(**kwargs)

    def list_prompts(self, category: Optional[PromptCategory] = None) -> List[str]:
        """List prompt keys, optionally filtered by category"""
        if not self._loaded:
            self.load_prompts()

        if category:
            return [key for key, prompt in self.prompts.items() if prompt.category == category]
        return list(self.prompts.keys())

    def get_prompt_info(self, key: str) -> Dict[str, Any]:
        """Describe a prompt for debugging"""
        if not self._loaded:
            self.load_prompts()

        if key not in self.prompts:
            raise PromptError(prompt_type=key, message=f"Prompt not found: {key}")

        prompt = self.prompts[key]
        return {
            "key": prompt.key,
            "category": prompt.category.value,
            "description": prompt.description,
            "variables": prompt.variables,
            "template_preview": prompt.template[:100] + "..." if len(prompt.template) > 100 else prompt.template
        }


# Global instance for easy access
_prompt_manager = None


def get_prompt_manager() -> PromptManager:
    """Get the global PromptManager instance"""
    global _prompt_manager
    if _prompt_manager is None:
        _prompt_manager = PromptManager()
        _prompt_manager.load_prompts()
    return _prompt_manager
