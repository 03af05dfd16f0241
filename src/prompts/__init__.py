"""Prompts package - centralized prompt texts"""

from . import interview_prompts
from . import analysis_prompts
from . import common_prompts

__all__ = [
    'interview_prompts',
    'analysis_prompts',
    'common_prompts'
]
