# tests/conftest.py
"""
Shared fixtures for component and API tests.

Provides sample transcripts and analysis results, a mocked LLM service and
mocked flow handlers, and an orchestrator wired to those mocks.
"""

import json
import pytest
from unittest.mock import Mock, AsyncMock

from src.core.flow_handlers import FlowHandlers
from src.core.orchestrator import TriageOrchestrator
from src.core.prompt_manager import PromptType, get_prompt_manager
from src.models.flow_models import (
    AnalysisResult,
    Diagnosis,
    InterviewReply,
    Role,
    SymptomLink,
    Turn,
    Urgency,
)
from src.models.session_state import SessionStore
from src.services.llm_service import LLMService


@pytest.fixture
def prompts():
    return get_prompt_manager()


@pytest.fixture
def greeting_text(prompts):
    return prompts.get(PromptType.GREETING)


@pytest.fixture
def sample_transcript(greeting_text):
    """Greeting, a chief complaint and one follow-up question"""
    return [
        Turn(role=Role.ASSISTANT, text=greeting_text),
        Turn(role=Role.USER, text="头痛"),
        Turn(
            role=Role.ASSISTANT,
            text="头痛持续多久了？",
            options=["不到一天", "1-3天", "一周以上", "其他"],
            allow_multiple=False
        ),
    ]


@pytest.fixture
def single_choice_reply():
    return InterviewReply(
        question="头痛持续多久了？",
        options=["不到一天", "1-3天", "一周以上", "其他"],
        allow_multiple=False
    )


@pytest.fixture
def multi_choice_reply():
    return InterviewReply(
        question="您还有以下哪些症状？",
        options=["恶心", "畏光", "发烧", "以上都没有"],
        allow_multiple=True
    )


@pytest.fixture
def sample_analysis():
    return AnalysisResult(
        diagnoses=[
            Diagnosis(
                name="偏头痛",
                probability=70,
                description="单侧搏动性头痛伴畏光",
                urgency=Urgency.MEDIUM,
                recommended_action="门诊就医"
            ),
            Diagnosis(
                name="紧张性头痛",
                probability=20,
                description="双侧压迫感",
                urgency=Urgency.LOW,
                recommended_action="休息观察"
            ),
        ],
        symptom_links=[
            SymptomLink(symptom="头痛", condition="偏头痛", strength=8),
            SymptomLink(symptom="畏光", condition="偏头痛", strength=6),
            SymptomLink(symptom="头痛", condition="紧张性头痛", strength=5),
        ]
    )


@pytest.fixture
def interview_json():
    return json.dumps({
        "question": "头痛持续多久了？",
        "options": ["不到一天", "1-3天", "一周以上", "其他"],
        "allowMultiple": False
    }, ensure_ascii=False)


@pytest.fixture
def mock_llm_service(interview_json):
    """LLMService mock whose call_provider returns a canonical interview reply"""
    mock = AsyncMock(spec=LLMService)
    mock.call_provider.return_value = interview_json
    mock.list_models.return_value = ["models/gemini-2.5-flash"]
    mock.config = Mock(api_key="test-key", model="gemini-2.5-flash")
    mock.get_metrics = Mock(return_value={"service_name": "LLMService", "initialized": False})
    return mock


@pytest.fixture
def mock_flow_handlers(mock_llm_service, single_choice_reply, sample_analysis):
    """FlowHandlers mock returning a single-choice question and a two-diagnosis analysis"""
    mock = AsyncMock(spec=FlowHandlers)
    mock.request_interview_reply.return_value = single_choice_reply
    mock.request_analysis.return_value = sample_analysis
    mock.llm_service = mock_llm_service
    return mock


@pytest.fixture
def session_store():
    return SessionStore()


@pytest.fixture
def orchestrator(session_store, mock_flow_handlers):
    """Orchestrator wired to mocked handlers, auto analysis after 4 replies"""
    return TriageOrchestrator(
        session_store=session_store,
        flow_handlers=mock_flow_handlers,
        auto_analysis_threshold=4
    )
