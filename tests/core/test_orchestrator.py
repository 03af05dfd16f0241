# tests/core/test_orchestrator.py
"""
Tests for TriageOrchestrator - session flow with mocked model pipelines.
"""

import pytest

from src.core.config import settings
from src.core.exceptions import SessionError, TransportError, ValidationError
from src.core.orchestrator import TriageOrchestrator
from src.core.prompt_manager import PromptType
from src.models.flow_models import AnalysisPhase, AnalysisResult, ChatPhase, Role


@pytest.fixture
def session(orchestrator):
    return orchestrator.start_session()


async def _send_turns(orchestrator, session_id, count):
    for i in range(count):
        await orchestrator.send_message(session_id, f"回答 {i}")


# ===========================================
# UNIT TESTS - SESSION LIFECYCLE
# ===========================================

@pytest.mark.unit
class TestSessionLifecycle:

    def test_start_seeds_greeting(self, session, greeting_text):
        assert len(session.transcript) == 1
        assert session.transcript[0].role == Role.ASSISTANT
        assert session.transcript[0].text == greeting_text
        assert session.chat_phase is ChatPhase.GREETING

    def test_sessions_are_isolated(self, orchestrator):
        first = orchestrator.start_session()
        second = orchestrator.start_session()

        assert first.session_id != second.session_id
        assert orchestrator.get_session(first.session_id) is first

    def test_unknown_session_raises(self, orchestrator):
        with pytest.raises(SessionError) as exc_info:
            orchestrator.get_session("missing")

        assert exc_info.value.session_id == "missing"

    async def test_unknown_session_on_send(self, orchestrator):
        with pytest.raises(SessionError):
            await orchestrator.send_message("missing", "头痛")


# ===========================================
# UNIT TESTS - INTERVIEW
# ===========================================

@pytest.mark.unit
class TestSendMessage:

    async def test_successful_reply(self, orchestrator, session, mock_flow_handlers):
        await orchestrator.send_message(session.session_id, "  头痛 ")

        history, message = mock_flow_handlers.request_interview_reply.call_args[0]
        assert message == "头痛"
        # History excludes the new user turn
        assert len(history) == 1

        roles = [t.role for t in session.transcript]
        assert roles == [Role.ASSISTANT, Role.USER, Role.ASSISTANT]
        assert session.transcript[1].text == "头痛"
        assert session.latest_turn.text == "头痛持续多久了？"
        assert session.latest_turn.options == ["不到一天", "1-3天", "一周以上", "其他"]
        assert session.chat_phase is ChatPhase.AWAITING_USER_INPUT
        assert session.turn_count == 1

    @pytest.mark.parametrize("text", ["", "   ", None])
    async def test_empty_message_is_noop(self, orchestrator, session, mock_flow_handlers, text):
        await orchestrator.send_message(session.session_id, text)

        assert len(session.transcript) == 1
        mock_flow_handlers.request_interview_reply.assert_not_called()

    async def test_message_while_waiting_is_ignored(self, orchestrator, session, mock_flow_handlers):
        session.chat_phase = ChatPhase.WAITING_FOR_REPLY

        await orchestrator.send_message(session.session_id, "头痛")

        assert len(session.transcript) == 1
        mock_flow_handlers.request_interview_reply.assert_not_called()

    async def test_transport_error_appends_error_turn(self, orchestrator, session, mock_flow_handlers, prompts):
        mock_flow_handlers.request_interview_reply.side_effect = TransportError("bad gateway", status=502)

        await orchestrator.send_message(session.session_id, "头痛")

        assert session.latest_turn.role == Role.ASSISTANT
        assert session.latest_turn.text == prompts.get(PromptType.CHAT_ERROR)
        assert session.chat_phase is ChatPhase.AWAITING_USER_INPUT
        assert session.turn_count == 0

    async def test_rate_limit_has_its_own_text(self, orchestrator, session, mock_flow_handlers, prompts):
        mock_flow_handlers.request_interview_reply.side_effect = TransportError("slow down", status=429)

        await orchestrator.send_message(session.session_id, "头痛")

        assert session.latest_turn.text == prompts.get(PromptType.RATE_LIMITED)

    async def test_unexpected_error_appends_error_turn(self, orchestrator, session, mock_flow_handlers, prompts):
        mock_flow_handlers.request_interview_reply.side_effect = RuntimeError("boom")

        await orchestrator.send_message(session.session_id, "头痛")

        assert session.latest_turn.text == prompts.get(PromptType.CHAT_ERROR)

    async def test_conversation_continues_after_error(self, orchestrator, session, mock_flow_handlers, single_choice_reply):
        mock_flow_handlers.request_interview_reply.side_effect = [TransportError("down", status=503), single_choice_reply]

        await orchestrator.send_message(session.session_id, "头痛")
        await orchestrator.send_message(session.session_id, "头痛")

        assert session.latest_turn.text == single_choice_reply.question
        assert session.turn_count == 1


# ===========================================
# UNIT TESTS - OPTION SELECTION
# ===========================================

@pytest.mark.unit
class TestOptionSelection:

    async def test_single_select_sends_immediately(self, orchestrator, session, mock_flow_handlers):
        await orchestrator.send_message(session.session_id, "头痛")
        await orchestrator.toggle_option(session.session_id, "1-3天")

        assert mock_flow_handlers.request_interview_reply.call_args[0][1] == "1-3天"
        assert session.transcript[3].role == Role.USER
        assert session.transcript[3].text == "1-3天"
        assert session.pending_selection == []

    async def test_multi_select_toggle_and_submit(self, orchestrator, session, mock_flow_handlers, multi_choice_reply):
        mock_flow_handlers.request_interview_reply.return_value = multi_choice_reply
        await orchestrator.send_message(session.session_id, "头痛")

        await orchestrator.toggle_option(session.session_id, "恶心")
        await orchestrator.toggle_option(session.session_id, "畏光")
        await orchestrator.toggle_option(session.session_id, "恶心")
        assert session.pending_selection == ["畏光"]

        await orchestrator.toggle_option(session.session_id, "恶心")
        assert session.pending_selection == ["畏光", "恶心"]
        assert mock_flow_handlers.request_interview_reply.call_count == 1

        await orchestrator.submit_selection(session.session_id)

        assert mock_flow_handlers.request_interview_reply.call_args[0][1] == "畏光, 恶心"
        assert session.transcript[3].text == "畏光, 恶心"
        assert session.pending_selection == []

    async def test_empty_submit_is_noop(self, orchestrator, session, mock_flow_handlers, multi_choice_reply):
        mock_flow_handlers.request_interview_reply.return_value = multi_choice_reply
        await orchestrator.send_message(session.session_id, "头痛")

        await orchestrator.submit_selection(session.session_id)

        assert len(session.transcript) == 3
        assert mock_flow_handlers.request_interview_reply.call_count == 1

    async def test_option_not_offered_raises(self, orchestrator, session):
        await orchestrator.send_message(session.session_id, "头痛")

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.toggle_option(session.session_id, "不存在的选项")

        assert exc_info.value.field == "option"

    async def test_greeting_offers_no_options(self, orchestrator, session):
        with pytest.raises(ValidationError):
            await orchestrator.toggle_option(session.session_id, "头痛")


# ===========================================
# UNIT TESTS - ANALYSIS
# ===========================================

@pytest.mark.unit
class TestAnalysis:

    async def test_auto_analysis_fires_once(self, orchestrator, session, mock_flow_handlers):
        await _send_turns(orchestrator, session.session_id, 3)
        mock_flow_handlers.request_analysis.assert_not_called()

        await _send_turns(orchestrator, session.session_id, 1)
        assert session.turn_count == 4
        assert session.auto_analysis_fired is True
        assert mock_flow_handlers.request_analysis.call_count == 1
        assert session.last_analysis.diagnoses[0].name == "偏头痛"
        assert session.analysis_phase is AnalysisPhase.IDLE

        await _send_turns(orchestrator, session.session_id, 2)
        assert mock_flow_handlers.request_analysis.call_count == 1

    async def test_zero_threshold_analyzes_after_first_reply(self, session_store, mock_flow_handlers):
        orchestrator = TriageOrchestrator(
            session_store=session_store,
            flow_handlers=mock_flow_handlers,
            auto_analysis_threshold=0
        )
        session = orchestrator.start_session()

        await orchestrator.send_message(session.session_id, "头痛")

        assert orchestrator.auto_analysis_threshold == 0
        assert session.auto_analysis_fired is True
        assert mock_flow_handlers.request_analysis.call_count == 1

    def test_threshold_defaults_to_settings(self, session_store, mock_flow_handlers):
        orchestrator = TriageOrchestrator(session_store=session_store, flow_handlers=mock_flow_handlers)
        assert orchestrator.auto_analysis_threshold == settings.AUTO_ANALYSIS_THRESHOLD

    async def test_manual_analysis_after_auto(self, orchestrator, session, mock_flow_handlers):
        await _send_turns(orchestrator, session.session_id, 4)

        await orchestrator.analyze(session.session_id)

        assert mock_flow_handlers.request_analysis.call_count == 2

    async def test_auto_analysis_deferred_while_busy(self, orchestrator, session, mock_flow_handlers):
        await _send_turns(orchestrator, session.session_id, 3)
        session.analysis_phase = AnalysisPhase.ANALYZING

        await _send_turns(orchestrator, session.session_id, 1)
        assert session.auto_analysis_fired is False
        mock_flow_handlers.request_analysis.assert_not_called()

        session.analysis_phase = AnalysisPhase.IDLE
        await _send_turns(orchestrator, session.session_id, 1)
        assert session.auto_analysis_fired is True
        assert mock_flow_handlers.request_analysis.call_count == 1

    async def test_analysis_needs_a_user_turn(self, orchestrator, session, mock_flow_handlers):
        await orchestrator.analyze(session.session_id)

        mock_flow_handlers.request_analysis.assert_not_called()
        assert session.last_analysis is None

    async def test_analysis_ignored_while_running(self, orchestrator, session, mock_flow_handlers):
        await orchestrator.send_message(session.session_id, "头痛")
        session.analysis_phase = AnalysisPhase.ANALYZING

        await orchestrator.analyze(session.session_id)

        mock_flow_handlers.request_analysis.assert_not_called()

    async def test_analysis_receives_full_transcript(self, orchestrator, session, mock_flow_handlers):
        await orchestrator.send_message(session.session_id, "头痛")
        await orchestrator.analyze(session.session_id)

        history = mock_flow_handlers.request_analysis.call_args[0][0]
        assert [t.text for t in history] == [t.text for t in session.transcript]

    async def test_failed_analysis_stores_placeholder(self, orchestrator, session, mock_flow_handlers):
        mock_flow_handlers.request_analysis.side_effect = TransportError("down", status=500)
        await orchestrator.send_message(session.session_id, "头痛")

        await orchestrator.analyze(session.session_id)

        assert session.last_analysis.is_placeholder
        assert session.analysis_phase is AnalysisPhase.IDLE


# ===========================================
# UNIT TESTS - RESET
# ===========================================

@pytest.mark.unit
class TestReset:

    async def test_reset_returns_to_greeting(self, orchestrator, session, greeting_text):
        await _send_turns(orchestrator, session.session_id, 4)

        orchestrator.reset(session.session_id)

        assert [t.text for t in session.transcript] == [greeting_text]
        assert session.chat_phase is ChatPhase.GREETING
        assert session.turn_count == 0
        assert session.auto_analysis_fired is False
        assert session.last_analysis is None

    async def test_auto_analysis_rearms_after_reset(self, orchestrator, session, mock_flow_handlers):
        await _send_turns(orchestrator, session.session_id, 4)
        orchestrator.reset(session.session_id)

        await _send_turns(orchestrator, session.session_id, 4)

        assert mock_flow_handlers.request_analysis.call_count == 2

    async def test_reply_in_flight_during_reset_is_dropped(
        self, orchestrator, session, mock_flow_handlers, single_choice_reply, greeting_text
    ):
        async def reply_after_reset(history, message):
            orchestrator.reset(session.session_id)
            return single_choice_reply

        mock_flow_handlers.request_interview_reply.side_effect = reply_after_reset

        await orchestrator.send_message(session.session_id, "头痛")

        assert [t.text for t in session.transcript] == [greeting_text]
        assert session.chat_phase is ChatPhase.GREETING
        assert session.turn_count == 0

    async def test_failed_reply_during_reset_adds_no_error_turn(
        self, orchestrator, session, mock_flow_handlers, greeting_text
    ):
        async def fail_after_reset(history, message):
            orchestrator.reset(session.session_id)
            raise TransportError("down", status=500)

        mock_flow_handlers.request_interview_reply.side_effect = fail_after_reset

        await orchestrator.send_message(session.session_id, "头痛")

        assert [t.text for t in session.transcript] == [greeting_text]

    async def test_analysis_in_flight_during_reset_is_dropped(
        self, orchestrator, session, mock_flow_handlers, sample_analysis
    ):
        async def analysis_after_reset(history):
            orchestrator.reset(session.session_id)
            return sample_analysis

        mock_flow_handlers.request_analysis.side_effect = analysis_after_reset
        await orchestrator.send_message(session.session_id, "头痛")

        await orchestrator.analyze(session.session_id)

        assert session.last_analysis is None
        assert session.analysis_phase is AnalysisPhase.IDLE


# ===========================================
# UNIT TESTS - VIEWS AND EXPORT
# ===========================================

@pytest.mark.unit
class TestViews:

    async def test_snapshot_without_analysis(self, orchestrator, session):
        await orchestrator.send_message(session.session_id, "头痛")

        snapshot = orchestrator.snapshot(session.session_id)

        assert snapshot["sessionId"] == session.session_id
        assert snapshot["chatPhase"] == "awaiting_user_input"
        assert snapshot["analysisPhase"] == "idle"
        assert snapshot["turnCount"] == 1
        assert snapshot["analysis"] is None
        assert snapshot["graph"] is None
        assert snapshot["transcript"][-1]["allowMultiple"] is False
        assert snapshot["transcript"][1]["role"] == "user"

    async def test_snapshot_with_analysis(self, orchestrator, session):
        await orchestrator.send_message(session.session_id, "头痛")
        await orchestrator.analyze(session.session_id)

        snapshot = orchestrator.snapshot(session.session_id)

        assert snapshot["analysis"]["diagnoses"][0]["recommendedAction"] == "门诊就医"
        assert len(snapshot["analysis"]["symptomConnections"]) == 3
        assert [n["name"] for n in snapshot["graph"]["nodes"]] == ["头痛", "偏头痛", "畏光", "紧张性头痛"]
        assert snapshot["graph"]["links"][0] == {"source": 0, "target": 1, "value": 8}

    def test_export_refused_with_greeting_only(self, orchestrator, session, prompts):
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.export_record(session.session_id)

        assert exc_info.value.message == prompts.get(PromptType.EXPORT_TOO_SHORT)

    async def test_export_before_analysis(self, orchestrator, session):
        await orchestrator.send_message(session.session_id, "头痛")

        record = orchestrator.export_record(session.session_id)

        assert record["id"].startswith("triage-")
        assert record["analysisResult"] is None
        assert len(record["messages"]) == 3
        assert record["summary"] == "主诉: 头痛 | 诊断: 待分析"

    async def test_export_with_analysis(self, orchestrator, session):
        await orchestrator.send_message(session.session_id, "头痛")
        await orchestrator.analyze(session.session_id)

        record = orchestrator.export_record(session.session_id)

        assert record["summary"] == "主诉: 头痛 | 诊断: 偏头痛 (70%)"
        assert record["analysisResult"]["diagnoses"][0]["name"] == "偏头痛"

    async def test_export_truncates_long_complaint(self, orchestrator, session):
        await orchestrator.send_message(session.session_id, "痛" * 80)

        summary = orchestrator.export_record(session.session_id)["summary"]

        assert summary.startswith("主诉: " + "痛" * 50 + " |")

    async def test_export_placeholder_summary(self, orchestrator, session, mock_flow_handlers):
        mock_flow_handlers.request_analysis.return_value = AnalysisResult.placeholder()
        await orchestrator.send_message(session.session_id, "头痛")
        await orchestrator.analyze(session.session_id)

        record = orchestrator.export_record(session.session_id)
        assert record["summary"] == "主诉: 头痛 | 诊断: 信息不足 (0%)"

    def test_health_check(self, orchestrator, session):
        health = orchestrator.health_check()

        assert health["overall"] == "healthy"
        assert health["flow_engine"] == "healthy"
        assert health["llm_configured"] is True
        assert health["session_count"] == 1

    async def test_session_info(self, orchestrator, session):
        await orchestrator.send_message(session.session_id, "头痛")

        info = orchestrator.get_session_info(session.session_id)

        assert info["message_count"] == 3
        assert "user_message" in info["valid_events"]
        assert "analysis_requested" in info["valid_events"]
