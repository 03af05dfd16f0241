# src/core/orchestrator.py
"""
Triage Orchestrator - session-scoped conversation management.

Owns the transcript of each session and drives it through the flow engine:
user turn -> interview reply (or error turn) -> automatic analysis once
enough replies have arrived. Provider and decoding failures never leave
this class as exceptions; they become transcript turns or placeholder
results so the conversation stays usable.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from src.core.config import settings
from src.core.exceptions import SessionError, TransportError, ValidationError
from src.core.flow_engine import FlowEngine, FlowEvent, create_flow_engine
from src.core.flow_handlers import FlowHandlers
from src.core.prompt_manager import PromptManager, PromptType, get_prompt_manager
from src.core.symptom_graph import build_symptom_graph
from src.models.flow_models import AnalysisResult, Role, Turn
from src.models.session_state import SessionStore, TriageSession

logger = logging.getLogger(__name__)

# Length of the chief complaint quoted in the export summary
_SUMMARY_COMPLAINT_LENGTH = 50


class TriageOrchestrator:
    """
    Main interface for triage conversations.

    Every operation takes a session id, works on that session only and
    returns the session. Unknown ids raise SessionError.
    """

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        flow_engine: Optional[FlowEngine] = None,
        flow_handlers: Optional[FlowHandlers] = None,
        prompt_manager: Optional[PromptManager] = None,
        auto_analysis_threshold: Optional[int] = None
    ):
        self.session_store = session_store or SessionStore()
        self.flow_engine = flow_engine or create_flow_engine()
        self.flow_handlers = flow_handlers or FlowHandlers()
        self.prompt_manager = prompt_manager or get_prompt_manager()
        if auto_analysis_threshold is None:
            auto_analysis_threshold = settings.AUTO_ANALYSIS_THRESHOLD
        self.auto_analysis_threshold = auto_analysis_threshold

        logger.info(f"TriageOrchestrator initialized (auto analysis after {self.auto_analysis_threshold} replies)")

    # ===========================================
    # SESSION LIFECYCLE
    # ===========================================

    def start_session(self) -> TriageSession:
        """Create a session seeded with the greeting turn"""
        session = self.session_store.create_session()
        self._seed_greeting(session)
        logger.info(f"Started triage session {session.session_id}")
        return session

    def get_session(self, session_id: str) -> TriageSession:
        """
        Raises:
            SessionError: If the session does not exist
        """
        session = self.session_store.get(session_id)
        if session is None:
            raise SessionError(message=f"Unknown session: {session_id}", session_id=session_id)
        return session

    def reset(self, session_id: str) -> TriageSession:
        """Back to the greeting: both machines, counters and results cleared"""
        session = self.get_session(session_id)
        self.flow_engine.process_event(session, FlowEvent.RESET)
        self._seed_greeting(session)
        logger.info(f"Session {session_id} reset")
        return session

    def _seed_greeting(self, session: TriageSession) -> None:
        session.transcript.append(Turn(
            role=Role.ASSISTANT,
            text=self.prompt_manager.get(PromptType.GREETING)
        ))

    # ===========================================
    # INTERVIEW
    # ===========================================

    async def send_message(self, session_id: str, text: str) -> TriageSession:
        """
        Append a user turn and the model's next question.

        Empty text, or a message while a reply is still in flight, is ignored.
        A failed provider call appends an error turn instead of a question.
        """
        session = self.get_session(session_id)
        text = (text or "").strip()

        if not text:
            logger.debug(f"Session {session_id}: ignoring empty message")
            return session
        if not self.flow_engine.can_transition(session.chat_phase, FlowEvent.USER_MESSAGE):
            logger.info(f"Session {session_id}: reply still in flight, message ignored")
            return session

        history = list(session.transcript)
        session.transcript.append(Turn(role=Role.USER, text=text))
        session.pending_selection = []
        self.flow_engine.process_event(session, FlowEvent.USER_MESSAGE)
        generation = session.generation

        try:
            reply = await self.flow_handlers.request_interview_reply(history, text)
        except TransportError as e:
            logger.error(f"Session {session_id}: interview request failed: {e}")
            error_key = PromptType.RATE_LIMITED if e.is_rate_limited else PromptType.CHAT_ERROR
            self._fail_reply(session, generation, error_key)
            return session
        except Exception as e:
            logger.error(f"Session {session_id}: unexpected error in interview: {e}", exc_info=True)
            self._fail_reply(session, generation, PromptType.CHAT_ERROR)
            return session

        if session.generation != generation:
            logger.info(f"Session {session_id}: dropping reply that arrived after a reset")
            return session

        session.transcript.append(Turn(
            role=Role.ASSISTANT,
            text=reply.question,
            options=reply.options,
            allow_multiple=reply.allow_multiple
        ))
        self.flow_engine.process_event(session, FlowEvent.REPLY_RECEIVED)

        await self._maybe_auto_analyze(session)
        return session

    def _fail_reply(self, session: TriageSession, generation: int, error_key: PromptType) -> None:
        if session.generation != generation:
            return
        session.transcript.append(Turn(role=Role.ASSISTANT, text=self.prompt_manager.get(error_key)))
        self.flow_engine.process_event(session, FlowEvent.REPLY_FAILED)

    async def toggle_option(self, session_id: str, option: str) -> TriageSession:
        """
        Pick an option of the latest assistant turn.

        On a multi-select turn the option flips in or out of the pending
        selection; on a single-select turn it is sent right away.

        Raises:
            ValidationError: If the latest turn does not offer the option
        """
        session = self.get_session(session_id)
        turn = session.latest_turn

        if turn is None or turn.role != Role.ASSISTANT or option not in turn.options:
            raise ValidationError(message="Option is not offered by the latest question", field="option", value=option)

        if not turn.allow_multiple:
            return await self.send_message(session_id, option)

        if option in session.pending_selection:
            session.pending_selection.remove(option)
        else:
            session.pending_selection.append(option)
        logger.debug(f"Session {session_id}: selection now {session.pending_selection}")
        return session

    async def submit_selection(self, session_id: str) -> TriageSession:
        """Send the pending selection as one comma-separated turn. Empty selection is a no-op."""
        session = self.get_session(session_id)
        if not session.pending_selection:
            logger.debug(f"Session {session_id}: empty selection, nothing to submit")
            return session
        return await self.send_message(session_id, ", ".join(session.pending_selection))

    # ===========================================
    # ANALYSIS
    # ===========================================

    async def _maybe_auto_analyze(self, session: TriageSession) -> None:
        if session.auto_analysis_fired or session.turn_count < self.auto_analysis_threshold:
            return
        if not self.flow_engine.can_transition(session.analysis_phase, FlowEvent.ANALYSIS_REQUESTED):
            # Analysis already running; try again after the next reply
            return

        session.auto_analysis_fired = True
        logger.info(f"Session {session.session_id}: auto analysis after {session.turn_count} replies")
        await self.analyze(session.session_id, automatic=True)

    async def analyze(self, session_id: str, automatic: bool = False) -> TriageSession:
        """
        Run the analysis pipeline and store the result.

        No-op while an analysis is running or before the first user turn.
        Any failure stores the 'insufficient data' placeholder.
        """
        session = self.get_session(session_id)

        if len(session.transcript) < 2:
            logger.info(f"Session {session_id}: transcript too short for analysis")
            return session
        if not self.flow_engine.can_transition(session.analysis_phase, FlowEvent.ANALYSIS_REQUESTED):
            logger.info(f"Session {session_id}: analysis already running")
            return session

        self.flow_engine.process_event(session, FlowEvent.ANALYSIS_REQUESTED)
        generation = session.generation
        mode = "automatic" if automatic else "manual"

        try:
            result = await self.flow_handlers.request_analysis(list(session.transcript))
        except Exception as e:
            logger.error(f"Session {session_id}: {mode} analysis failed: {e}")
            result = AnalysisResult.placeholder()

        if session.generation != generation:
            logger.info(f"Session {session_id}: dropping analysis that finished after a reset")
            return session

        session.last_analysis = result
        self.flow_engine.process_event(session, FlowEvent.ANALYSIS_FINISHED)
        logger.info(f"Session {session_id}: {mode} analysis stored ({len(result.diagnoses)} diagnoses)")
        return session

    # ===========================================
    # VIEWS
    # ===========================================

    def snapshot(self, session_id: str) -> Dict[str, Any]:
        """Everything a client needs to render the session"""
        session = self.get_session(session_id)
        analysis = session.last_analysis

        return {
            "sessionId": session.session_id,
            "transcript": [turn.model_dump(mode="json", by_alias=True) for turn in session.transcript],
            "chatPhase": session.chat_phase.value,
            "analysisPhase": session.analysis_phase.value,
            "turnCount": session.turn_count,
            "autoAnalysisFired": session.auto_analysis_fired,
            "pendingSelection": list(session.pending_selection),
            "analysis": analysis.model_dump(mode="json", by_alias=True) if analysis else None,
            "graph": build_symptom_graph(analysis).model_dump(mode="json") if analysis else None,
        }

    def export_record(self, session_id: str) -> Dict[str, Any]:
        """
        Transcript, analysis and a one-line summary.

        Raises:
            ValidationError: If the transcript holds only the greeting
        """
        session = self.get_session(session_id)
        if len(session.transcript) < 2:
            raise ValidationError(
                message=self.prompt_manager.get(PromptType.EXPORT_TOO_SHORT),
                field="transcript",
                value=len(session.transcript)
            )

        created_at = datetime.now(timezone.utc)
        analysis = session.last_analysis

        return {
            "id": f"triage-{int(created_at.timestamp() * 1000)}",
            "createdAt": created_at.isoformat(),
            "messages": [turn.model_dump(mode="json", by_alias=True) for turn in session.transcript],
            "analysisResult": analysis.model_dump(mode="json", by_alias=True) if analysis else None,
            "summary": self._summary(session),
        }

    def _summary(self, session: TriageSession) -> str:
        user_turns = [t for t in session.transcript if t.role == Role.USER]
        complaint = user_turns[0].text if user_turns else self.prompt_manager.get(PromptType.UNKNOWN_COMPLAINT)

        analysis = session.last_analysis
        if analysis and analysis.diagnoses:
            top = analysis.diagnoses[0]
            diagnosis = f"{top.name} ({top.probability}%)"
        else:
            diagnosis = self.prompt_manager.get(PromptType.PENDING_DIAGNOSIS)

        return f"主诉: {complaint[:_SUMMARY_COMPLAINT_LENGTH]} | 诊断: {diagnosis}"

    def get_session_info(self, session_id: str) -> Dict[str, Any]:
        """Compact session state for debugging"""
        session = self.get_session(session_id)
        return {
            "session_id": session.session_id,
            "chat_phase": session.chat_phase.value,
            "analysis_phase": session.analysis_phase.value,
            "turn_count": session.turn_count,
            "message_count": len(session.transcript),
            "valid_events": sorted({
                t.event.value
                for phase in (session.chat_phase, session.analysis_phase)
                for t in self.flow_engine.get_valid_transitions(phase)
            })
        }

    def health_check(self) -> Dict[str, Any]:
        """
        Orchestrator health without touching the provider.

        Returns:
            Dict with flow engine status, LLM service metrics and session count
        """
        issues = self.flow_engine.validate_fsm()
        llm_metrics = self.flow_handlers.llm_service.get_metrics()

        return {
            "orchestrator": "healthy",
            "flow_engine": f"issues: {len(issues)}" if issues else "healthy",
            "llm_service": llm_metrics,
            "llm_configured": bool(self.flow_handlers.llm_service.config.api_key),
            "session_count": len(self.session_store.sessions),
            "overall": "warning" if issues else "healthy",
        }

    def get_flow_debug_info(self) -> Dict[str, Any]:
        """Flow engine summary plus the active sessions"""
        return {
            "flow_summary": self.flow_engine.get_flow_summary(),
            "validation_issues": self.flow_engine.validate_fsm(),
            "session_count": len(self.session_store.sessions),
            "active_sessions": [
                {
                    "session_id": session_id,
                    "chat_phase": session.chat_phase.value,
                    "analysis_phase": session.analysis_phase.value,
                    "message_count": len(session.transcript)
                }
                for session_id, session in self.session_store.sessions.items()
            ]
        }


# Global orchestrator instance for easy access
_orchestrator: Optional[TriageOrchestrator] = None


def get_orchestrator() -> TriageOrchestrator:
    """Get the global orchestrator instance"""
    global _orchestrator

    if _orchestrator is None:
        logger.info("Creating new TriageOrchestrator instance")
        _orchestrator = TriageOrchestrator()

    return _orchestrator


def init_orchestrator(session_store: SessionStore) -> TriageOrchestrator:
    """Replace the global orchestrator with one bound to the given store"""
    global _orchestrator
    _orchestrator = TriageOrchestrator(session_store=session_store)
    return _orchestrator
