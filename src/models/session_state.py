# src/models/session_state.py

from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.models.flow_models import AnalysisPhase, AnalysisResult, ChatPhase, Turn


class TriageSession(BaseModel):
    """
    State of one triage conversation: the transcript, the phases of the chat
    and analysis state machines, the auto-analysis guard and the latest
    analysis result. Nothing here outlives a reset.
    """
    session_id: str = Field(default_factory=lambda: str(uuid4()))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    transcript: List[Turn] = Field(default_factory=list)
    chat_phase: ChatPhase = ChatPhase.GREETING
    analysis_phase: AnalysisPhase = AnalysisPhase.IDLE
    turn_count: int = Field(default=0, ge=0)
    auto_analysis_fired: bool = False
    last_analysis: Optional[AnalysisResult] = None
    # Insertion-ordered set of options picked on a multi-select turn
    pending_selection: List[str] = Field(default_factory=list)
    # Bumped on reset; replies that started before a reset are dropped
    generation: int = 0

    @property
    def latest_turn(self) -> Optional[Turn]:
        return self.transcript[-1] if self.transcript else None


class SessionStore:
    """
    Simple in-memory registry of sessions, one per browser session.
    """
    def __init__(self):
        self.sessions: Dict[str, TriageSession] = {}

    def create_session(self) -> TriageSession:
        session = TriageSession()
        self.sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> Optional[TriageSession]:
        return self.sessions.get(session_id)
