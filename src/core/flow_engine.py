# src/core/flow_engine.py
"""
Flow Engine - explicit transition tables for the conversation.

Two machines run side by side on every session:

- chat:     GREETING -> WAITING_FOR_REPLY -> AWAITING_USER_INPUT -> ...
- analysis: IDLE <-> ANALYZING

A phase only changes through process_event, so an event that is not valid
in the current phase (a second message while a reply is in flight, a second
analysis while one runs) is detectable with can_transition before any work
starts.
"""

from typing import Callable, Dict, List, Optional, Tuple, Union, Any
from enum import Enum
from dataclasses import dataclass
import logging

from src.models.flow_models import AnalysisPhase, ChatPhase
from src.models.session_state import TriageSession
from src.core.exceptions import FlowError

logger = logging.getLogger(__name__)

Phase = Union[ChatPhase, AnalysisPhase]
TransitionHandler = Callable[[TriageSession], None]


class FlowEvent(str, Enum):
    """Events that can trigger state transitions"""

    # Chat machine
    USER_MESSAGE = "user_message"
    REPLY_RECEIVED = "reply_received"
    REPLY_FAILED = "reply_failed"

    # Analysis machine
    ANALYSIS_REQUESTED = "analysis_requested"
    ANALYSIS_FINISHED = "analysis_finished"

    # Both machines
    RESET = "reset"


@dataclass
class Transition:
    """Represents a state transition"""
    from_state: Phase
    event: FlowEvent
    to_state: Phase
    handler: Optional[TransitionHandler] = None
    description: str = ""


class FlowEngine:
    """
    FSM for the chat and analysis phases of a TriageSession.

    Handlers attached to transitions keep the session counters in step with
    the phases; they run before the phase is updated.
    """

    INITIAL_STATES = (ChatPhase.GREETING, AnalysisPhase.IDLE)

    def __init__(self):
        self.transitions: List[Transition] = []

        # Quick lookup: {(state, event): Transition}
        self._transition_map: Dict[Tuple[Phase, FlowEvent], Transition] = {}

        self._setup_transitions()
        self._build_transition_map()

        logger.info(f"FlowEngine initialized with {len(self.transitions)} transitions")

    def _setup_transitions(self):
        """Define all state transitions"""

        # ===========================================
        # CHAT TRANSITIONS
        # ===========================================

        for state in (ChatPhase.GREETING, ChatPhase.AWAITING_USER_INPUT):
            self.add_transition(
                from_state=state,
                event=FlowEvent.USER_MESSAGE,
                to_state=ChatPhase.WAITING_FOR_REPLY,
                description="User turn appended -> interview request in flight"
            )

        self.add_transition(
            from_state=ChatPhase.WAITING_FOR_REPLY,
            event=FlowEvent.REPLY_RECEIVED,
            to_state=ChatPhase.AWAITING_USER_INPUT,
            handler=self._count_reply,
            description="Assistant reply appended -> wait for the next user turn"
        )

        self.add_transition(
            from_state=ChatPhase.WAITING_FOR_REPLY,
            event=FlowEvent.REPLY_FAILED,
            to_state=ChatPhase.AWAITING_USER_INPUT,
            description="Error turn appended -> user may retry"
        )

        # ===========================================
        # ANALYSIS TRANSITIONS
        # ===========================================

        self.add_transition(
            from_state=AnalysisPhase.IDLE,
            event=FlowEvent.ANALYSIS_REQUESTED,
            to_state=AnalysisPhase.ANALYZING,
            description="Manual or automatic analysis started"
        )

        self.add_transition(
            from_state=AnalysisPhase.ANALYZING,
            event=FlowEvent.ANALYSIS_FINISHED,
            to_state=AnalysisPhase.IDLE,
            description="Result (or placeholder) stored"
        )

        # ===========================================
        # RESET TRANSITIONS
        # ===========================================

        for state in ChatPhase:
            self.add_transition(
                from_state=state,
                event=FlowEvent.RESET,
                to_state=ChatPhase.GREETING,
                handler=self._clear_conversation,
                description=f"Reset from {state.value} -> new conversation"
            )

        for state in AnalysisPhase:
            self.add_transition(
                from_state=state,
                event=FlowEvent.RESET,
                to_state=AnalysisPhase.IDLE,
                handler=self._clear_analysis,
                description=f"Reset from {state.value} -> no analysis"
            )

    # ===========================================
    # HANDLERS
    # ===========================================

    @staticmethod
    def _count_reply(session: TriageSession) -> None:
        session.turn_count += 1

    @staticmethod
    def _clear_conversation(session: TriageSession) -> None:
        session.generation += 1
        session.transcript = []
        session.turn_count = 0
        session.pending_selection = []

    @staticmethod
    def _clear_analysis(session: TriageSession) -> None:
        session.auto_analysis_fired = False
        session.last_analysis = None

    # ===========================================
    # CORE FSM METHODS
    # ===========================================

    def add_transition(
        self,
        from_state: Phase,
        event: FlowEvent,
        to_state: Phase,
        handler: Optional[TransitionHandler] = None,
        description: str = ""
    ):
        """Add a new transition to the FSM"""
        self.transitions.append(Transition(
            from_state=from_state,
            event=event,
            to_state=to_state,
            handler=handler,
            description=description
        ))

    def _build_transition_map(self):
        """Build fast lookup map for transitions"""
        self._transition_map.clear()

        for transition in self.transitions:
            key = (transition.from_state, transition.event)
            if key in self._transition_map:
                logger.warning(
                    f"Duplicate transition for {transition.from_state.value} + {transition.event.value}, "
                    f"keeping the last one"
                )
            self._transition_map[key] = transition

    def get_valid_transitions(self, current_state: Phase) -> List[Transition]:
        """Get all valid transitions from current state"""
        return [t for t in self.transitions if t.from_state == current_state]

    def can_transition(self, current_state: Phase, event: FlowEvent) -> bool:
        """Check if a transition is valid"""
        return (current_state, event) in self._transition_map

    def process_event(self, session: TriageSession, event: FlowEvent) -> Tuple[ChatPhase, AnalysisPhase]:
        """
        Apply an event to whichever machine(s) accept it.

        Args:
            session: Session whose phases change
            event: Event to process

        Returns:
            Tuple of (chat phase, analysis phase) after the event

        Raises:
            FlowError: If neither machine accepts the event in its current phase
        """
        applied = False

        chat_transition = self._transition_map.get((session.chat_phase, event))
        if chat_transition:
            self._apply(session, chat_transition)
            session.chat_phase = chat_transition.to_state
            applied = True

        analysis_transition = self._transition_map.get((session.analysis_phase, event))
        if analysis_transition:
            self._apply(session, analysis_transition)
            session.analysis_phase = analysis_transition.to_state
            applied = True

        if not applied:
            current = f"{session.chat_phase.value}/{session.analysis_phase.value}"
            valid_events = sorted({
                t.event.value
                for t in self.get_valid_transitions(session.chat_phase) + self.get_valid_transitions(session.analysis_phase)
            })
            logger.warning(f"Invalid transition: {current} + {event.value}. Valid events: {valid_events}")
            raise FlowError(
                current_state=current,
                message=f"Invalid transition: {current} + {event.value}. Valid events: {valid_events}"
            )

        return session.chat_phase, session.analysis_phase

    def _apply(self, session: TriageSession, transition: Transition) -> None:
        if transition.handler:
            transition.handler(session)
        logger.info(
            f"Session {session.session_id}: {transition.from_state.value} "
            f"--{transition.event.value}--> {transition.to_state.value}"
        )

    def get_flow_summary(self) -> Dict[str, Any]:
        """Get summary of the FSM for debugging/monitoring"""
        states = sorted({t.from_state.value for t in self.transitions} | {t.to_state.value for t in self.transitions})
        events = sorted({t.event.value for t in self.transitions})

        return {
            "total_states": len(states),
            "total_events": len(events),
            "total_transitions": len(self.transitions),
            "states": states,
            "events": events,
            "transitions": [
                {
                    "from": t.from_state.value,
                    "event": t.event.value,
                    "to": t.to_state.value,
                    "description": t.description,
                    "has_handler": t.handler is not None
                }
                for t in self.transitions
            ]
        }

    def validate_fsm(self) -> List[str]:
        """Validate the FSM for unreachable states and dead ends"""
        issues = []

        reachable = set(self.INITIAL_STATES)
        changed = True
        while changed:
            changed = False
            for transition in self.transitions:
                if transition.from_state in reachable and transition.to_state not in reachable:
                    reachable.add(transition.to_state)
                    changed = True

        all_states = set(ChatPhase) | set(AnalysisPhase)
        unreachable = all_states - reachable
        if unreachable:
            issues.append(f"Unreachable states: {sorted(s.value for s in unreachable)}")

        dead_ends = [s for s in all_states if not self.get_valid_transitions(s)]
        if dead_ends:
            issues.append(f"States without outgoing transitions: {sorted(s.value for s in dead_ends)}")

        return issues


def create_flow_engine() -> FlowEngine:
    """Create a properly initialized flow engine"""
    return FlowEngine()
