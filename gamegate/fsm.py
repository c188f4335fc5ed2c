from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from gamegate.api.models import SessionPhase, SessionRecord
from gamegate.errors import TerminalStateViolation


class SessionFSM(StateMachine):
    """Guards session phase transitions; the session manager does the work.

    created -> active on the first successful start, active -> active per accepted
    input, and either phase -> ended exactly once. Nothing leaves `ended`.
    """

    created = State(SessionPhase.created.value, value=SessionPhase.created.value, initial=True)
    active = State(SessionPhase.active.value, value=SessionPhase.active.value)
    ended = State(SessionPhase.ended.value, value=SessionPhase.ended.value, final=True)

    activate = created.to(active)
    record_input = active.to.itself()
    end = created.to(ended) | active.to(ended)

    def __init__(self, session: SessionRecord):
        self.session = session
        super().__init__(start_value=session.phase.value)

    def apply(self, event: str) -> None:
        try:
            self.send(event)
        except TransitionNotAllowed as e:
            if self.session.phase == SessionPhase.ended:
                raise TerminalStateViolation(str(self.session.session_id)) from e
            raise ValueError(f"Cannot {event} a session in phase {self.session.phase.value}") from e
        self.session.phase = SessionPhase(str(self.current_state.value))
