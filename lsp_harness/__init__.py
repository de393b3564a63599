from .correlation import CorrelationTable, PendingRequest
from .dispatcher import Dispatcher, MessageKind, classify
from .errors import (
    DuplicateIdError,
    HarnessError,
    IdSpaceExhaustedError,
    IllegalStateError,
    MalformedMessageError,
    RequestTimeoutError,
    ResponseError,
    SessionTerminatedError,
    SpawnError,
    UnmatchedResponseError,
)
from .ids import IdAllocator
from .scenario import ScenarioDriver, ScenarioReport, StepOutcome
from .session import LanguageServerSession
from .state import SessionState, SessionStateMachine
from .transport import LSPTransport

__version__ = "0.1.0"
