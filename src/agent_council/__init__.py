from importlib.metadata import PackageNotFoundError, version

from .agent_runtime import AgentClient, AgentRequest, ChatAgentClient
from .control_block import parse_ceo_control_block
from .deliberation import DecisionEpochGraph, EpochOutcome
from .models import (
    Agent,
    AgentResponse,
    AgentStatus,
    BrainMode,
    BrainState,
    Carryover,
    DecisionEpoch,
    DecisionRecord,
    EpochPhase,
    EpochTerminalReason,
    ErrorCode,
    Exchange,
    KeyNotes,
    ParsedBlock,
    ProjectPhase,
    ProjectRun,
    ProjectState,
)
from .orchestrator import CouncilSession, RunResult
from .persistence import CarryoverStore, FileKeyValueStore, InMemoryKeyValueStore, KeyValueStore, ProjectStore
from .project_loop import Executor, ProjectLoopGraph, ProjectOutcome, ShellExecutor
from .protocol import parse_advisor_review, parse_ceo_verdict, parse_execution_review
from .reducer import initial_state, reduce
from .settings import RuntimeSettings
from .verdicts import apply_ceo_synthesis, resolve_verdicts


def get_version() -> str:
    try:
        return version("agent-council")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "Agent",
    "AgentClient",
    "AgentRequest",
    "AgentResponse",
    "AgentStatus",
    "BrainMode",
    "BrainState",
    "Carryover",
    "CarryoverStore",
    "ChatAgentClient",
    "CouncilSession",
    "DecisionEpoch",
    "DecisionEpochGraph",
    "DecisionRecord",
    "EpochOutcome",
    "EpochPhase",
    "EpochTerminalReason",
    "ErrorCode",
    "Exchange",
    "Executor",
    "FileKeyValueStore",
    "InMemoryKeyValueStore",
    "KeyNotes",
    "KeyValueStore",
    "ParsedBlock",
    "ProjectLoopGraph",
    "ProjectOutcome",
    "ProjectPhase",
    "ProjectRun",
    "ProjectState",
    "ProjectStore",
    "RunResult",
    "RuntimeSettings",
    "ShellExecutor",
    "apply_ceo_synthesis",
    "get_version",
    "initial_state",
    "parse_advisor_review",
    "parse_ceo_control_block",
    "parse_ceo_verdict",
    "parse_execution_review",
    "reduce",
    "resolve_verdicts",
]
