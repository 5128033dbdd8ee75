from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Agent(str, Enum):
    GPT = "gpt"
    CLAUDE = "claude"
    GEMINI = "gemini"

    @property
    def label(self) -> str:
        return AGENT_LABELS[self]


AGENT_LABELS: dict[Agent, str] = {
    Agent.GPT: "GPT",
    Agent.CLAUDE: "Claude",
    Agent.GEMINI: "Gemini",
}

# Order used when folding responses into the transcript.
AGENT_DISPLAY_ORDER: tuple[Agent, ...] = (Agent.GPT, Agent.CLAUDE, Agent.GEMINI)

# Advisors speak in this order; the CEO is removed and appended last.
ADVISOR_PRIORITY: tuple[Agent, ...] = (Agent.GEMINI, Agent.CLAUDE, Agent.GPT)


class BrainMode(str, Enum):
    DISCUSSION = "discussion"
    DECISION = "decision"
    PROJECT = "project"


class AgentStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class ErrorCode(str, Enum):
    NETWORK = "network"
    API = "api"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


class WarningType(str, Enum):
    CONTEXT_LIMIT = "context_limit"
    EXCHANGE_LIMIT = "exchange_limit"
    TIMEOUT_WARNING = "timeout_warning"


class EpochPhase(str, Enum):
    IDLE = "IDLE"
    ADVISORS = "ADVISORS"
    CEO_DRAFT = "CEO_DRAFT"
    ADVISOR_REVIEW = "ADVISOR_REVIEW"
    CEO_FINAL = "CEO_FINAL"
    EPOCH_COMPLETE = "EPOCH_COMPLETE"
    EPOCH_BLOCKED = "EPOCH_BLOCKED"
    EPOCH_STOPPED = "EPOCH_STOPPED"


EPOCH_TERMINAL_PHASES: frozenset[EpochPhase] = frozenset(
    {EpochPhase.EPOCH_COMPLETE, EpochPhase.EPOCH_BLOCKED, EpochPhase.EPOCH_STOPPED}
)


class EpochTerminalReason(str, Enum):
    PROMPT_DELIVERED = "prompt_delivered"
    BLOCKED = "blocked"
    STOPPED = "stopped"
    CANCELLED = "cancelled"


class ProjectPhase(str, Enum):
    INTENT_RECEIVED = "INTENT_RECEIVED"
    DELIBERATION = "DELIBERATION"
    CONSENSUS_DRAFT = "CONSENSUS_DRAFT"
    CEO_GATE = "CEO_GATE"
    CLAUDE_CODE_EXECUTION = "CLAUDE_CODE_EXECUTION"
    REVIEW = "REVIEW"
    USER_BUILD_GATE = "USER_BUILD_GATE"
    DONE = "DONE"
    FAILED_REQUIRES_USER_DIRECTION = "FAILED_REQUIRES_USER_DIRECTION"


PROJECT_TERMINAL_PHASES: frozenset[ProjectPhase] = frozenset(
    {ProjectPhase.DONE, ProjectPhase.FAILED_REQUIRES_USER_DIRECTION}
)


class LoopState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_LOOP_STATES: frozenset[LoopState] = frozenset({LoopState.RUNNING, LoopState.PAUSED})


class InterruptSeverity(str, Enum):
    BLOCKER = "blocker"
    IMPROVEMENT = "improvement"


class ControlBlockKind(str, Enum):
    FINAL = "final"
    STOP = "stop"
    DRAFT = "draft"
    BLOCKED = "blocked"
    NONE = "none"


class VerdictSource(str, Enum):
    CEO_REVIEW = "ceo_review"
    CONSENSUS = "consensus"
    CEO_SYNTHESIS = "ceo_synthesis"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    DONE = "done"


EPOCH_DEFAULT_MAX_ROUNDS = 2
EPOCH_ABSOLUTE_MAX_ROUNDS = 3
PROJECT_MAX_REVISIONS = 2
SCHEMA_VERSION = 1
CARRYOVER_MAX_EXCHANGES = 10


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class _Snapshot(BaseModel):
    """Immutable base for every state snapshot and persisted record."""

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Sequencing records
# ---------------------------------------------------------------------------


class AgentResponse(_Snapshot):
    """One agent's outcome for a run.

    The status set is closed. ``success`` guarantees content, ``error``
    requires an error classification, and no other status may carry one.
    """

    agent: Agent
    status: AgentStatus
    timestamp: datetime = Field(default_factory=utc_now)
    content: str | None = None
    error_code: ErrorCode | None = None
    error_message: str | None = None

    @model_validator(mode="after")
    def _check_variant(self) -> "AgentResponse":
        if self.status == AgentStatus.SUCCESS and self.content is None:
            raise ValueError("success responses must carry content")
        if self.status == AgentStatus.ERROR and self.error_code is None:
            raise ValueError("error responses must carry an error_code")
        if self.status != AgentStatus.ERROR and self.error_code is not None:
            raise ValueError(f"error_code is only valid on error responses, got status={self.status.value}")
        return self

    @classmethod
    def success(cls, agent: Agent, content: str) -> "AgentResponse":
        return cls(agent=agent, status=AgentStatus.SUCCESS, content=content)

    @classmethod
    def error(cls, agent: Agent, code: ErrorCode, message: str) -> "AgentResponse":
        return cls(agent=agent, status=AgentStatus.ERROR, error_code=code, error_message=message)

    @classmethod
    def terminal(cls, agent: Agent, status: AgentStatus, content: str | None = None) -> "AgentResponse":
        return cls(agent=agent, status=status, content=content)


class WarningState(_Snapshot):
    type: WarningType
    message: str
    dismissable: bool = True


class PendingRun(_Snapshot):
    run_id: str
    user_prompt: str
    responses_by_agent: dict[Agent, AgentResponse] = Field(default_factory=dict)


class Exchange(_Snapshot):
    id: str
    user_prompt: str
    responses_by_agent: dict[Agent, AgentResponse]
    timestamp: datetime


class TranscriptEntry(_Snapshot):
    id: str
    exchange_id: str
    role: Literal["user", "gpt", "claude", "gemini"]
    content: str
    timestamp: datetime


class DiscussionSession(_Snapshot):
    id: str
    created_at: datetime
    last_updated_at: datetime
    exchange_count: int = 0
    schema_version: int = SCHEMA_VERSION

    @classmethod
    def start(cls) -> "DiscussionSession":
        now = utc_now()
        return cls(id=new_id("session"), created_at=now, last_updated_at=now)


class KeyNotes(_Snapshot):
    decisions: tuple[str, ...] = ()
    reasoning_chains: tuple[str, ...] = ()
    agreements: tuple[str, ...] = ()
    constraints: tuple[str, ...] = ()
    open_questions: tuple[str, ...] = ()


class SystemMessage(_Snapshot):
    id: str
    type: Literal["compaction"] = "compaction"
    message: str
    timestamp: datetime


# ---------------------------------------------------------------------------
# Decision epoch and project run
# ---------------------------------------------------------------------------


class DecisionEpoch(_Snapshot):
    epoch_id: int
    round: int
    phase: EpochPhase
    max_rounds: int = EPOCH_DEFAULT_MAX_ROUNDS
    intent: str
    ceo_agent: Agent
    ceo_only_mode: bool = False
    started_at: datetime
    completed_at: datetime | None = None
    terminal_reason: EpochTerminalReason | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in EPOCH_TERMINAL_PHASES


class Interrupt(_Snapshot):
    id: str
    message: str
    severity: InterruptSeverity
    scope: str
    timestamp: datetime
    processed: bool = False


class ProjectRun(_Snapshot):
    phase: ProjectPhase
    epoch_id: int
    micro_epoch_id: int = 1
    revision_count: int = 0
    interrupts: tuple[Interrupt, ...] = ()
    last_intent: str
    ceo_prompt_artifact: str | None = None
    executor_output: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in PROJECT_TERMINAL_PHASES

    @property
    def pending_blockers(self) -> tuple[Interrupt, ...]:
        return tuple(
            item for item in self.interrupts if item.severity == InterruptSeverity.BLOCKER and not item.processed
        )


class CeoPromptArtifact(_Snapshot):
    text: str
    version: int
    created_at: datetime


# ---------------------------------------------------------------------------
# Protocol parse results
# ---------------------------------------------------------------------------


class ParsedBlock(_Snapshot):
    """Generic result of a marker-grammar parse.

    ``raw_text`` is always the full input. ``scalars`` and ``lists`` are
    populated only when the block is valid.
    """

    grammar: str
    valid: bool
    errors: tuple[str, ...] = ()
    raw_text: str
    decision: str | None = None
    scalars: dict[str, str] = Field(default_factory=dict)
    lists: dict[str, tuple[str, ...]] = Field(default_factory=dict)

    def scalar(self, label: str) -> str | None:
        return self.scalars.get(label)

    def list_items(self, label: str) -> tuple[str, ...]:
        return self.lists.get(label, ())


class CeoControlBlock(_Snapshot):
    kind: ControlBlockKind
    prompt_text: str | None = None
    draft_text: str | None = None
    blocked_questions: tuple[str, ...] = ()
    display_content: str


class VerdictResolution(_Snapshot):
    resolved: bool
    verdict: str | None = None
    source: VerdictSource | None = None


# ---------------------------------------------------------------------------
# Durable records
# ---------------------------------------------------------------------------


class Carryover(_Snapshot):
    schema_version: Literal[1] = SCHEMA_VERSION
    from_session_id: str
    created_at: datetime
    key_notes: KeyNotes | None = None
    last_exchanges: tuple[Exchange, ...] = Field(default=(), max_length=CARRYOVER_MAX_EXCHANGES)


class ProjectMemory(_Snapshot):
    recent_exchanges: tuple[Exchange, ...] = Field(default=(), max_length=CARRYOVER_MAX_EXCHANGES)
    key_notes: KeyNotes | None = None


class DecisionRecord(_Snapshot):
    id: str
    created_at: datetime
    mode: BrainMode
    epoch_id: int | None = None
    terminal_reason: EpochTerminalReason | None = None
    prompt_produced: bool
    prompt_text: str | None = None
    blocked: bool
    blocked_questions: tuple[str, ...] = ()
    ceo_agent: Agent
    advisors: tuple[Agent, ...]
    recent_exchanges: tuple[Exchange, ...] = Field(default=(), max_length=CARRYOVER_MAX_EXCHANGES)
    fingerprint: str = ""


class ProjectState(_Snapshot):
    id: str
    created_at: datetime
    updated_at: datetime
    title: str | None = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    decisions: tuple[DecisionRecord, ...] = ()
    project_memory: ProjectMemory = Field(default_factory=ProjectMemory)
    last_decision_id: str | None = None
    schema_version: Literal[1] = SCHEMA_VERSION


# ---------------------------------------------------------------------------
# Root snapshot
# ---------------------------------------------------------------------------


class BrainState(_Snapshot):
    """The single authoritative snapshot owned by a council session.

    Every field is replaced, never mutated, by ``reducer.reduce``.
    """

    mode: BrainMode = BrainMode.DISCUSSION

    exchanges: tuple[Exchange, ...] = ()
    pending_run: PendingRun | None = None
    current_agent: Agent | None = None
    is_processing: bool = False
    user_cancelled: bool = False
    warning: WarningState | None = None
    error: str | None = None
    clear_generation: int = 0

    discussion_session: DiscussionSession | None = None
    transcript: tuple[TranscriptEntry, ...] = ()
    key_notes: KeyNotes | None = None
    system_messages: tuple[SystemMessage, ...] = ()

    active_project_id: str | None = None
    decision_epoch: DecisionEpoch | None = None
    last_epoch_id: int = 0

    project_run: ProjectRun | None = None
    loop_state: LoopState = LoopState.IDLE
    ceo_execution_prompt: str | None = None
    result_artifact: str | None = None
