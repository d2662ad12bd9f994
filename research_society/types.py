"""Type definitions for the research society.

Contains the closed enums, domain dataclasses and TypedDicts shared by
the ledgers, the record store, the tool surface and the scheduler.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    TypedDict,
)


class PublicationStatus(Enum):
    """Lifecycle of a publication. PUBLISHED and REJECTED are terminal."""

    SUBMITTED = "SUBMITTED"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"


class ReviewGrade(Enum):
    """Terminal value of a review. A pending review has no grade."""

    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class AdvisoryKind(Enum):
    """Kinds of notifications pushed to an agent's mailbox."""

    REVIEW_REQUESTED = "review_requested"
    REVIEW_RECEIVED = "review_received"
    PUBLICATION_STATUS_UPDATED = "publication_status_updated"


class ListOrder(Enum):
    """Orderings available when listing published work."""

    LATEST = "latest"
    CITATIONS = "citations"


class RunnerState(Enum):
    """States of one agent's tick loop."""

    IDLE = "idle"
    AWAITING_MODEL_RESPONSE = "awaiting_model_response"
    DISPATCHING_TOOLS = "dispatching_tools"
    PERSISTING = "persisting"
    STOPPED = "stopped"


class StopReason(Enum):
    """Why a run came to an end."""

    COST_CEILING = "cost_ceiling"
    INTERRUPTED = "interrupted"
    ERROR = "error"


@dataclass
class TokenUsage:
    """Token counts reported by a provider for one or more calls."""

    total: int = 0
    input: int = 0
    output: int = 0
    cached: int = 0
    thinking: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            total=self.total + other.total,
            input=self.input + other.input,
            output=self.output + other.output,
            cached=self.cached + other.cached,
            thinking=self.thinking + other.thinking,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "input": self.input,
            "output": self.output,
            "cached": self.cached,
            "thinking": self.thinking,
        }


@dataclass
class Experiment:
    """
    A named research run.

    Attributes:
        id (int): Record store identifier.
        name (str): Unique experiment name.
        problem (str): The research problem statement given to every agent.
        model (str): Model identifier used by all agents.
        agent_count (int): Number of agents, indexed ``0..agent_count-1``.
        profile (str): Sandbox / prompt profile.
        tokens (int): Accumulated total token usage.
    """

    id: int
    name: str
    problem: str
    model: str
    agent_count: int
    profile: str = "research"
    tokens: int = 0
    created: Optional[datetime] = None
    updated: Optional[datetime] = None

    def agent_indices(self) -> List[int]:
        return list(range(self.agent_count))


@dataclass
class Review:
    """A reviewer assignment and, once graded, its outcome."""

    id: int
    experiment: int
    publication: int
    author: int
    grade: Optional[ReviewGrade] = None
    content: Optional[str] = None
    created: Optional[datetime] = None
    updated: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.grade is None


@dataclass
class Citation:
    """Directed edge from a published publication to one it cites."""

    id: int
    experiment: int
    from_publication: int
    to_publication: int


@dataclass
class Publication:
    """
    A submitted artifact gated through peer review.

    Attributes:
        reference (str): Short opaque token locating the content and used
            in citations.
        cited_references (List[str]): Reference tokens found in the content
            at submission, resolved into citations at publish time.
        reviews (List[Review]): The fixed review set.
        citations_from (List[int]): Ids of publications this one cites.
        citations_to (List[int]): Ids of publications citing this one.
    """

    id: int
    experiment: int
    author: int
    title: str
    reference: str
    status: PublicationStatus = PublicationStatus.SUBMITTED
    cited_references: List[str] = field(default_factory=list)
    reviews: List[Review] = field(default_factory=list)
    citations_from: List[int] = field(default_factory=list)
    citations_to: List[int] = field(default_factory=list)
    created: Optional[datetime] = None
    updated: Optional[datetime] = None

    @property
    def citation_count(self) -> int:
        return len(self.citations_to)

    @property
    def pending_reviews(self) -> List[Review]:
        return [r for r in self.reviews if r.is_pending]

    def to_dict(self) -> Dict[str, Any]:
        """Convert the publication to a dictionary representation."""
        return {
            "id": self.id,
            "experiment": self.experiment,
            "author": self.author,
            "title": self.title,
            "reference": self.reference,
            "status": self.status.value,
            "reviews": [
                {
                    "author": r.author,
                    "grade": r.grade.value if r.grade else None,
                }
                for r in self.reviews
            ],
            "citations_count": self.citation_count,
            "created": (
                self.created.isoformat() if self.created else None
            ),
        }


@dataclass
class Solution:
    """An agent's current vote for the best publication."""

    id: int
    experiment: int
    agent: int
    publication: Publication
    created: Optional[datetime] = None
    updated: Optional[datetime] = None


@dataclass
class AdvisoryMessage:
    """
    Transient, per-agent notification about a ledger event.

    ``reviewer_index`` and ``grade`` are set for REVIEW_RECEIVED,
    ``status`` for PUBLICATION_STATUS_UPDATED.
    """

    kind: AdvisoryKind
    publication_reference: str
    publication_title: str
    reviewer_index: Optional[int] = None
    grade: Optional[ReviewGrade] = None
    status: Optional[PublicationStatus] = None

    def render(self) -> str:
        """Return the human-readable text shown to the agent."""
        ref = self.publication_reference
        title = self.publication_title
        if self.kind is AdvisoryKind.REVIEW_REQUESTED:
            return (
                f"[ADVISORY] You have been requested to review "
                f'publication "{title}" (ref: {ref}).'
            )
        if self.kind is AdvisoryKind.REVIEW_RECEIVED:
            grade = self.grade.value if self.grade else "UNKNOWN"
            return (
                f'[ADVISORY] Your publication "{title}" (ref: {ref}) '
                f"received a review from Agent {self.reviewer_index} "
                f"with grade: {grade}."
            )
        status = self.status.value if self.status else "UNKNOWN"
        return (
            f'[ADVISORY] Your publication "{title}" (ref: {ref}) '
            f"has been {status}."
        )


@dataclass
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` is ``None`` when the raw payload could not be parsed.
    """

    id: str
    name: str
    arguments: Optional[Dict[str, Any]] = field(default_factory=dict)
    raw_arguments: str = ""


@dataclass
class ModelResponse:
    """Outcome of one provider call.

    ``message`` is the assistant message in chat-completion format, ready
    to be appended to the history.
    """

    message: Dict[str, Any]
    tool_calls: List[ToolCall]
    token_usage: TokenUsage


@dataclass
class ExecResult:
    """Outcome of a command run inside a sandbox."""

    stdout: str
    stderr: str
    exit_code: int


class ToolResult(TypedDict):
    """Structured outcome of one tool call."""

    tool_call_id: str
    name: str
    is_error: bool
    content: str


class TickResult(TypedDict):
    """Summary of one completed tick."""

    agent_index: int
    tool_calls: int
    advisories: int
    token_usage: Dict[str, int]
