"""
Research Society: a society of autonomous research agents.

Agents backed by language models collaborate on a shared research goal:
they submit findings as publications, peer-review each other's
submissions, cite prior work and vote on the best solution. This package
implements the tick-based scheduler driving each agent, the
publication review state machine, the citation graph, reviewer
assignment, the advisory mailbox and the solution ledger.
"""

__version__ = "0.1.0"
__description__ = "A society of research agents that publish, review and cite each other's work"

from .types import (
    AdvisoryKind,
    AdvisoryMessage,
    Citation,
    Experiment,
    ListOrder,
    Publication,
    PublicationStatus,
    Review,
    ReviewGrade,
    RunnerState,
    Solution,
    StopReason,
    TokenUsage,
)
from .errors import ErrorCode, ResearchError
from .protocols import Computer, ContentStore, LLMProvider
from .advisory import AdvisoryMailbox
from .config import RunConfig
from .content import FileContentStore
from .store import RecordStore
from .publications import PublicationLedger
from .solutions import SolutionLedger
from .provider import LiteLLMProvider
from .runner import Runner
from .controller import RunController, RunOutcome

__all__ = [
    "AdvisoryKind",
    "AdvisoryMessage",
    "Citation",
    "Experiment",
    "ListOrder",
    "Publication",
    "PublicationStatus",
    "Review",
    "ReviewGrade",
    "RunnerState",
    "Solution",
    "StopReason",
    "TokenUsage",
    "ErrorCode",
    "ResearchError",
    "Computer",
    "ContentStore",
    "LLMProvider",
    "AdvisoryMailbox",
    "RunConfig",
    "FileContentStore",
    "RecordStore",
    "PublicationLedger",
    "SolutionLedger",
    "LiteLLMProvider",
    "Runner",
    "RunController",
    "RunOutcome",
    "__version__",
    "__description__",
]
