"""Protocol definitions for the external collaborators.

The scheduler and ledgers depend only on these interfaces, so a provider,
content store or sandbox can be swapped (or stubbed in tests) without
touching the coordination logic. Any object exposing the listed methods
satisfies the protocol.
"""

from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from .types import ExecResult, ModelResponse, TokenUsage


@runtime_checkable
class LLMProvider(Protocol):
    """Uniform contract over every language-model vendor.

    Attributes:
        model: Model identifier the provider talks to.
    """

    model: str

    def run(
        self,
        history: List[Dict[str, Any]],
        system_prompt: str,
        tools: List[Dict[str, Any]],
    ) -> ModelResponse:
        """Run one completion over *history*. Raises on failure."""
        ...

    def tokens(self, history: List[Dict[str, Any]]) -> int:
        """Approximate token count of *history*."""
        ...

    def cost(self, usages: Sequence[TokenUsage]) -> float:
        """Dollar cost of the given token usages."""
        ...

    def max_context_tokens(self) -> int:
        ...


@runtime_checkable
class ContentStore(Protocol):
    """Stores publication content addressed by reference token."""

    def write(self, reference: str, content: str) -> None:
        ...

    def read(self, reference: str) -> Optional[str]:
        ...

    def exists(self, reference: str) -> bool:
        ...

    def discard(self, experiment_id: int, reference: str) -> None:
        """Delete the content and attachments stored under *reference*."""
        ...


@runtime_checkable
class Computer(Protocol):
    """Sandboxed execution environment an agent issues commands into."""

    def build_image(self, profile: str) -> str:
        ...

    def create(self, computer_id: str, image: str) -> str:
        """Create (or reattach to) a sandbox and return its handle."""
        ...

    def execute(
        self,
        handle: str,
        command: str,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        ...

    def copy_in(
        self,
        handle: str,
        local_path: Path,
        remote_dir: Optional[str] = None,
    ) -> None:
        ...

    def copy_out(
        self, handle: str, remote_path: str, local_path: Path
    ) -> None:
        ...

    def stop(self, handle: str) -> None:
        ...

    def terminate(self, handle: str) -> None:
        ...
