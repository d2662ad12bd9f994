"""Shared pytest fixtures for the research society test suite.

Tests NEVER call real LLMs or docker: the provider is a scripted stub
satisfying LLMProvider, and litellm / subprocess are patched where the
real adapters are exercised.
"""

import random
from typing import Any, Callable, Dict, List, Sequence, Tuple, Union

import pytest

from research_society.advisory import AdvisoryMailbox
from research_society.content import FileContentStore
from research_society.publications import PublicationLedger
from research_society.solutions import SolutionLedger
from research_society.store import RecordStore
from research_society.tools import ToolContext
from research_society.types import (
    ModelResponse,
    Publication,
    TokenUsage,
    ToolCall,
)


def build_response(
    *calls: Tuple[str, Dict[str, Any]],
    content: str = "",
    tokens: int = 100,
) -> ModelResponse:
    """Build a ModelResponse requesting the given (name, arguments) calls."""
    tool_calls = [
        ToolCall(id=f"call_{i}", name=name, arguments=args)
        for i, (name, args) in enumerate(calls)
    ]
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": c.id,
                "type": "function",
                "function": {"name": c.name, "arguments": "{}"},
            }
            for c in tool_calls
        ]
    return ModelResponse(
        message=message,
        tool_calls=tool_calls,
        token_usage=TokenUsage(
            total=tokens, input=tokens // 2, output=tokens - tokens // 2
        ),
    )


Script = Union[ModelResponse, Exception, Callable[[], ModelResponse]]


class ScriptedProvider:
    """LLMProvider stub replaying a fixed list of responses.

    Once the script is exhausted it keeps answering with a plain text
    response. Each dollar costs a million tokens.
    """

    def __init__(
        self,
        script: Sequence[Script] = (),
        model: str = "test-model",
        context_tokens: int = 100_000,
    ) -> None:
        self.model = model
        self.script: List[Script] = list(script)
        self.calls: List[Dict[str, Any]] = []
        self.context_tokens = context_tokens

    def run(self, history, system_prompt, tools) -> ModelResponse:
        self.calls.append(
            {
                "history": list(history),
                "system_prompt": system_prompt,
                "tools": tools,
            }
        )
        if not self.script:
            return build_response(content="thinking")
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step()
        return step

    def tokens(self, history) -> int:
        return 10 * len(history)

    def cost(self, usages: Sequence[TokenUsage]) -> float:
        return sum(u.total for u in usages) / 1_000_000

    def max_context_tokens(self) -> int:
        return self.context_tokens


@pytest.fixture
def make_response():
    """Builder of scripted model responses."""
    return build_response


@pytest.fixture
def scripted_provider():
    """The scripted provider class; call it with a list of steps."""
    return ScriptedProvider


@pytest.fixture
def store():
    """In-memory record store."""
    s = RecordStore("sqlite://")
    yield s
    s.dispose()


@pytest.fixture
def content(tmp_path):
    return FileContentStore(tmp_path / "content")


@pytest.fixture
def experiment(store):
    """Three-agent experiment."""
    return store.create_experiment(
        "test-exp", "Find a proof of the lemma.", "test-model", 3
    )


@pytest.fixture
def mailbox(experiment):
    box = AdvisoryMailbox()
    box.init(experiment.agent_indices())
    return box


@pytest.fixture
def ledger(store, content, mailbox):
    """Publication ledger assigning both non-authors as reviewers."""
    return PublicationLedger(
        store, content, mailbox, reviewer_count=2, rng=random.Random(0)
    )


@pytest.fixture
def solutions(store):
    return SolutionLedger(store)


@pytest.fixture
def make_ctx(experiment, ledger, solutions, content):
    """Factory building a ToolContext for an agent index."""

    def _make(agent_index: int, computers=None) -> ToolContext:
        return ToolContext(
            experiment=experiment,
            agent_index=agent_index,
            publications=ledger,
            solutions=solutions,
            content=content,
            computers=computers,
        )

    return _make


@pytest.fixture
def publish(ledger, experiment):
    """Submit a publication and have every reviewer accept it."""

    def _publish(
        author: int, title: str, body: str = "Body."
    ) -> Publication:
        pub = ledger.submit(experiment, author, title, body)
        for review in pub.reviews:
            ledger.submit_review(
                experiment, pub.reference, review.author, "ACCEPT", "ok"
            )
        return ledger.get(experiment, pub.reference)

    return _publish
