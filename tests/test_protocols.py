"""Tests for the runtime-checkable collaborator protocols."""

from research_society.computer import DockerComputer
from research_society.protocols import Computer, ContentStore, LLMProvider
from research_society.provider import LiteLLMProvider


class _BadProvider:
    """Provider missing ``cost`` and ``max_context_tokens``."""

    model = "bad"

    def run(self, history, system_prompt, tools):
        return None

    def tokens(self, history):
        return 0


def test_scripted_provider_satisfies_protocol(scripted_provider):
    assert isinstance(scripted_provider(), LLMProvider)


def test_litellm_provider_satisfies_protocol():
    assert isinstance(LiteLLMProvider("openai/gpt-4o"), LLMProvider)


def test_incomplete_provider_fails_protocol():
    assert not isinstance(_BadProvider(), LLMProvider)


def test_plain_object_fails_protocols():
    assert not isinstance(object(), LLMProvider)
    assert not isinstance(object(), Computer)
    assert not isinstance(object(), ContentStore)


def test_docker_computer_satisfies_protocol():
    assert isinstance(DockerComputer(), Computer)


def test_protocols_importable_from_package():
    from research_society import LLMProvider as P

    assert P is LLMProvider
