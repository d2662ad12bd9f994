"""Tests for the tick scheduler."""

import pytest

from research_society.config import RunConfig
from research_society.errors import ModelError, SchedulerError
from research_society.prompts import get_continue_prompt, get_kickoff_prompt
from research_society.runner import Runner, fit_context
from research_society.tools import ToolRegistry
from research_society.types import RunnerState, TokenUsage


@pytest.fixture
def registry():
    return ToolRegistry.for_config(RunConfig(reviewers=2))


@pytest.fixture
def make_runner(make_ctx, store, registry, mailbox):
    def _make(agent_index, provider):
        return Runner(
            make_ctx(agent_index),
            provider,
            store,
            registry,
            mailbox,
            "system prompt",
        )

    return _make


# -- fit_context ---------------------------------------------------------


def test_fit_context_keeps_short_history(scripted_provider):
    history = [{"role": "user", "content": "go"}]
    assert fit_context(history, scripted_provider(), 100) == history


def test_fit_context_drops_oldest_exchange(scripted_provider):
    history = [
        {"role": "user", "content": "go"},
        {"role": "assistant", "content": "a1"},
        {"role": "tool", "content": "t1"},
        {"role": "assistant", "content": "a2"},
        {"role": "tool", "content": "t2"},
        {"role": "assistant", "content": "a3"},
    ]
    # the scripted provider counts 10 tokens per message
    fitted = fit_context(history, scripted_provider(), 40)
    assert fitted == [history[0]] + history[3:]


def test_fit_context_never_drops_first_message(scripted_provider):
    history = [
        {"role": "user", "content": "go"},
        {"role": "assistant", "content": "a1"},
        {"role": "assistant", "content": "a2"},
    ]
    fitted = fit_context(history, scripted_provider(), 0)
    assert fitted[0] == history[0]
    assert len(fitted) == 2


def test_fit_context_stops_without_exchange_boundary(scripted_provider):
    history = [
        {"role": "user", "content": "go"},
        {"role": "assistant", "content": "a1"},
        {"role": "tool", "content": "t1"},
    ]
    assert fit_context(history, scripted_provider(), 0) == history


# -- ticks ---------------------------------------------------------------


def test_requires_llm_provider(make_runner):
    with pytest.raises(TypeError):
        make_runner(0, object())


def test_first_tick_sends_kickoff(make_runner, registry, scripted_provider):
    provider = scripted_provider()
    runner = make_runner(0, provider)
    runner.tick()

    [call] = provider.calls
    assert call["system_prompt"] == "system prompt"
    assert call["tools"] == registry.definitions()
    assert call["history"] == [
        {"role": "user", "content": get_kickoff_prompt()}
    ]
    assert [m["role"] for m in runner.history] == ["user", "assistant"]
    assert runner.state is RunnerState.IDLE


def test_tick_dispatches_and_persists_tool_results(
    make_runner, store, experiment, scripted_provider, make_response
):
    provider = scripted_provider(
        [
            make_response(
                (
                    "publications-submit_publication",
                    {"title": "Lemma", "content": "A proof."},
                ),
                ("publications-list_publications", {}),
                tokens=300,
            )
        ]
    )
    runner = make_runner(0, provider)
    result = runner.tick()

    assert result["tool_calls"] == 2
    assert result["token_usage"]["total"] == 300
    history = store.list_messages(experiment.id, 0)
    assert history == runner.history
    assert [m["role"] for m in history] == ["user", "assistant", "tool", "tool"]
    assert history[2]["tool_call_id"] == "call_0"
    assert history[2]["name"] == "publications-submit_publication"
    assert history[2]["content"] == "Publication submitted."
    assert history[3]["content"] == "(0 found)"

    assert store.token_usage(experiment.id, 0) == TokenUsage(
        total=300, input=150, output=150
    )
    assert store.find_experiment(experiment.id).tokens == 300


def test_tick_after_tool_results_adds_no_prompt(
    make_runner, scripted_provider, make_response
):
    provider = scripted_provider(
        [make_response(("publications-list_publications", {}))]
    )
    runner = make_runner(0, provider)
    runner.tick()
    runner.tick()
    assert [m["role"] for m in provider.calls[1]["history"]] == [
        "user",
        "assistant",
        "tool",
    ]


def test_tick_after_text_response_continues(make_runner, scripted_provider):
    provider = scripted_provider()
    runner = make_runner(0, provider)
    runner.tick()
    runner.tick()
    assert provider.calls[1]["history"][-1] == {
        "role": "user",
        "content": get_continue_prompt(),
    }


def test_advisories_are_delivered_once(
    make_runner, ledger, experiment, scripted_provider
):
    pub = ledger.submit(experiment, 0, "Lemma", "A proof.")
    provider = scripted_provider()
    runner = make_runner(1, provider)

    result = runner.tick()
    assert result["advisories"] == 1
    prompt = provider.calls[0]["history"][0]["content"]
    assert prompt.startswith(get_kickoff_prompt())
    assert f"(ref: {pub.reference})" in prompt

    assert runner.tick()["advisories"] == 0


def test_advisories_after_tool_results_get_their_own_turn(
    make_runner, ledger, experiment, scripted_provider, make_response
):
    provider = scripted_provider(
        [make_response(("publications-list_publications", {}))]
    )
    runner = make_runner(1, provider)
    runner.tick()
    ledger.submit(experiment, 0, "Lemma", "A proof.")
    runner.tick()
    last = provider.calls[1]["history"][-1]
    assert last["role"] == "user"
    assert last["content"].startswith("[ADVISORY]")


def test_provider_error_stops_runner(
    make_runner, store, experiment, scripted_provider
):
    provider = scripted_provider([ModelError("boom")])
    runner = make_runner(0, provider)
    with pytest.raises(ModelError):
        runner.tick()
    assert runner.state is RunnerState.STOPPED
    # no orphan assistant message is persisted
    assert [m["role"] for m in store.list_messages(experiment.id, 0)] == [
        "user"
    ]
    with pytest.raises(SchedulerError):
        runner.tick()


def test_tool_errors_do_not_stop_runner(
    make_runner, scripted_provider, make_response
):
    provider = scripted_provider(
        [make_response(("publications-get_publication", {"reference": "x"}))]
    )
    runner = make_runner(0, provider)
    runner.tick()
    assert runner.state is RunnerState.IDLE
    assert runner.history[-1]["content"].startswith("Error [not_found_error]")


def test_runner_resumes_history(make_runner, scripted_provider):
    first = make_runner(0, scripted_provider())
    first.tick()
    provider = scripted_provider()
    second = make_runner(0, provider)
    assert second.history == first.history
    second.tick()
    assert len(provider.calls[0]["history"]) == 3


def test_stop(make_runner, scripted_provider):
    runner = make_runner(0, scripted_provider())
    runner.stop()
    assert runner.state is RunnerState.STOPPED
    with pytest.raises(SchedulerError):
        runner.tick()
