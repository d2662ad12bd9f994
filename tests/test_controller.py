"""Tests for RunController: concurrent loops, cost ceiling and teardown."""

from unittest.mock import MagicMock

import pytest

from research_society.config import RunConfig
from research_society.controller import COST_CHECK_INTERVAL, RunController
from research_society.errors import ModelError, NotFoundError
from research_society.types import StopReason, TokenUsage


@pytest.fixture
def make_controller(experiment, store, content, scripted_provider):
    def _make(factory=None, config=None, **kwargs):
        return RunController(
            experiment,
            store,
            content,
            config or RunConfig(reviewers=2),
            provider_factory=factory or scripted_provider,
            **kwargs,
        )

    return _make


@pytest.fixture
def solo(store, content, scripted_provider):
    """Controller of a one-agent experiment, so ticks run in sequence."""
    experiment = store.create_experiment("solo", "Prove it.", "test-model", 1)
    return RunController(
        experiment,
        store,
        content,
        RunConfig(reviewers=0),
        provider_factory=scripted_provider,
    )


def _count_cost_reads(controller, monkeypatch):
    reads = []
    read_cost = controller.cost

    def counting():
        reads.append(controller._ticks)
        return read_cost()

    monkeypatch.setattr(controller, "cost", counting)
    return reads


# -- cost ceiling --------------------------------------------------------


def test_cost_ceiling_stops_every_agent(make_controller, store, experiment):
    controller = make_controller()
    # 100 tokens per tick at a dollar per million tokens
    outcome = controller.run_all(max_cost=0.0005)

    assert outcome.reason is StopReason.COST_CEILING
    assert outcome.error is None
    assert outcome.ticks >= COST_CHECK_INTERVAL
    assert outcome.cost > 0.0005
    assert controller.stopped
    for idx in experiment.agent_indices():
        assert store.list_messages(experiment.id, idx)


@pytest.mark.parametrize(
    "max_cost, reads_at",
    [
        # stays under 95% of the ceiling until it is passed
        (0.0045, [0, 20, 40, 60]),
        # 0.0020 at tick 20 is within 95% of 0.00205: read every tick
        (0.00205, [0, 20, 21]),
    ],
)
def test_cost_read_cadence(solo, monkeypatch, max_cost, reads_at):
    reads = _count_cost_reads(solo, monkeypatch)
    outcome = solo.run_all(max_cost=max_cost)

    assert outcome.reason is StopReason.COST_CEILING
    assert outcome.ticks == reads_at[-1]
    # the last read builds the outcome
    assert reads == reads_at + [reads_at[-1]]


def test_resume_over_ceiling_runs_no_tick(
    solo, store, monkeypatch, scripted_provider
):
    message_id = store.append_message(
        solo.experiment.id, 0, {"role": "user", "content": "earlier run"}
    )
    store.log_token_usage(
        solo.experiment.id,
        0,
        message_id,
        TokenUsage(total=2000, input=1000, output=1000),
    )
    providers = []

    def factory():
        provider = scripted_provider()
        providers.append(provider)
        return provider

    solo._provider_factory = factory
    outcome = solo.run_all(max_cost=0.001)

    assert outcome.reason is StopReason.COST_CEILING
    assert outcome.ticks == 0
    assert outcome.cost == pytest.approx(0.002)
    assert all(not p.calls for p in providers)
    assert len(store.list_messages(solo.experiment.id, 0)) == 1


def test_cost_is_not_read_without_ceiling(solo, monkeypatch):
    reads = _count_cost_reads(solo, monkeypatch)
    solo.tick_once(0)
    assert reads == []


# -- stopping ------------------------------------------------------------


def test_stop_ends_run_as_interrupted(
    make_controller, scripted_provider, make_response
):
    holder = {}

    def stop_then_answer():
        holder["controller"].stop()
        return make_response(content="done")

    controller = make_controller(
        factory=lambda: scripted_provider([stop_then_answer])
    )
    holder["controller"] = controller
    outcome = controller.run_all()
    assert outcome.reason is StopReason.INTERRUPTED
    assert outcome.ticks >= 1


def test_error_in_one_loop_stops_the_run(make_controller, scripted_provider):
    controller = make_controller(
        factory=lambda: scripted_provider([ModelError("provider down")])
    )
    outcome = controller.run_all(max_cost=10.0)
    assert outcome.reason is StopReason.ERROR
    assert isinstance(outcome.error, ModelError)
    assert outcome.ticks == 0
    assert controller.stopped


def test_run_all_rejects_non_positive_cost(make_controller):
    with pytest.raises(ValueError):
        make_controller().run_all(max_cost=0)


# -- single tick and queries ---------------------------------------------


def test_tick_once(make_controller, store, experiment):
    controller = make_controller()
    result = controller.tick_once(1)
    assert result["agent_index"] == 1
    assert len(store.list_messages(experiment.id, 1)) == 2
    assert store.list_messages(experiment.id, 0) == []


def test_tick_once_rejects_unknown_agent(make_controller):
    with pytest.raises(ValueError):
        make_controller().tick_once(3)


def test_cost_reads_token_usage(make_controller):
    controller = make_controller()
    assert controller.cost() == 0.0
    controller.tick_once(0)
    assert controller.cost() == pytest.approx(100 / 1_000_000)


def test_for_experiment(store, content, experiment, scripted_provider):
    controller = RunController.for_experiment(
        "test-exp", store, content, provider_factory=scripted_provider
    )
    assert controller.config.reviewers == 2
    assert controller.publications.reviewer_count == 2
    with pytest.raises(NotFoundError):
        RunController.for_experiment("missing", store, content)


def test_votes_are_tallied(make_controller, experiment):
    controller = make_controller()
    ledger = controller.publications

    def publish(author, title):
        pub = ledger.submit(experiment, author, title, "Body.")
        for review in pub.reviews:
            ledger.submit_review(
                experiment, pub.reference, review.author, "ACCEPT", "ok"
            )
        return pub

    first = publish(0, "First")
    second = publish(1, "Second")
    controller.solutions.vote(experiment.id, 0, second.id)
    controller.solutions.vote(experiment.id, 1, second.id)
    controller.solutions.vote(experiment.id, 2, first.id)

    votes = controller.votes()
    assert list(votes) == [second.id, first.id]
    assert sorted(votes[second.id]) == [0, 1]
    assert votes[first.id] == [2]


# -- computer ------------------------------------------------------------


@pytest.fixture
def computer():
    mock = MagicMock()
    mock.build_image.return_value = "agent-computer:research"
    mock.create.side_effect = lambda computer_id, image: computer_id
    return mock


def test_computer_tool_enables_pool(make_controller, computer):
    controller = make_controller(
        config=RunConfig(reviewers=2, tools=["computer"]), computer=computer
    )
    names = [d["function"]["name"] for d in controller.registry.definitions()]
    assert "computer-execute" in names
    assert "publications-download_publication_attachments" in names


def test_copy_to_computers(make_controller, computer, tmp_path):
    data = tmp_path / "data.txt"
    data.write_text("x")
    controller = make_controller(
        config=RunConfig(reviewers=2, tools=["computer"]), computer=computer
    )
    controller.copy_to_computers([data])
    assert computer.copy_in.call_count == 3
    assert computer.build_image.call_count == 1


def test_copy_to_computers_requires_computer(make_controller, tmp_path):
    with pytest.raises(ValueError):
        make_controller().copy_to_computers([tmp_path])


def test_teardown_stops_computers(
    make_controller, computer, scripted_provider, make_response
):
    provider = scripted_provider(
        [make_response(("computer-execute", {"cmd": "ls"}))]
    )
    computer.execute.return_value = MagicMock(
        stdout="file", stderr="", exit_code=0
    )
    controller = make_controller(
        factory=lambda: provider,
        config=RunConfig(reviewers=2, tools=["computer"]),
        computer=computer,
    )
    controller.tick_once(0)
    computer.execute.assert_called_once()
    computer.stop.assert_called_once_with("research-test-exp-0")
