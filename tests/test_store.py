"""Tests for the SQLAlchemy record store."""

import threading

import pytest

from research_society.errors import ResourceCreationError, ValidationError
from research_society.store import RecordStore
from research_society.types import (
    ListOrder,
    PublicationStatus,
    ReviewGrade,
    TokenUsage,
)


def _publication(store, experiment, reference, author=0, reviewers=(1,)):
    return store.create_publication(
        experiment.id, author, f"Title {reference}", reference, reviewers
    )


# -- experiments ---------------------------------------------------------


def test_create_and_find_experiment(store, experiment):
    assert experiment.id is not None
    assert experiment.agent_indices() == [0, 1, 2]
    found = store.find_experiment_by_name("test-exp")
    assert found.id == experiment.id
    assert found.problem == "Find a proof of the lemma."
    assert store.find_experiment(experiment.id).name == "test-exp"


def test_experiment_name_is_unique(store, experiment):
    with pytest.raises(ResourceCreationError, match="already exists"):
        store.create_experiment("test-exp", "p", "m", 2)


def test_find_missing_experiment(store):
    assert store.find_experiment_by_name("nope") is None
    assert store.find_experiment(999) is None


def test_list_experiments(store, experiment):
    store.create_experiment("other", "p", "m", 2)
    names = {e.name for e in store.list_experiments()}
    assert names == {"test-exp", "other"}


def test_add_experiment_tokens(store, experiment):
    store.add_experiment_tokens(experiment.id, 100)
    updated = store.add_experiment_tokens(experiment.id, 50)
    assert updated.tokens == 150


def test_delete_experiment_cascades(store, experiment):
    pub = _publication(store, experiment, "aaaaaa")
    store.grade_review(pub.id, 1, ReviewGrade.ACCEPT, "ok")
    store.finalize_publication(pub.id, PublicationStatus.PUBLISHED)
    store.upsert_solution(experiment.id, 2, pub.id)
    mid = store.append_message(experiment.id, 0, {"role": "user"})
    store.log_token_usage(experiment.id, 0, mid, TokenUsage(total=5))

    store.delete_experiment(experiment.id)

    assert store.find_experiment(experiment.id) is None
    assert store.list_publications(experiment.id) == []
    assert store.list_solutions(experiment.id) == []
    assert store.list_messages(experiment.id, 0) == []
    assert store.token_usage(experiment.id).total == 0


# -- publications --------------------------------------------------------


def test_create_publication_with_reviews(store, experiment):
    pub = store.create_publication(
        experiment.id, 0, "T", "abc123", [1, 2], ["def456"]
    )
    assert pub.status is PublicationStatus.SUBMITTED
    assert sorted(r.author for r in pub.reviews) == [1, 2]
    assert all(r.is_pending for r in pub.reviews)
    assert pub.cited_references == ["def456"]


def test_reference_unique_per_experiment(store, experiment):
    _publication(store, experiment, "abc123")
    assert store.reference_exists(experiment.id, "abc123")
    with pytest.raises(ResourceCreationError):
        _publication(store, experiment, "abc123")


def test_find_publications_by_references(store, experiment):
    _publication(store, experiment, "aaaaaa")
    _publication(store, experiment, "bbbbbb")
    found = store.find_publications_by_references(
        experiment.id, ["aaaaaa", "zzzzzz"]
    )
    assert [p.reference for p in found] == ["aaaaaa"]
    assert store.find_publications_by_references(experiment.id, []) == []


def test_grade_review_once(store, experiment):
    pub = _publication(store, experiment, "aaaaaa")
    review = store.grade_review(pub.id, 1, ReviewGrade.REJECT, "no")
    assert review.grade is ReviewGrade.REJECT
    assert review.content == "no"
    with pytest.raises(ValidationError):
        store.grade_review(pub.id, 1, ReviewGrade.ACCEPT, "yes")


def test_grade_review_unassigned_reviewer(store, experiment):
    pub = _publication(store, experiment, "aaaaaa")
    with pytest.raises(ValidationError):
        store.grade_review(pub.id, 2, ReviewGrade.ACCEPT, "ok")


def test_list_review_requests_only_pending(store, experiment):
    pub = _publication(store, experiment, "aaaaaa", reviewers=(1, 2))
    assert [p.reference for p in store.list_review_requests(experiment.id, 1)] == ["aaaaaa"]
    store.grade_review(pub.id, 1, ReviewGrade.ACCEPT, "ok")
    assert store.list_review_requests(experiment.id, 1) == []
    assert len(store.list_review_requests(experiment.id, 2)) == 1


def test_finalize_is_compare_and_set(store, experiment):
    target = _publication(store, experiment, "aaaaaa")
    store.finalize_publication(target.id, PublicationStatus.PUBLISHED)
    citing = _publication(store, experiment, "bbbbbb")

    assert store.finalize_publication(
        citing.id, PublicationStatus.PUBLISHED, [target.id]
    )
    assert not store.finalize_publication(
        citing.id, PublicationStatus.PUBLISHED, [target.id]
    )
    assert not store.finalize_publication(
        citing.id, PublicationStatus.REJECTED
    )
    assert len(store.list_citations(experiment.id)) == 1
    assert store.find_publication(citing.id).status is PublicationStatus.PUBLISHED


def test_finalize_rejects_submitted_status(store, experiment):
    pub = _publication(store, experiment, "aaaaaa")
    with pytest.raises(ValueError):
        store.finalize_publication(pub.id, PublicationStatus.SUBMITTED)


def test_concurrent_finalize_single_winner(store, experiment):
    target = _publication(store, experiment, "aaaaaa")
    store.finalize_publication(target.id, PublicationStatus.PUBLISHED)
    pub = _publication(store, experiment, "bbbbbb")
    results = []

    def finalize():
        results.append(
            store.finalize_publication(
                pub.id, PublicationStatus.PUBLISHED, [target.id]
            )
        )

    threads = [threading.Thread(target=finalize) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1
    assert len(store.list_citations(experiment.id)) == 1


def test_citation_links_are_hydrated(store, experiment):
    a = _publication(store, experiment, "aaaaaa")
    store.finalize_publication(a.id, PublicationStatus.PUBLISHED)
    b = _publication(store, experiment, "bbbbbb")
    store.finalize_publication(b.id, PublicationStatus.PUBLISHED, [a.id])
    assert store.find_publication(a.id).citations_to == [b.id]
    assert store.find_publication(b.id).citations_from == [a.id]
    assert store.find_publication(a.id).citation_count == 1


def test_list_published_orders(store, experiment):
    pubs = {}
    for ref in ("aaaaaa", "bbbbbb", "cccccc"):
        pubs[ref] = _publication(store, experiment, ref)
    store.finalize_publication(pubs["aaaaaa"].id, PublicationStatus.PUBLISHED)
    store.finalize_publication(
        pubs["bbbbbb"].id, PublicationStatus.PUBLISHED, [pubs["aaaaaa"].id]
    )
    store.finalize_publication(pubs["cccccc"].id, PublicationStatus.REJECTED)

    latest = store.list_published(experiment.id, ListOrder.LATEST)
    assert [p.reference for p in latest] == ["bbbbbb", "aaaaaa"]
    cited = store.list_published(experiment.id, ListOrder.CITATIONS)
    assert [p.reference for p in cited] == ["aaaaaa", "bbbbbb"]
    page = store.list_published(experiment.id, ListOrder.LATEST, 1, 1)
    assert [p.reference for p in page] == ["aaaaaa"]


def test_list_by_author(store, experiment):
    _publication(store, experiment, "aaaaaa", author=0)
    _publication(store, experiment, "bbbbbb", author=1, reviewers=(0,))
    assert [p.reference for p in store.list_by_author(experiment.id, 1)] == ["bbbbbb"]


# -- solutions -----------------------------------------------------------


def test_upsert_solution_replaces_vote(store, experiment):
    a = _publication(store, experiment, "aaaaaa")
    b = _publication(store, experiment, "bbbbbb")
    first = store.upsert_solution(experiment.id, 2, a.id)
    second = store.upsert_solution(experiment.id, 2, b.id)
    assert first.id == second.id
    solutions = store.list_solutions(experiment.id)
    assert len(solutions) == 1
    assert solutions[0].publication.reference == "bbbbbb"


def test_list_solutions_by_agent(store, experiment):
    a = _publication(store, experiment, "aaaaaa")
    store.upsert_solution(experiment.id, 1, a.id)
    store.upsert_solution(experiment.id, 2, a.id)
    assert [s.agent for s in store.list_solutions(experiment.id, 1)] == [1]
    assert store.list_solutions(experiment.id, 0) == []


# -- messages and usage --------------------------------------------------


def test_messages_round_trip_in_order(store, experiment):
    store.append_message(experiment.id, 0, {"role": "user", "content": "a"})
    store.append_message(
        experiment.id, 0, {"role": "assistant", "content": "b"}
    )
    store.append_message(experiment.id, 1, {"role": "user", "content": "c"})
    assert [m["content"] for m in store.list_messages(experiment.id, 0)] == [
        "a",
        "b",
    ]


def test_token_usage_sums(store, experiment):
    m0 = store.append_message(experiment.id, 0, {"role": "assistant"})
    m1 = store.append_message(experiment.id, 1, {"role": "assistant"})
    store.log_token_usage(
        experiment.id, 0, m0, TokenUsage(total=10, input=6, output=4)
    )
    store.log_token_usage(
        experiment.id, 1, m1, TokenUsage(total=5, input=5, cached=2)
    )
    total = store.token_usage(experiment.id)
    assert total == TokenUsage(total=15, input=11, output=4, cached=2)
    assert store.token_usage(experiment.id, 1).total == 5


def test_file_backed_store_persists(tmp_path):
    url = f"sqlite:///{tmp_path / 'db.sqlite'}"
    first = RecordStore(url)
    first.create_experiment("persisted", "p", "m", 2)
    first.dispose()
    second = RecordStore(url)
    assert second.find_experiment_by_name("persisted") is not None
    second.dispose()
