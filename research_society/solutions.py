"""Solution ledger: each agent's current vote for the best publication."""

from typing import List, Optional

from loguru import logger

from .errors import NotFoundError
from .store import RecordStore
from .types import Solution


class SolutionLedger:
    """Last-vote-wins table keyed by (experiment, agent).

    Whether the target is PUBLISHED is checked by the caller; the ledger
    only requires that it exists in the same experiment.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def vote(
        self, experiment_id: int, agent_index: int, publication_id: int
    ) -> Solution:
        publication = self.store.find_publication(publication_id)
        if publication is None or publication.experiment != experiment_id:
            raise NotFoundError("Publication not found")
        solution = self.store.upsert_solution(
            experiment_id, agent_index, publication_id
        )
        logger.info(
            f"Agent {agent_index} voted for [{publication.reference}]"
        )
        return solution

    def list_by_experiment(self, experiment_id: int) -> List[Solution]:
        return self.store.list_solutions(experiment_id)

    def list_by_agent(
        self, experiment_id: int, agent_index: int
    ) -> List[Solution]:
        return self.store.list_solutions(experiment_id, agent_index)

    def find_latest_by_agent(
        self, experiment_id: int, agent_index: int
    ) -> Optional[Solution]:
        solutions = self.list_by_agent(experiment_id, agent_index)
        return solutions[0] if solutions else None
