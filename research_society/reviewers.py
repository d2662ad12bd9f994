"""Reviewer assignment policy.

Provides a pure selection function used by the publication ledger when a
new submission arrives.
"""

import random
from typing import List, Sequence

from .errors import InvalidParametersError, ValidationError


def reviewer_pool(
    agent_indices: Sequence[int], author_index: int
) -> List[int]:
    """Every agent except the author, in their original order."""
    return [idx for idx in agent_indices if idx != author_index]


def assign_reviewers(
    agent_indices: Sequence[int],
    author_index: int,
    count: int,
    rng: random.Random | None = None,
) -> List[int]:
    """Draw *count* reviewers uniformly without replacement.

    Args:
        agent_indices: All agent indices of the experiment.
        author_index: Index of the submitting agent, never selected.
        count: Number of reviewers to assign.
        rng: Optional random source, for reproducible draws.

    Returns:
        The selected reviewer indices.

    Raises:
        InvalidParametersError: If *count* is negative.
        ValidationError: If fewer than *count* agents are eligible.
    """
    if count < 0:
        raise InvalidParametersError(
            f"reviewer count must be non-negative, got {count}"
        )
    pool = reviewer_pool(agent_indices, author_index)
    if len(pool) < count:
        raise ValidationError(
            f"Not enough reviewers available: need {count}, "
            f"have {len(pool)}"
        )
    _rng = rng or random.Random()
    return _rng.sample(pool, count)
