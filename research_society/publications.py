"""Publication ledger: submission, peer review, citations and publishing.

A publication is created SUBMITTED together with its fixed review set.
Once every review carries a grade it is finalized exactly once: REJECTED
if any reviewer rejected it, otherwise PUBLISHED, at which point the
references cited in its content become Citation rows.
"""

import random
from typing import Callable, List, Optional, Sequence, Union

from loguru import logger

from .advisory import AdvisoryMailbox
from .errors import (
    InvalidParametersError,
    NotFoundError,
    ResourceCreationError,
    ValidationError,
)
from .protocols import ContentStore
from .references import extract_references, new_reference
from .reviewers import assign_reviewers
from .store import RecordStore
from .types import (
    AdvisoryKind,
    AdvisoryMessage,
    Experiment,
    ListOrder,
    Publication,
    PublicationStatus,
    Review,
    ReviewGrade,
)

MAX_REFERENCE_ATTEMPTS = 5


def parse_grade(grade: Union[str, ReviewGrade]) -> ReviewGrade:
    """Return *grade* as a :class:`ReviewGrade`."""
    if isinstance(grade, ReviewGrade):
        return grade
    try:
        return ReviewGrade(str(grade).strip().upper())
    except ValueError as e:
        raise InvalidParametersError(
            f"grade must be one of "
            f"{[g.value for g in ReviewGrade]}, got '{grade}'"
        ) from e


def parse_order(order: Union[str, ListOrder]) -> ListOrder:
    """Return *order* as a :class:`ListOrder`."""
    if isinstance(order, ListOrder):
        return order
    try:
        return ListOrder(str(order).strip().lower())
    except ValueError as e:
        raise InvalidParametersError(
            f"order must be one of "
            f"{[o.value for o in ListOrder]}, got '{order}'"
        ) from e


class PublicationLedger:
    """
    Owns every state change of publications and reviews.

    Attributes:
        store (RecordStore): Persistence for publications and reviews.
        content (ContentStore): Storage of publication bodies.
        mailbox (AdvisoryMailbox): Receives notifications on ledger events.
        reviewer_count (int): Reviewers assigned to each submission.
    """

    def __init__(
        self,
        store: RecordStore,
        content: ContentStore,
        mailbox: AdvisoryMailbox,
        reviewer_count: int,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not isinstance(reviewer_count, int) or reviewer_count < 0:
            raise ValueError(
                f"reviewer_count must be non-negative int, got {reviewer_count}"
            )
        self.store = store
        self.content = content
        self.mailbox = mailbox
        self.reviewer_count = reviewer_count
        self._rng = rng or random.Random()

    def _check_agent(self, experiment: Experiment, agent_index: int) -> None:
        if (
            not isinstance(agent_index, int)
            or not 0 <= agent_index < experiment.agent_count
        ):
            raise InvalidParametersError(
                f"Invalid agent index: {agent_index}. Must be between 0 "
                f"and {experiment.agent_count - 1}"
            )

    def _new_reference(self, experiment: Experiment) -> str:
        for _ in range(MAX_REFERENCE_ATTEMPTS):
            reference = new_reference(self._rng)
            if self.store.reference_exists(
                experiment.id, reference
            ) or self.content.exists(reference):
                logger.warning(
                    f"Reference collision on [{reference}], drawing again"
                )
                continue
            return reference
        raise ResourceCreationError(
            f"Could not allocate a unique reference after "
            f"{MAX_REFERENCE_ATTEMPTS} attempts"
        )

    def submit(
        self,
        experiment: Experiment,
        author_index: int,
        title: str,
        content: str,
        cited_references: Optional[Sequence[str]] = None,
        attach: Optional[Callable[[str], None]] = None,
    ) -> Publication:
        """
        Submit a new publication for peer review.

        Args:
            experiment: The experiment the publication belongs to.
            author_index: Index of the submitting agent.
            title: Publication title.
            content: Publication body. Citations are written inline as
                ``[ref]`` or ``[ref1, ref2]``.
            cited_references: Cited tokens. Extracted from *content* when
                omitted.
            attach: Called with the new reference once the content is
                stored and before the publication is created, to store
                attachments. Errors abort the submission and discard
                the stored content and attachments.

        Returns:
            The created publication, already finalized when no reviewers
            are configured.

        Raises:
            ValidationError: If the author has pending reviews, a cited
                reference does not exist, or the reviewer pool is too
                small.
        """
        self._check_agent(experiment, author_index)
        if not isinstance(title, str) or not title.strip():
            raise InvalidParametersError("title must be a non-empty string")
        if not isinstance(content, str) or not content.strip():
            raise InvalidParametersError(
                "content must be a non-empty string"
            )

        pending = self.store.list_review_requests(
            experiment.id, author_index
        )
        if pending:
            raise ValidationError(
                "You have pending reviews. Please complete them before "
                "submitting a new publication."
            )

        references = (
            list(dict.fromkeys(cited_references))
            if cited_references is not None
            else extract_references(content)
        )
        found = self.store.find_publications_by_references(
            experiment.id, references
        )
        found_refs = {p.reference for p in found}
        missing = [r for r in references if r not in found_refs]
        if missing:
            raise ValidationError(
                "Reference not found in publication submission content: "
                + ",".join(missing)
            )

        reviewers = assign_reviewers(
            experiment.agent_indices(),
            author_index,
            self.reviewer_count,
            self._rng,
        )

        reference = self._new_reference(experiment)
        self.content.write(reference, content)
        try:
            if attach is not None:
                attach(reference)
            publication = self.store.create_publication(
                experiment.id,
                author_index,
                title.strip(),
                reference,
                reviewers,
                references,
            )
        except Exception:
            logger.warning(
                f"Agent {author_index}: submission of [{reference}] failed, "
                f"removing its stored files"
            )
            self.content.discard(experiment.id, reference)
            raise
        logger.info(
            f"Agent {author_index} submitted [{reference}] "
            f"'{publication.title}' (reviewers: {reviewers})"
        )

        for reviewer in reviewers:
            self.mailbox.push(
                reviewer,
                AdvisoryMessage(
                    kind=AdvisoryKind.REVIEW_REQUESTED,
                    publication_reference=reference,
                    publication_title=publication.title,
                ),
            )

        if not reviewers:
            self.maybe_publish_or_reject(publication.id)
            publication = self.store.find_publication(publication.id)
        return publication

    def submit_review(
        self,
        experiment: Experiment,
        reference: str,
        reviewer_index: int,
        grade: Union[str, ReviewGrade],
        content: str,
    ) -> Review:
        """Grade the reviewer's pending review, then try to finalize."""
        self._check_agent(experiment, reviewer_index)
        grade = parse_grade(grade)
        publication = self.get(experiment, reference)

        review = self.store.grade_review(
            publication.id, reviewer_index, grade, content or ""
        )
        logger.info(
            f"Agent {reviewer_index} reviewed [{reference}]: {grade.value}"
        )
        self.mailbox.push(
            publication.author,
            AdvisoryMessage(
                kind=AdvisoryKind.REVIEW_RECEIVED,
                publication_reference=reference,
                publication_title=publication.title,
                reviewer_index=reviewer_index,
                grade=grade,
            ),
        )
        self.maybe_publish_or_reject(publication.id)
        return review

    def maybe_publish_or_reject(
        self, publication_id: int
    ) -> PublicationStatus:
        """Finalize the publication if every review has been graded.

        Idempotent: a publication still awaiting a review, or already
        finalized, is left untouched and its current status returned.
        """
        publication = self.store.find_publication(publication_id)
        if publication is None:
            raise NotFoundError("Publication not found")
        if publication.status is not PublicationStatus.SUBMITTED:
            return publication.status
        if publication.pending_reviews:
            return PublicationStatus.SUBMITTED

        rejected = any(
            r.grade is ReviewGrade.REJECT for r in publication.reviews
        )
        status = (
            PublicationStatus.REJECTED
            if rejected
            else PublicationStatus.PUBLISHED
        )
        cited_ids: List[int] = []
        if status is PublicationStatus.PUBLISHED:
            cited_ids = [
                p.id
                for p in self.store.find_publications_by_references(
                    publication.experiment, publication.cited_references
                )
            ]

        if not self.store.finalize_publication(
            publication.id, status, cited_ids
        ):
            logger.debug(
                f"[{publication.reference}] already finalized elsewhere"
            )
            current = self.store.find_publication(publication.id)
            return current.status

        self.mailbox.push(
            publication.author,
            AdvisoryMessage(
                kind=AdvisoryKind.PUBLICATION_STATUS_UPDATED,
                publication_reference=publication.reference,
                publication_title=publication.title,
                status=status,
            ),
        )
        if status is PublicationStatus.PUBLISHED:
            logger.success(
                f"[{publication.reference}] '{publication.title}' "
                f"PUBLISHED ({len(cited_ids)} citations)"
            )
        else:
            logger.info(
                f"[{publication.reference}] '{publication.title}' REJECTED"
            )
        return status

    def get(self, experiment: Experiment, reference: str) -> Publication:
        publication = self.store.find_publication_by_reference(
            experiment.id, reference
        )
        if publication is None:
            raise NotFoundError("Publication not found")
        return publication

    def read_content(self, reference: str) -> str:
        content = self.content.read(reference)
        if content is None:
            raise NotFoundError("Publication content not found")
        return content

    def list_published(
        self,
        experiment: Experiment,
        order: Union[str, ListOrder] = ListOrder.LATEST,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Publication]:
        """Only PUBLISHED publications, by recency or inbound citations."""
        order = parse_order(order)
        if not isinstance(limit, int) or limit < 0:
            raise InvalidParametersError(
                f"limit must be non-negative int, got {limit}"
            )
        if not isinstance(offset, int) or offset < 0:
            raise InvalidParametersError(
                f"offset must be non-negative int, got {offset}"
            )
        return self.store.list_published(
            experiment.id, order, limit, offset
        )

    def list_pending_reviews_for(
        self, experiment: Experiment, agent_index: int
    ) -> List[Publication]:
        return self.store.list_review_requests(experiment.id, agent_index)

    def list_by_author(
        self, experiment: Experiment, agent_index: int
    ) -> List[Publication]:
        return self.store.list_by_author(experiment.id, agent_index)
