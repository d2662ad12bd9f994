"""Record store for experiments, publications, reviews, citations,
solutions, messages and token usage.

Backed by SQLAlchemy. Every operation runs in its own transaction and is
serialized through a process-wide lock so the store can be shared by
the per-agent worker threads (SQLite allows a single writer anyway).
The two operations that need atomicity across concurrent callers are
``upsert_solution`` (one row per experiment and agent) and
``finalize_publication`` (compare-and-set on the SUBMITTED status,
together with the citation inserts).
"""

import json
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import (
    Any,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
)

from loguru import logger
from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    desc,
    func,
    or_,
    select,
    update,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
)
from sqlalchemy.pool import StaticPool

from .errors import (
    NotFoundError,
    ResourceCreationError,
    ValidationError,
)
from .types import (
    Citation,
    Experiment,
    ListOrder,
    Publication,
    PublicationStatus,
    Review,
    ReviewGrade,
    Solution,
    TokenUsage,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ExperimentRow(Base):
    __tablename__ = "experiments"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    problem: Mapped[str] = mapped_column(Text)
    model: Mapped[str] = mapped_column(String(255))
    agent_count: Mapped[int] = mapped_column(Integer)
    profile: Mapped[str] = mapped_column(String(64), default="research")
    tokens: Mapped[int] = mapped_column(Integer, default=0)
    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )
    updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )


class PublicationRow(Base):
    __tablename__ = "publications"
    __table_args__ = (UniqueConstraint("experiment", "reference"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    experiment: Mapped[int] = mapped_column(
        ForeignKey("experiments.id", ondelete="CASCADE"), index=True
    )
    author: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(Text)
    reference: Mapped[str] = mapped_column(String(16))
    status: Mapped[PublicationStatus] = mapped_column(
        SAEnum(PublicationStatus, native_enum=False, length=16),
        default=PublicationStatus.SUBMITTED,
    )
    # Comma separated tokens, resolved into citations at publish time.
    cited_references: Mapped[str] = mapped_column(Text, default="")
    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )
    updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )


class ReviewRow(Base):
    __tablename__ = "reviews"
    __table_args__ = (UniqueConstraint("publication", "author"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    experiment: Mapped[int] = mapped_column(
        ForeignKey("experiments.id", ondelete="CASCADE"), index=True
    )
    publication: Mapped[int] = mapped_column(
        ForeignKey("publications.id", ondelete="CASCADE"), index=True
    )
    author: Mapped[int] = mapped_column(Integer)
    grade: Mapped[Optional[ReviewGrade]] = mapped_column(
        SAEnum(ReviewGrade, native_enum=False, length=16), nullable=True
    )
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )
    updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )


class CitationRow(Base):
    __tablename__ = "citations"
    __table_args__ = (
        UniqueConstraint("from_publication", "to_publication"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    experiment: Mapped[int] = mapped_column(
        ForeignKey("experiments.id", ondelete="CASCADE"), index=True
    )
    from_publication: Mapped[int] = mapped_column(
        ForeignKey("publications.id", ondelete="CASCADE")
    )
    to_publication: Mapped[int] = mapped_column(
        ForeignKey("publications.id", ondelete="CASCADE"), index=True
    )
    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )


class SolutionRow(Base):
    __tablename__ = "solutions"
    __table_args__ = (UniqueConstraint("experiment", "agent"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    experiment: Mapped[int] = mapped_column(
        ForeignKey("experiments.id", ondelete="CASCADE"), index=True
    )
    agent: Mapped[int] = mapped_column(Integer)
    publication: Mapped[int] = mapped_column(
        ForeignKey("publications.id", ondelete="CASCADE")
    )
    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )
    updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )


class MessageRow(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("experiment", "agent", "position"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    experiment: Mapped[int] = mapped_column(
        ForeignKey("experiments.id", ondelete="CASCADE"), index=True
    )
    agent: Mapped[int] = mapped_column(Integer)
    position: Mapped[int] = mapped_column(Integer)
    role: Mapped[str] = mapped_column(String(32))
    content: Mapped[str] = mapped_column(Text)
    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )


class TokenUsageRow(Base):
    __tablename__ = "token_usages"

    id: Mapped[int] = mapped_column(primary_key=True)
    experiment: Mapped[int] = mapped_column(
        ForeignKey("experiments.id", ondelete="CASCADE"), index=True
    )
    agent: Mapped[int] = mapped_column(Integer)
    message: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE")
    )
    total: Mapped[int] = mapped_column(Integer, default=0)
    input: Mapped[int] = mapped_column(Integer, default=0)
    output: Mapped[int] = mapped_column(Integer, default=0)
    cached: Mapped[int] = mapped_column(Integer, default=0)
    thinking: Mapped[int] = mapped_column(Integer, default=0)


# -- row conversion ---------------------------------------------------


def _experiment_from_row(row: ExperimentRow) -> Experiment:
    return Experiment(
        id=row.id,
        name=row.name,
        problem=row.problem,
        model=row.model,
        agent_count=row.agent_count,
        profile=row.profile,
        tokens=row.tokens,
        created=row.created,
        updated=row.updated,
    )


def _review_from_row(row: ReviewRow) -> Review:
    return Review(
        id=row.id,
        experiment=row.experiment,
        publication=row.publication,
        author=row.author,
        grade=row.grade,
        content=row.content,
        created=row.created,
        updated=row.updated,
    )


def _split_references(value: str) -> List[str]:
    return [t for t in (value or "").split(",") if t]


class RecordStore:
    """
    Transactional record store.

    Args:
        url: SQLAlchemy database URL. ``sqlite://`` keeps everything in
            memory, which is what the tests use.
        echo: Log emitted SQL.
    """

    def __init__(self, url: str = "sqlite://", echo: bool = False) -> None:
        if not isinstance(url, str) or not url:
            raise ValueError(f"url must be non-empty string, got {url}")
        kwargs: Dict[str, Any] = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.url = url
        self._engine = create_engine(url, echo=echo, **kwargs)
        self._lock = threading.RLock()
        Base.metadata.create_all(self._engine)
        logger.debug(f"Record store ready at {url}")

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock:
            with Session(self._engine, expire_on_commit=False) as session:
                with session.begin():
                    yield session

    def dispose(self) -> None:
        self._engine.dispose()

    # -- experiments --------------------------------------------------

    def create_experiment(
        self,
        name: str,
        problem: str,
        model: str,
        agent_count: int,
        profile: str = "research",
    ) -> Experiment:
        try:
            with self._session() as session:
                row = ExperimentRow(
                    name=name,
                    problem=problem,
                    model=model,
                    agent_count=agent_count,
                    profile=profile,
                    tokens=0,
                )
                session.add(row)
                session.flush()
                experiment = _experiment_from_row(row)
        except IntegrityError as e:
            raise ResourceCreationError(
                f"Experiment '{name}' already exists", cause=e
            ) from e
        logger.info(
            f"Created experiment '{name}' ({agent_count} agents, {model})"
        )
        return experiment

    def find_experiment(self, experiment_id: int) -> Optional[Experiment]:
        with self._session() as session:
            row = session.get(ExperimentRow, experiment_id)
            return _experiment_from_row(row) if row else None

    def find_experiment_by_name(self, name: str) -> Optional[Experiment]:
        with self._session() as session:
            row = session.scalar(
                select(ExperimentRow).where(ExperimentRow.name == name)
            )
            return _experiment_from_row(row) if row else None

    def list_experiments(self) -> List[Experiment]:
        with self._session() as session:
            rows = session.scalars(
                select(ExperimentRow).order_by(ExperimentRow.id)
            ).all()
            return [_experiment_from_row(r) for r in rows]

    def add_experiment_tokens(
        self, experiment_id: int, amount: int
    ) -> Experiment:
        with self._session() as session:
            session.execute(
                update(ExperimentRow)
                .where(ExperimentRow.id == experiment_id)
                .values(
                    tokens=ExperimentRow.tokens + amount,
                    updated=_now(),
                )
            )
            row = session.get(ExperimentRow, experiment_id)
            if row is None:
                raise NotFoundError(
                    f"Experiment {experiment_id} not found"
                )
            session.refresh(row)
            return _experiment_from_row(row)

    def delete_experiment(self, experiment_id: int) -> None:
        """Delete an experiment and everything that belongs to it."""
        with self._session() as session:
            for model in (
                TokenUsageRow,
                MessageRow,
                SolutionRow,
                CitationRow,
                ReviewRow,
                PublicationRow,
            ):
                session.execute(
                    delete(model).where(model.experiment == experiment_id)
                )
            session.execute(
                delete(ExperimentRow).where(
                    ExperimentRow.id == experiment_id
                )
            )
        logger.info(f"Deleted experiment {experiment_id}")

    # -- publications -------------------------------------------------

    def _hydrate(
        self, session: Session, rows: Sequence[PublicationRow]
    ) -> List[Publication]:
        if not rows:
            return []
        ids = [r.id for r in rows]
        reviews: Dict[int, List[Review]] = defaultdict(list)
        for review in session.scalars(
            select(ReviewRow)
            .where(ReviewRow.publication.in_(ids))
            .order_by(ReviewRow.id)
        ):
            reviews[review.publication].append(_review_from_row(review))

        cites_from: Dict[int, List[int]] = defaultdict(list)
        cites_to: Dict[int, List[int]] = defaultdict(list)
        for citation in session.scalars(
            select(CitationRow).where(
                or_(
                    CitationRow.from_publication.in_(ids),
                    CitationRow.to_publication.in_(ids),
                )
            )
        ):
            cites_from[citation.from_publication].append(
                citation.to_publication
            )
            cites_to[citation.to_publication].append(
                citation.from_publication
            )

        return [
            Publication(
                id=row.id,
                experiment=row.experiment,
                author=row.author,
                title=row.title,
                reference=row.reference,
                status=row.status,
                cited_references=_split_references(row.cited_references),
                reviews=reviews[row.id],
                citations_from=cites_from[row.id],
                citations_to=cites_to[row.id],
                created=row.created,
                updated=row.updated,
            )
            for row in rows
        ]

    def create_publication(
        self,
        experiment_id: int,
        author: int,
        title: str,
        reference: str,
        reviewers: Sequence[int],
        cited_references: Sequence[str] = (),
    ) -> Publication:
        """Insert a SUBMITTED publication together with its review set."""
        try:
            with self._session() as session:
                row = PublicationRow(
                    experiment=experiment_id,
                    author=author,
                    title=title,
                    reference=reference,
                    status=PublicationStatus.SUBMITTED,
                    cited_references=",".join(cited_references),
                )
                session.add(row)
                session.flush()
                session.add_all(
                    ReviewRow(
                        experiment=experiment_id,
                        publication=row.id,
                        author=reviewer,
                    )
                    for reviewer in reviewers
                )
                session.flush()
                [publication] = self._hydrate(session, [row])
        except IntegrityError as e:
            raise ResourceCreationError(
                f"Failed to create publication [{reference}]", cause=e
            ) from e
        return publication

    def reference_exists(self, experiment_id: int, reference: str) -> bool:
        with self._session() as session:
            found = session.scalar(
                select(PublicationRow.id).where(
                    PublicationRow.experiment == experiment_id,
                    PublicationRow.reference == reference,
                )
            )
            return found is not None

    def find_publication(self, publication_id: int) -> Optional[Publication]:
        with self._session() as session:
            row = session.get(PublicationRow, publication_id)
            if row is None:
                return None
            return self._hydrate(session, [row])[0]

    def find_publication_by_reference(
        self, experiment_id: int, reference: str
    ) -> Optional[Publication]:
        found = self.find_publications_by_references(
            experiment_id, [reference]
        )
        return found[0] if found else None

    def find_publications_by_references(
        self, experiment_id: int, references: Sequence[str]
    ) -> List[Publication]:
        if not references:
            return []
        with self._session() as session:
            rows = session.scalars(
                select(PublicationRow).where(
                    PublicationRow.experiment == experiment_id,
                    PublicationRow.reference.in_(list(references)),
                )
            ).all()
            return self._hydrate(session, rows)

    def list_published(
        self,
        experiment_id: int,
        order: ListOrder = ListOrder.LATEST,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Publication]:
        citations_count = func.count(CitationRow.id).label(
            "citations_count"
        )
        stmt = (
            select(PublicationRow, citations_count)
            .outerjoin(
                CitationRow,
                CitationRow.to_publication == PublicationRow.id,
            )
            .where(
                PublicationRow.experiment == experiment_id,
                PublicationRow.status == PublicationStatus.PUBLISHED,
            )
            .group_by(PublicationRow.id)
        )
        if order is ListOrder.CITATIONS:
            stmt = stmt.order_by(
                desc(citations_count),
                desc(PublicationRow.created),
                desc(PublicationRow.id),
            )
        else:
            stmt = stmt.order_by(
                desc(PublicationRow.created), desc(PublicationRow.id)
            )
        with self._session() as session:
            rows = [
                row
                for row, _ in session.execute(
                    stmt.limit(limit).offset(offset)
                ).all()
            ]
            return self._hydrate(session, rows)

    def list_publications(
        self,
        experiment_id: int,
        status: Optional[PublicationStatus] = None,
    ) -> List[Publication]:
        stmt = select(PublicationRow).where(
            PublicationRow.experiment == experiment_id
        )
        if status is not None:
            stmt = stmt.where(PublicationRow.status == status)
        stmt = stmt.order_by(
            desc(PublicationRow.created), desc(PublicationRow.id)
        )
        with self._session() as session:
            return self._hydrate(session, session.scalars(stmt).all())

    def list_by_author(
        self, experiment_id: int, author: int
    ) -> List[Publication]:
        with self._session() as session:
            rows = session.scalars(
                select(PublicationRow)
                .where(
                    PublicationRow.experiment == experiment_id,
                    PublicationRow.author == author,
                )
                .order_by(desc(PublicationRow.created), desc(PublicationRow.id))
            ).all()
            return self._hydrate(session, rows)

    def list_review_requests(
        self, experiment_id: int, reviewer: int
    ) -> List[Publication]:
        """Publications with an ungraded review assigned to *reviewer*."""
        with self._session() as session:
            pending = (
                select(ReviewRow.publication)
                .where(
                    ReviewRow.experiment == experiment_id,
                    ReviewRow.author == reviewer,
                    ReviewRow.grade.is_(None),
                )
                .scalar_subquery()
            )
            rows = session.scalars(
                select(PublicationRow)
                .where(
                    PublicationRow.experiment == experiment_id,
                    PublicationRow.id.in_(pending),
                )
                .order_by(PublicationRow.created, PublicationRow.id)
            ).all()
            return self._hydrate(session, rows)

    def grade_review(
        self,
        publication_id: int,
        reviewer: int,
        grade: ReviewGrade,
        content: str,
    ) -> Review:
        """Grade the pending review of *reviewer*, exactly once."""
        with self._session() as session:
            result = session.execute(
                update(ReviewRow)
                .where(
                    ReviewRow.publication == publication_id,
                    ReviewRow.author == reviewer,
                    ReviewRow.grade.is_(None),
                )
                .values(grade=grade, content=content, updated=_now())
            )
            if result.rowcount == 0:
                raise ValidationError(
                    "Review submitted does not match any pending "
                    "review request."
                )
            row = session.scalar(
                select(ReviewRow).where(
                    ReviewRow.publication == publication_id,
                    ReviewRow.author == reviewer,
                )
            )
            session.refresh(row)
            return _review_from_row(row)

    def finalize_publication(
        self,
        publication_id: int,
        status: PublicationStatus,
        cited_publication_ids: Sequence[int] = (),
    ) -> bool:
        """Move a SUBMITTED publication to a terminal status.

        The status update is conditional on the row still being
        SUBMITTED; citations are inserted in the same transaction. Returns
        ``False`` when another caller already finalized the publication.
        """
        if status is PublicationStatus.SUBMITTED:
            raise ValueError("status must be PUBLISHED or REJECTED")
        with self._session() as session:
            result = session.execute(
                update(PublicationRow)
                .where(
                    PublicationRow.id == publication_id,
                    PublicationRow.status == PublicationStatus.SUBMITTED,
                )
                .values(status=status, updated=_now())
            )
            if result.rowcount != 1:
                return False
            row = session.get(PublicationRow, publication_id)
            session.add_all(
                CitationRow(
                    experiment=row.experiment,
                    from_publication=publication_id,
                    to_publication=target,
                )
                for target in dict.fromkeys(cited_publication_ids)
            )
            return True

    def list_citations(self, experiment_id: int) -> List[Citation]:
        with self._session() as session:
            rows = session.scalars(
                select(CitationRow)
                .where(CitationRow.experiment == experiment_id)
                .order_by(CitationRow.id)
            ).all()
            return [
                Citation(
                    id=r.id,
                    experiment=r.experiment,
                    from_publication=r.from_publication,
                    to_publication=r.to_publication,
                )
                for r in rows
            ]

    # -- solutions ----------------------------------------------------

    def _solutions(
        self, session: Session, rows: Sequence[SolutionRow]
    ) -> List[Solution]:
        if not rows:
            return []
        pub_rows = {
            p.id: p
            for p in session.scalars(
                select(PublicationRow).where(
                    PublicationRow.id.in_([r.publication for r in rows])
                )
            )
        }
        publications = {
            p.id: p for p in self._hydrate(session, list(pub_rows.values()))
        }
        return [
            Solution(
                id=r.id,
                experiment=r.experiment,
                agent=r.agent,
                publication=publications[r.publication],
                created=r.created,
                updated=r.updated,
            )
            for r in rows
            if r.publication in publications
        ]

    def upsert_solution(
        self, experiment_id: int, agent: int, publication_id: int
    ) -> Solution:
        """Record *agent*'s vote, replacing any previous one."""
        with self._session() as session:
            row = session.scalar(
                select(SolutionRow).where(
                    SolutionRow.experiment == experiment_id,
                    SolutionRow.agent == agent,
                )
            )
            if row is None:
                row = SolutionRow(
                    experiment=experiment_id,
                    agent=agent,
                    publication=publication_id,
                )
                session.add(row)
            else:
                row.publication = publication_id
                row.updated = _now()
            session.flush()
            return self._solutions(session, [row])[0]

    def list_solutions(
        self, experiment_id: int, agent: Optional[int] = None
    ) -> List[Solution]:
        stmt = select(SolutionRow).where(
            SolutionRow.experiment == experiment_id
        )
        if agent is not None:
            stmt = stmt.where(SolutionRow.agent == agent)
        stmt = stmt.order_by(desc(SolutionRow.updated), desc(SolutionRow.id))
        with self._session() as session:
            return self._solutions(session, session.scalars(stmt).all())

    # -- messages and token usage ------------------------------------

    def append_message(
        self, experiment_id: int, agent: int, message: Dict[str, Any]
    ) -> int:
        """Persist *message* at the end of the agent's history."""
        with self._session() as session:
            position = session.scalar(
                select(func.count(MessageRow.id)).where(
                    MessageRow.experiment == experiment_id,
                    MessageRow.agent == agent,
                )
            )
            row = MessageRow(
                experiment=experiment_id,
                agent=agent,
                position=position or 0,
                role=str(message.get("role", "")),
                content=json.dumps(message),
            )
            session.add(row)
            session.flush()
            return row.id

    def list_messages(
        self, experiment_id: int, agent: int
    ) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = session.scalars(
                select(MessageRow)
                .where(
                    MessageRow.experiment == experiment_id,
                    MessageRow.agent == agent,
                )
                .order_by(MessageRow.position)
            ).all()
            return [json.loads(r.content) for r in rows]

    def log_token_usage(
        self,
        experiment_id: int,
        agent: int,
        message_id: int,
        usage: TokenUsage,
    ) -> None:
        with self._session() as session:
            session.add(
                TokenUsageRow(
                    experiment=experiment_id,
                    agent=agent,
                    message=message_id,
                    total=usage.total,
                    input=usage.input,
                    output=usage.output,
                    cached=usage.cached,
                    thinking=usage.thinking,
                )
            )

    def token_usage(
        self, experiment_id: int, agent: Optional[int] = None
    ) -> TokenUsage:
        """Summed token usage of an experiment, or of one of its agents."""
        stmt = select(
            func.coalesce(func.sum(TokenUsageRow.total), 0),
            func.coalesce(func.sum(TokenUsageRow.input), 0),
            func.coalesce(func.sum(TokenUsageRow.output), 0),
            func.coalesce(func.sum(TokenUsageRow.cached), 0),
            func.coalesce(func.sum(TokenUsageRow.thinking), 0),
        ).where(TokenUsageRow.experiment == experiment_id)
        if agent is not None:
            stmt = stmt.where(TokenUsageRow.agent == agent)
        with self._session() as session:
            total, input_, output, cached, thinking = session.execute(
                stmt
            ).one()
        return TokenUsage(
            total=int(total),
            input=int(input_),
            output=int(output),
            cached=int(cached),
            thinking=int(thinking),
        )
