"""Run controller: one concurrent tick loop per agent.

Loops share a cancellation event checked at the top of every tick. The
event is set when the cost ceiling is exceeded, on interrupt, or as soon
as any loop fails, so sibling loops stop after finishing their current
tick rather than running on unattended.
"""

import random
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger

from .advisory import AdvisoryMailbox
from .computer import ComputerPool, DockerComputer
from .config import RunConfig, default_reviewer_count
from .content import FileContentStore
from .errors import NotFoundError
from .protocols import Computer, LLMProvider
from .prompts import get_system_prompt
from .provider import LiteLLMProvider
from .publications import PublicationLedger
from .runner import Runner
from .solutions import SolutionLedger
from .store import RecordStore
from .tools import ToolContext, ToolRegistry
from .types import Experiment, StopReason, TickResult

# Cost is read when a run starts, then before the tick following every
# COST_CHECK_INTERVAL-th tick until it reaches COST_CHECK_THRESHOLD of the
# ceiling, and before every tick afterwards.
COST_CHECK_INTERVAL = 20
COST_CHECK_THRESHOLD = 0.95


@dataclass
class RunOutcome:
    """How a run ended."""

    reason: StopReason
    ticks: int
    cost: float
    error: Optional[BaseException] = None


class RunController:
    """
    Owns every per-run component and drives the agents of an experiment.

    Args:
        experiment: The experiment to run.
        store: Record store shared by all agents.
        content: Content store for publication bodies and attachments.
        config: Run configuration.
        provider_factory: Builds one provider per agent (and one for cost
            queries). Defaults to :class:`LiteLLMProvider` on the
            experiment's model.
        computer: Sandbox driver, required when the computer tool is
            enabled. Defaults to :class:`DockerComputer`.
        rng: Random source for reviewer assignment and references.
        custom_prompt: Replacement system prompt text or file path.
    """

    def __init__(
        self,
        experiment: Experiment,
        store: RecordStore,
        content: FileContentStore,
        config: RunConfig,
        provider_factory: Optional[Callable[[], LLMProvider]] = None,
        computer: Optional[Computer] = None,
        rng: Optional[random.Random] = None,
        custom_prompt: Optional[str] = None,
    ) -> None:
        self.experiment = experiment
        self.store = store
        self.content = content
        self.config = config
        self._provider_factory = provider_factory or (
            lambda: LiteLLMProvider(
                experiment.model,
                thinking=config.thinking,
                max_tokens=config.max_tokens,
            )
        )
        self.mailbox = AdvisoryMailbox()
        self.publications = PublicationLedger(
            store, content, self.mailbox, config.reviewers, rng
        )
        self.solutions = SolutionLedger(store)
        self.registry = ToolRegistry.for_config(config)
        self.computers: Optional[ComputerPool] = None
        if config.has_computer:
            self.computers = ComputerPool(
                computer or DockerComputer(),
                experiment.name,
                experiment.profile,
            )
        self.system_prompt = get_system_prompt(
            experiment.problem, experiment.profile, custom_prompt
        )
        self._cost_provider: Optional[LLMProvider] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._ticks = 0
        self._last_cost = 0.0
        self._cost_exceeded = False

    @classmethod
    def for_experiment(
        cls,
        name: str,
        store: RecordStore,
        content: FileContentStore,
        config: Optional[RunConfig] = None,
        **kwargs,
    ) -> "RunController":
        """Build a controller for the experiment called *name*."""
        experiment = store.find_experiment_by_name(name)
        if experiment is None:
            raise NotFoundError(f"Experiment '{name}' not found")
        if config is None:
            config = RunConfig(
                reviewers=default_reviewer_count(experiment.agent_count)
            )
        return cls(experiment, store, content, config, **kwargs)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask every loop to stop before its next tick."""
        self._stop.set()

    def runner(self, agent_index: int) -> Runner:
        ctx = ToolContext(
            experiment=self.experiment,
            agent_index=agent_index,
            publications=self.publications,
            solutions=self.solutions,
            content=self.content,
            computers=self.computers,
        )
        return Runner(
            ctx,
            self._provider_factory(),
            self.store,
            self.registry,
            self.mailbox,
            self.system_prompt,
        )

    def cost(self) -> float:
        """Dollar cost of every token the experiment has used so far."""
        if self._cost_provider is None:
            self._cost_provider = self._provider_factory()
        usage = self.store.token_usage(self.experiment.id)
        return self._cost_provider.cost([usage])

    def _count_tick(self) -> int:
        """Count one finished tick and return the global tick count."""
        with self._lock:
            self._ticks += 1
            return self._ticks

    def _should_check_cost(self, ticks: int, max_cost: float) -> bool:
        with self._lock:
            last_cost = self._last_cost
        if last_cost >= COST_CHECK_THRESHOLD * max_cost:
            return True
        return ticks > 0 and ticks % COST_CHECK_INTERVAL == 0

    def _check_cost(self, max_cost: float) -> bool:
        """Read the experiment cost; stop every loop if it is over."""
        cost = self.cost()
        with self._lock:
            self._last_cost = cost
            exceeded = cost > max_cost
            first = exceeded and not self._cost_exceeded
            if exceeded:
                self._cost_exceeded = True
        if not exceeded:
            logger.info(f"Cost so far: ${cost:.4f} / ${max_cost:.4f}")
            return False
        if first:
            logger.warning(
                f"Cost ceiling reached: ${cost:.4f} > ${max_cost:.4f}, "
                f"stopping all agents"
            )
        self._stop.set()
        return True

    def _loop(self, runner: Runner, max_cost: Optional[float]) -> None:
        # global tick count right after this loop's last tick
        ticks = 0
        while not self._stop.is_set():
            try:
                if max_cost is not None and self._should_check_cost(
                    ticks, max_cost
                ):
                    if self._check_cost(max_cost):
                        break
                runner.tick()
                ticks = self._count_tick()
            except Exception:
                logger.exception(
                    f"Agent {runner.agent_index}: tick failed, "
                    f"stopping all agents"
                )
                self._stop.set()
                raise
        runner.stop()
        logger.debug(f"Agent {runner.agent_index}: loop stopped")

    def copy_to_computers(self, paths: Sequence[Path]) -> None:
        """Copy local files into every agent's computer."""
        if self.computers is None:
            raise ValueError("The computer tool is not enabled")
        for idx in self.experiment.agent_indices():
            handle = self.computers.handle(idx)
            for path in paths:
                self.computers.computer.copy_in(handle, Path(path))
                logger.info(f"Copied {path} to computer of agent {idx}")

    def _teardown(self) -> None:
        if self.computers is not None:
            self.computers.teardown()
        self.mailbox.close()

    def run_all(self, max_cost: Optional[float] = None) -> RunOutcome:
        """
        Run every agent until the cost ceiling, an interrupt or an error.

        Args:
            max_cost: Dollar ceiling for the experiment. ``None`` runs until
                interrupted.

        Returns:
            RunOutcome: The stop reason, ticks performed, the last cost
            and the first error raised by a loop, if any.
        """
        if max_cost is not None and max_cost <= 0:
            raise ValueError(f"max_cost must be positive, got {max_cost}")
        indices = self.experiment.agent_indices()
        self.mailbox.init(indices)
        self._stop.clear()
        self._cost_exceeded = False
        self._last_cost = 0.0
        if max_cost is not None:
            # earlier runs of the experiment count against the ceiling
            self._check_cost(max_cost)
        runners = [self.runner(i) for i in indices]
        logger.info(
            f"Running experiment '{self.experiment.name}' with "
            f"{len(runners)} agents ({self.experiment.model})"
        )

        error: Optional[BaseException] = None
        try:
            with ThreadPoolExecutor(
                max_workers=len(runners), thread_name_prefix="agent"
            ) as pool:
                futures = [pool.submit(self._loop, r, max_cost) for r in runners]
                try:
                    for future in as_completed(futures):
                        exc = future.exception()
                        if exc is not None and error is None:
                            error = exc
                except KeyboardInterrupt:
                    logger.warning(
                        "Interrupted, waiting for running ticks to finish"
                    )
                    self._stop.set()
        finally:
            for r in runners:
                r.stop()
            self._teardown()

        if error is not None:
            reason = StopReason.ERROR
        elif self._cost_exceeded:
            reason = StopReason.COST_CEILING
        else:
            reason = StopReason.INTERRUPTED
        cost = self.cost() if error is None else self._last_cost
        outcome = RunOutcome(
            reason=reason, ticks=self._ticks, cost=cost, error=error
        )
        if reason is StopReason.ERROR:
            logger.error(
                f"Run stopped after {outcome.ticks} ticks on error: {error}"
            )
        else:
            logger.success(
                f"Run stopped ({reason.value}) after {outcome.ticks} "
                f"ticks, cost ${cost:.2f}"
            )
        return outcome

    def tick_once(self, agent_index: int) -> TickResult:
        """Run exactly one tick of one agent."""
        if agent_index not in self.experiment.agent_indices():
            raise ValueError(
                f"agent_index must be between 0 and "
                f"{self.experiment.agent_count - 1}, got {agent_index}"
            )
        self.mailbox.init(self.experiment.agent_indices())
        try:
            result = self.runner(agent_index).tick()
            self._count_tick()
        finally:
            self._teardown()
        logger.success(
            f"Agent {agent_index}: tick complete "
            f"({result['tool_calls']} tool calls)"
        )
        return result

    def votes(self) -> Dict[int, List[int]]:
        """Agents voting for each publication id, most voted first."""
        tally: Dict[int, List[int]] = {}
        for solution in self.solutions.list_by_experiment(
            self.experiment.id
        ):
            tally.setdefault(solution.publication.id, []).append(
                solution.agent
            )
        return dict(
            sorted(tally.items(), key=lambda kv: (-len(kv[1]), kv[0]))
        )
