"""Tick scheduler driving one agent's action loop.

A tick is one full cycle: drain the agent's advisories, call the model
with the full history and the enabled tools, dispatch every requested
tool call, then persist the new messages and token usage. Ticks of one
runner never overlap; the controller runs one runner per agent.
"""

from typing import Any, Dict, List, Optional

from loguru import logger

from .advisory import AdvisoryMailbox
from .errors import SchedulerError
from .prompts import get_continue_prompt, get_kickoff_prompt
from .protocols import LLMProvider
from .store import RecordStore
from .tools import ToolContext, ToolRegistry
from .types import RunnerState, TickResult, ToolResult


def fit_context(
    history: List[Dict[str, Any]],
    provider: LLMProvider,
    max_tokens: int,
) -> List[Dict[str, Any]]:
    """Drop the oldest exchanges until *history* fits in *max_tokens*.

    The first message (the kickoff prompt) is always kept. An exchange
    runs from an assistant message up to the next one, so tool results
    are never separated from the call that produced them.
    """
    fitted = list(history)
    dropped = 0
    while len(fitted) > 2 and provider.tokens(fitted) > max_tokens:
        end = next(
            (
                i
                for i in range(2, len(fitted))
                if fitted[i].get("role") == "assistant"
            ),
            None,
        )
        if end is None:
            break
        dropped += end - 1
        fitted = fitted[:1] + fitted[end:]
    if dropped:
        logger.debug(
            f"Dropped {dropped} oldest messages to fit {max_tokens} tokens"
        )
    return fitted


class Runner:
    """
    One agent's tick loop.

    Args:
        ctx: Tool context of the agent, which also carries the
            experiment and agent index.
        provider: Language-model provider used by this agent only.
        store: Record store persisting messages and token usage.
        registry: Tool servers enabled for the run.
        mailbox: Advisory mailbox shared by the run.
        system_prompt: System prompt sent with every model call.
    """

    def __init__(
        self,
        ctx: ToolContext,
        provider: LLMProvider,
        store: RecordStore,
        registry: ToolRegistry,
        mailbox: AdvisoryMailbox,
        system_prompt: str,
    ) -> None:
        if not isinstance(provider, LLMProvider):
            raise TypeError(
                f"provider must satisfy LLMProvider, got {type(provider)}"
            )
        self.ctx = ctx
        self.provider = provider
        self.store = store
        self.registry = registry
        self.mailbox = mailbox
        self.system_prompt = system_prompt
        self._state = RunnerState.IDLE
        self._history: List[Dict[str, Any]] = store.list_messages(
            ctx.experiment.id, ctx.agent_index
        )
        self._max_context: Optional[int] = None
        if self._history:
            logger.info(
                f"Agent {self.agent_index}: resuming with "
                f"{len(self._history)} messages"
            )

    @property
    def agent_index(self) -> int:
        return self.ctx.agent_index

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    def stop(self) -> None:
        self._state = RunnerState.STOPPED

    def _append(self, message: Dict[str, Any]) -> int:
        self._history.append(message)
        return self.store.append_message(
            self.ctx.experiment.id, self.agent_index, message
        )

    def _max_context_tokens(self) -> int:
        if self._max_context is None:
            self._max_context = self.provider.max_context_tokens()
        return self._max_context

    def tick(self) -> TickResult:
        """
        Perform exactly one cycle of the agent's loop.

        Returns:
            TickResult: Counts of tool calls and advisories handled and the
            token usage of the model call.

        Raises:
            SchedulerError: If the runner is already stopped.
            Exception: Any provider or record-store failure. The runner is
                stopped before the error propagates.
        """
        if self._state is RunnerState.STOPPED:
            raise SchedulerError(f"Agent {self.agent_index} is stopped")

        try:
            advisories = self.mailbox.drain(self.agent_index)
            notes = [a.render() for a in advisories]
            if not self._history or self._history[-1]["role"] == "assistant":
                prompt = (
                    get_continue_prompt()
                    if self._history
                    else get_kickoff_prompt()
                )
                self._append(
                    {"role": "user", "content": "\n\n".join([prompt] + notes)}
                )
            elif notes:
                self._append({"role": "user", "content": "\n\n".join(notes)})

            self._state = RunnerState.AWAITING_MODEL_RESPONSE
            response = self.provider.run(
                fit_context(
                    self._history, self.provider, self._max_context_tokens()
                ),
                self.system_prompt,
                self.registry.definitions(),
            )

            self._state = RunnerState.DISPATCHING_TOOLS
            results: List[ToolResult] = [
                self.registry.dispatch(self.ctx, call)
                for call in response.tool_calls
            ]

            self._state = RunnerState.PERSISTING
            message_id = self._append(response.message)
            self.store.log_token_usage(
                self.ctx.experiment.id,
                self.agent_index,
                message_id,
                response.token_usage,
            )
            for result in results:
                self._append(
                    {
                        "role": "tool",
                        "tool_call_id": result["tool_call_id"],
                        "name": result["name"],
                        "content": result["content"],
                    }
                )
            self.store.add_experiment_tokens(
                self.ctx.experiment.id, response.token_usage.total
            )
        except Exception:
            self._state = RunnerState.STOPPED
            raise

        self._state = RunnerState.IDLE
        errors = sum(1 for r in results if r["is_error"])
        logger.debug(
            f"Agent {self.agent_index}: tick done, {len(results)} tool "
            f"calls ({errors} errors), {response.token_usage.total} tokens"
        )
        return TickResult(
            agent_index=self.agent_index,
            tool_calls=len(results),
            advisories=len(advisories),
            token_usage=response.token_usage.to_dict(),
        )
