"""Language-model provider that calls litellm directly.

One class covers every vendor litellm routes to; the model string
(``anthropic/...``, ``openai/...``, ``gemini/...``) selects the backend.
"""

import json
import re
from typing import Any, Dict, List, Optional, Sequence

import litellm
from loguru import logger

from .errors import ModelError
from .json_parser import parse_tool_arguments
from .types import ModelResponse, TokenUsage, ToolCall

DEFAULT_CONTEXT_TOKENS = 128_000

_TOOL_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def _get(obj: Any, name: str, default: Any = None) -> Any:
    """Read *name* from a litellm object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def usage_from_response(response: Any) -> TokenUsage:
    """Map a completion's ``usage`` block onto :class:`TokenUsage`."""
    usage = _get(response, "usage")
    if usage is None:
        return TokenUsage()
    prompt = int(_get(usage, "prompt_tokens", 0) or 0)
    completion = int(_get(usage, "completion_tokens", 0) or 0)
    total = int(_get(usage, "total_tokens", 0) or (prompt + completion))
    cached = _get(_get(usage, "prompt_tokens_details"), "cached_tokens", 0)
    thinking = _get(
        _get(usage, "completion_tokens_details"), "reasoning_tokens", 0
    )
    return TokenUsage(
        total=total,
        input=prompt,
        output=completion,
        cached=int(cached or 0),
        thinking=int(thinking or 0),
    )


class LiteLLMProvider:
    """
    Uniform provider over litellm.

    Satisfies :class:`~research_society.protocols.LLMProvider`. Unlike a
    one-shot agent, it sends the full tool-using history each call and
    surfaces failures as :class:`ModelError` so the scheduler can stop
    the run.

    Args:
        model: litellm model identifier.
        thinking: Request extended reasoning where the model supports it.
        max_tokens: Completion budget per call.
        llm_args: Extra keyword arguments passed to ``litellm.completion``.
    """

    def __init__(
        self,
        model: str,
        thinking: bool = True,
        max_tokens: int = 8192,
        llm_args: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not isinstance(model, str) or not model:
            raise ValueError(f"model must be non-empty string, got {model}")
        if not isinstance(max_tokens, int) or max_tokens < 1:
            raise ValueError(
                f"max_tokens must be positive int, got {max_tokens}"
            )
        self.model = model
        self.thinking = thinking
        self._max_tokens = max_tokens
        self._llm_args = llm_args or {}

    def _tool_calls(self, message: Any) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for tc in _get(message, "tool_calls") or []:
            function = _get(tc, "function")
            name = _get(function, "name") or ""
            if not _TOOL_NAME_RE.match(name):
                logger.warning(
                    f"{self.model}: dropping tool call with invalid "
                    f"name {name!r}"
                )
                continue
            raw = _get(function, "arguments")
            calls.append(
                ToolCall(
                    id=_get(tc, "id") or "",
                    name=name,
                    arguments=parse_tool_arguments(raw),
                    raw_arguments=(
                        raw if isinstance(raw, str) else json.dumps(raw or {})
                    ),
                )
            )
        return calls

    def _assistant_message(
        self, message: Any, calls: List[ToolCall]
    ) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "role": "assistant",
            "content": _get(message, "content") or "",
        }
        if calls:
            out["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {
                        "name": c.name,
                        "arguments": c.raw_arguments,
                    },
                }
                for c in calls
            ]
        # Anthropic requires thinking blocks to be echoed back with tool use
        thinking_blocks = _get(message, "thinking_blocks")
        if thinking_blocks:
            out["thinking_blocks"] = [
                dict(b) if not isinstance(b, dict) else b
                for b in thinking_blocks
            ]
        return out

    def run(
        self,
        history: List[Dict[str, Any]],
        system_prompt: str,
        tools: List[Dict[str, Any]],
    ) -> ModelResponse:
        """Run one completion over *history* with the given tool set."""
        params: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}]
            + list(history),
            "max_tokens": self._max_tokens,
        }
        if tools:
            params["tools"] = tools
        if self.thinking:
            params["reasoning_effort"] = "medium"
            params["drop_params"] = True
        params.update(self._llm_args)

        try:
            response = litellm.completion(**params)
        except Exception as e:
            logger.error(f"{self.model}: LLM call failed: {e}")
            raise ModelError(f"LLM call failed: {e}", cause=e) from e

        choices = _get(response, "choices") or []
        if not choices:
            raise ModelError(f"{self.model} returned no choices")
        message = _get(choices[0], "message")
        finish = _get(choices[0], "finish_reason")
        if finish == "refusal":
            logger.warning(f"{self.model}: LLM refused to answer")

        calls = self._tool_calls(message)
        return ModelResponse(
            message=self._assistant_message(message, calls),
            tool_calls=calls,
            token_usage=usage_from_response(response),
        )

    def tokens(self, history: List[Dict[str, Any]]) -> int:
        """Approximate token count of *history* for context fitting."""
        try:
            return int(
                litellm.token_counter(model=self.model, messages=history)
            )
        except Exception as e:
            logger.debug(
                f"{self.model}: token_counter failed ({e}), "
                f"falling back to character estimate"
            )
            return len(json.dumps(history)) // 4

    def cost(self, usages: Sequence[TokenUsage]) -> float:
        """Dollar cost of *usages* at the model's published rates."""
        total = 0.0
        for usage in usages:
            if not usage.total:
                continue
            try:
                prompt_cost, completion_cost = litellm.cost_per_token(
                    model=self.model,
                    prompt_tokens=usage.input,
                    completion_tokens=usage.output,
                )
            except Exception as e:
                raise ModelError(
                    f"No pricing available for {self.model}", cause=e
                ) from e
            total += prompt_cost + completion_cost
        return total

    def max_context_tokens(self) -> int:
        try:
            info = litellm.get_model_info(self.model)
            value = info.get("max_input_tokens") or info.get("max_tokens")
            if value:
                return int(value)
        except Exception as e:
            logger.debug(f"{self.model}: no model info ({e})")
        logger.warning(
            f"{self.model}: unknown context window, assuming "
            f"{DEFAULT_CONTEXT_TOKENS} tokens"
        )
        return DEFAULT_CONTEXT_TOKENS
