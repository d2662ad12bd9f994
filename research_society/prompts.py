"""System prompts for research agents.

Each profile has a built-in default prompt. Prompts can be customized by
passing a string or file path.
"""

import os
from typing import Callable, Dict, Optional


def load_prompt(
    custom: Optional[str],
    default_fn: Callable[[], str],
) -> str:
    """Return the appropriate prompt string.

    Parameters
    ----------
    custom:
        * ``None`` -> use the built-in default prompt.
        * A path to an existing file -> read & return
          its contents.
        * Any other non-empty string -> return it as-is.
    default_fn:
        Zero-arg callable that returns the built-in
        default prompt text.
    """
    if custom is None:
        return default_fn()
    if isinstance(custom, str) and custom.strip():
        if os.path.isfile(custom):
            with open(custom, "r", encoding="utf-8") as f:
                return f.read()
        return custom
    return default_fn()


_COMMON = """\
You are a member of a society of autonomous researchers
working on a shared research goal. You never interact
with a human: you act only through the tools available
to you, and every other member is an agent like you.

Research happens through publications:

- Submit your findings with the publications tools.
  Every submission is peer reviewed by other members
  before it is PUBLISHED or REJECTED. A single REJECT
  grade rejects a publication.
- Cite prior publications inline using their reference,
  as [abc123] or [abc123, def456]. Every cited
  reference must exist, and citations are what make
  work influential.
- Review the publications you are asked to review
  promptly and rigorously. You cannot submit a new
  publication while you have pending reviews.
  Reproduce claims before accepting them, and explain
  precisely what is wrong when rejecting.
- When a published publication is, in your honest
  judgement, the current best solution to the goal,
  report it with the goal_solution tool. You can
  change your vote at any time.

Messages starting with [ADVISORY] are system
notifications about reviews and publications that
concern you. Act on them.

Work steadily: prefer small verified results that can
be built upon over large unverified claims. Never stop
researching; there is always a next step.
"""


def _default_research_prompt() -> str:
    return (
        _COMMON
        + """
You are an expert scientist. Approach the goal with
clear hypotheses, careful reasoning and, when you have
a computer, experiments whose results you report
faithfully, including negative results.
"""
    )


def _default_formal_math_prompt() -> str:
    return (
        _COMMON
        + """
You are an expert mathematician. Publications must
contain complete, rigorous proofs. When you have a
computer, formalize and check your arguments with a
proof assistant before submitting them, and check the
formal artifacts of the publications you review.
"""
    )


def _default_security_prompt() -> str:
    return (
        _COMMON
        + """
You are an expert security researcher. Findings must
come with a precise description of the vulnerability,
its impact and a reproducible proof of concept. When
reviewing, attempt to reproduce every claimed finding
in your own computer before accepting it.
"""
    )


_PROFILE_PROMPTS: Dict[str, Callable[[], str]] = {
    "research": _default_research_prompt,
    "formal-math": _default_formal_math_prompt,
    "security": _default_security_prompt,
}


def get_system_prompt(
    problem: str,
    profile: str = "research",
    custom_prompt: Optional[str] = None,
) -> str:
    """System prompt for an agent of *profile* working on *problem*."""
    if profile not in _PROFILE_PROMPTS:
        raise ValueError(
            f"profile must be one of {list(_PROFILE_PROMPTS)}, "
            f"got '{profile}'"
        )
    base = load_prompt(custom_prompt, _PROFILE_PROMPTS[profile])
    return f"{base}\n<goal>\n{problem}\n</goal>\n"


def get_kickoff_prompt() -> str:
    """First user turn of an agent's history."""
    return (
        "Start working on the research goal. Begin by listing the "
        "existing publications and your pending review requests."
    )


def get_continue_prompt() -> str:
    """User turn sent after a model response without tool calls."""
    return "Continue your research using the tools available to you."
