"""Run configuration and environment settings."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from loguru import logger

load_dotenv()

DEFAULT_MODEL = "anthropic/claude-sonnet-4-5"
DEFAULT_PROFILE = "research"
PROFILES = ("research", "formal-math", "security")

DEFAULT_DATABASE_URL = "sqlite:///research_society.sqlite"
DEFAULT_CONTENT_DIR = "./research_society_data"

# Tool servers every agent gets, and the ones a run can opt into.
DEFAULT_TOOLS = ("publications", "goal_solution")
OPTIONAL_TOOLS = ("computer",)

_API_KEY_ENV_VARS = [
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GEMINI_API_KEY",
    "MISTRAL_API_KEY",
    "DEEPSEEK_API_KEY",
    "CEREBRAS_API_KEY",
    "MOONSHOT_API_KEY",
]


def check_api_keys() -> List[str]:
    """Warn if no LLM API keys are found in environment."""
    found = [k for k in _API_KEY_ENV_VARS if os.getenv(k)]
    if not found:
        logger.warning(
            f"No LLM API keys found in environment. "
            f"Set at least one of: {', '.join(_API_KEY_ENV_VARS)}"
        )
    return found


def database_url() -> str:
    return os.getenv(
        "RESEARCH_SOCIETY_DATABASE_URL", DEFAULT_DATABASE_URL
    )


def content_dir() -> Path:
    return Path(
        os.getenv("RESEARCH_SOCIETY_CONTENT_DIR", DEFAULT_CONTENT_DIR)
    )


def default_reviewer_count(agent_count: int) -> int:
    """Four reviewers unless the experiment has fewer than five agents."""
    if agent_count >= 5:
        return 4
    return max(0, agent_count - 1)


def validate_profile(profile: str) -> str:
    """Raise ``ValueError`` if *profile* is not recognised."""
    if profile not in PROFILES:
        raise ValueError(
            f"profile must be one of {PROFILES}, got '{profile}'"
        )
    return profile


@dataclass
class RunConfig:
    """
    Per-run settings shared by every agent of an experiment.

    Attributes:
        reviewers (int): Number of reviewers assigned to each submission.
        tools (List[str]): Optional tool servers enabled on top of the
            default ones.
        thinking (bool): Request extended reasoning from the provider.
        max_tokens (int): Completion budget per model call.
    """

    reviewers: int
    tools: List[str] = field(default_factory=list)
    thinking: bool = True
    max_tokens: int = 8192

    def __post_init__(self) -> None:
        if not isinstance(self.reviewers, int) or self.reviewers < 0:
            raise ValueError(
                f"reviewers must be non-negative int, got {self.reviewers}"
            )
        if not isinstance(self.thinking, bool):
            raise TypeError(
                f"thinking must be bool, got {type(self.thinking)}"
            )
        if not isinstance(self.max_tokens, int) or self.max_tokens < 1:
            raise ValueError(
                f"max_tokens must be positive int, got {self.max_tokens}"
            )
        unknown = [t for t in self.tools if t not in OPTIONAL_TOOLS]
        if unknown:
            raise ValueError(
                f"tools must be drawn from {OPTIONAL_TOOLS}, "
                f"got {unknown}"
            )

    @property
    def enabled_tools(self) -> List[str]:
        return list(DEFAULT_TOOLS) + [
            t for t in OPTIONAL_TOOLS if t in self.tools
        ]

    @property
    def has_computer(self) -> bool:
        return "computer" in self.tools
