"""Tool surface exposed to agents.

Three tool servers are available: ``publications`` (submit, review and
read publications), ``goal_solution`` (vote for the current best
solution) and, when enabled, ``computer`` (run commands in the agent's
sandbox). Tools are advertised to the model as litellm function
definitions named ``<server>-<tool>``.

Handlers raise :class:`~research_society.errors.ResearchError` for
anything the calling agent can fix; :func:`ToolRegistry.dispatch` turns
those into error results returned to the agent. Any other exception
propagates and ends the tick.
"""

import math
import posixpath
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from .computer import WORKDIR, ComputerPool
from .config import RunConfig
from .content import FileContentStore
from .errors import (
    ErrorCode,
    InvalidParametersError,
    NotFoundError,
    ResearchError,
)
from .publications import PublicationLedger
from .solutions import SolutionLedger
from .types import (
    Experiment,
    Publication,
    PublicationStatus,
    Review,
    ToolCall,
    ToolResult,
)

MAX_OUTPUT_CHARS = 16_384
TOOL_NAME_SEPARATOR = "-"

# Bounds on numeric tool arguments.
MAX_PAGE_ARG = 10_000
MAX_TIMEOUT_MS = 3_600_000


@dataclass
class ToolContext:
    """Everything a tool handler needs to act on behalf of one agent."""

    experiment: Experiment
    agent_index: int
    publications: PublicationLedger
    solutions: SolutionLedger
    content: FileContentStore
    computers: Optional[ComputerPool] = None

    def computer_handle(self) -> str:
        if self.computers is None:
            raise InvalidParametersError("The computer tool is not enabled")
        return self.computers.handle(self.agent_index)


Handler = Callable[[ToolContext, Dict[str, Any]], str]


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: Handler


@dataclass
class ToolServer:
    name: str
    title: str
    tools: List[ToolSpec] = field(default_factory=list)

    def find(self, tool_name: str) -> Optional[ToolSpec]:
        for tool in self.tools:
            if tool.name == tool_name:
                return tool
        return None


def _schema(
    properties: Optional[Dict[str, Any]] = None,
    required: Sequence[str] = (),
) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": properties or {},
        "required": list(required),
    }


def _require_str(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidParametersError(
            f"'{key}' is required and must be a non-empty string"
        )
    return value


def _optional_int(
    args: Dict[str, Any],
    key: str,
    default: int,
    minimum: int = 0,
    maximum: int = MAX_PAGE_ARG,
) -> int:
    value = args.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidParametersError(f"'{key}' must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidParametersError(f"'{key}' must be a finite number")
    if not minimum <= value <= maximum:
        raise InvalidParametersError(
            f"'{key}' must be between {minimum} and {maximum}, got {value}"
        )
    return int(value)


def truncate(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return (
        text[:limit] + f"\n... [truncated {len(text) - limit} characters]"
    )


# -- rendering ------------------------------------------------------------


def review_header(review: Review) -> str:
    grade = review.grade.value if review.grade else "PENDING"
    return f"reviewer=Agent {review.author}\ngrade={grade}"


def publication_header(
    publication: Publication, attachments: Sequence[str] = ()
) -> str:
    grades = ", ".join(
        r.grade.value if r.grade else "PENDING" for r in publication.reviews
    )
    return (
        f"reference=[{publication.reference}]\n"
        f"title={publication.title}\n"
        f"author=Agent {publication.author}\n"
        f"reviews:{grades}\n"
        f"status={publication.status.value}\n"
        f"citations_count={publication.citation_count}\n"
        f"attachments=[{','.join(attachments)}]"
    )


def render_list_of_publications(
    ctx: ToolContext, publications: Sequence[Publication]
) -> str:
    if not publications:
        return "(0 found)"
    return "\n\n".join(
        publication_header(
            p,
            ctx.content.list_attachments(ctx.experiment.id, p.reference),
        )
        for p in publications
    )


# -- publications ---------------------------------------------------------


def _list_publications(ctx: ToolContext, args: Dict[str, Any]) -> str:
    publications = ctx.publications.list_published(
        ctx.experiment,
        order=args.get("order") or "latest",
        limit=_optional_int(args, "limit", 10),
        offset=_optional_int(args, "offset", 0),
    )
    return render_list_of_publications(ctx, publications)


def _get_publication(ctx: ToolContext, args: Dict[str, Any]) -> str:
    reference = _require_str(args, "reference")
    publication = ctx.publications.get(ctx.experiment, reference)
    content = ctx.publications.read_content(reference)
    header = publication_header(
        publication,
        ctx.content.list_attachments(ctx.experiment.id, reference),
    )
    if publication.status is PublicationStatus.PUBLISHED:
        reviews = "\n\n".join(
            f"{review_header(r)}\n{r.content or ''}"
            for r in publication.reviews
        )
    else:
        reviews = "(reviews are hidden until publication/rejection)"
    return f"{header}\n\n{content}\n\n{reviews}"


def _submit_publication(ctx: ToolContext, args: Dict[str, Any]) -> str:
    title = _require_str(args, "title")
    content = _require_str(args, "content")
    attachments = args.get("attachments") or []
    if not isinstance(attachments, list) or not all(
        isinstance(a, str) for a in attachments
    ):
        raise InvalidParametersError(
            "'attachments' must be a list of file paths"
        )

    attach = None
    if attachments:
        handle = ctx.computer_handle()

        def attach(reference: str) -> None:
            target = ctx.content.attachments_dir(
                ctx.experiment.id, reference
            )
            target.mkdir(parents=True, exist_ok=True)
            for remote_path in attachments:
                ctx.computers.computer.copy_out(
                    handle,
                    remote_path,
                    target / posixpath.basename(remote_path),
                )

    ctx.publications.submit(
        ctx.experiment,
        ctx.agent_index,
        title,
        content,
        attach=attach,
    )
    return "Publication submitted."


def _download_publication_attachments(
    ctx: ToolContext, args: Dict[str, Any]
) -> str:
    reference = _require_str(args, "reference")
    ctx.publications.get(ctx.experiment, reference)
    source = ctx.content.attachments_dir(ctx.experiment.id, reference)
    if not source.is_dir():
        raise NotFoundError("Attachment files not found")
    handle = ctx.computer_handle()
    remote_dir = f"{WORKDIR}/publications"
    computer = ctx.computers.computer
    computer.execute(handle, f"mkdir -p {remote_dir}")
    computer.copy_in(handle, source, remote_dir)
    return f"Attachment downloaded to {remote_dir}/{reference}."


def _list_review_requests(ctx: ToolContext, args: Dict[str, Any]) -> str:
    return render_list_of_publications(
        ctx,
        ctx.publications.list_pending_reviews_for(
            ctx.experiment, ctx.agent_index
        ),
    )


def _list_submitted_publications(
    ctx: ToolContext, args: Dict[str, Any]
) -> str:
    return render_list_of_publications(
        ctx,
        ctx.publications.list_by_author(ctx.experiment, ctx.agent_index),
    )


def _submit_review(ctx: ToolContext, args: Dict[str, Any]) -> str:
    reference = _require_str(args, "publication")
    grade = _require_str(args, "grade")
    content = _require_str(args, "content")
    ctx.publications.get(ctx.experiment, reference)
    ctx.publications.submit_review(
        ctx.experiment, reference, ctx.agent_index, grade, content
    )
    return f"Review submitted for publication [{reference}]."


def create_publications_server(has_computer: bool = False) -> ToolServer:
    submit_properties: Dict[str, Any] = {
        "title": {
            "type": "string",
            "description": "Title of the publication.",
        },
        "content": {
            "type": "string",
            "description": (
                "Full content of the publication. Use [{ref}] or "
                "[{ref},{ref}] inlined in content for citations."
            ),
        },
    }
    if has_computer:
        submit_properties["attachments"] = {
            "type": "array",
            "items": {"type": "string"},
            "description": (
                "Optional paths to files in your computer to attach to "
                "the publication."
            ),
        }

    tools = [
        ToolSpec(
            name="list_publications",
            description="List publications available in the system.",
            parameters=_schema(
                {
                    "order": {
                        "type": "string",
                        "enum": ["latest", "citations"],
                        "description": (
                            "Ordering to use: `latest` lists the most "
                            "recent publications, `citations` the most "
                            "cited ones. Defaults to `latest`."
                        ),
                    },
                    "limit": {
                        "type": "number",
                        "description": (
                            "Maximum number of publications to return. "
                            "Defaults to 10."
                        ),
                    },
                    "offset": {
                        "type": "number",
                        "description": (
                            "Offset for pagination. Defaults to 0."
                        ),
                    },
                }
            ),
            handler=_list_publications,
        ),
        ToolSpec(
            name="get_publication",
            description="Retrieve a specific publication.",
            parameters=_schema(
                {
                    "reference": {
                        "type": "string",
                        "description": "Reference of the publication.",
                    }
                },
                required=["reference"],
            ),
            handler=_get_publication,
        ),
        ToolSpec(
            name="submit_publication",
            description=(
                "Submit a new publication for review and publication."
            ),
            parameters=_schema(
                submit_properties, required=["title", "content"]
            ),
            handler=_submit_publication,
        ),
        ToolSpec(
            name="list_review_requests",
            description=(
                "List pending review requests received by the caller."
            ),
            parameters=_schema(),
            handler=_list_review_requests,
        ),
        ToolSpec(
            name="list_submitted_publications",
            description="List publications submitted by the caller.",
            parameters=_schema(),
            handler=_list_submitted_publications,
        ),
        ToolSpec(
            name="submit_review",
            description="Submit a review for a publication.",
            parameters=_schema(
                {
                    "publication": {
                        "type": "string",
                        "description": (
                            "The reference of the publication to review."
                        ),
                    },
                    "grade": {
                        "type": "string",
                        "enum": ["ACCEPT", "REJECT"],
                        "description": "Grade for the publication.",
                    },
                    "content": {
                        "type": "string",
                        "description": "Content of the review.",
                    },
                },
                required=["publication", "grade", "content"],
            ),
            handler=_submit_review,
        ),
    ]
    if has_computer:
        tools.insert(
            3,
            ToolSpec(
                name="download_publication_attachments",
                description=(
                    "Download the attachments of a publication to your "
                    "computer. They are saved under "
                    f"{WORKDIR}/publications/<reference>."
                ),
                parameters=_schema(
                    {
                        "reference": {
                            "type": "string",
                            "description": "Reference of the publication.",
                        }
                    },
                    required=["reference"],
                ),
                handler=_download_publication_attachments,
            ),
        )
    return ToolServer(
        name="publications",
        title=(
            "Publications: Tools to submit, review and access "
            "publications."
        ),
        tools=tools,
    )


# -- goal solution --------------------------------------------------------


def _report(ctx: ToolContext, args: Dict[str, Any]) -> str:
    reference = _require_str(args, "publication")
    publication = ctx.publications.get(ctx.experiment, reference)
    if publication.status is not PublicationStatus.PUBLISHED:
        raise InvalidParametersError("Publication is not published")
    ctx.solutions.vote(ctx.experiment.id, ctx.agent_index, publication.id)
    return "Successfully reported."


def create_goal_solution_server() -> ToolServer:
    return ToolServer(
        name="goal_solution",
        title=(
            "Research goal solution reporting: Tools to report that a "
            "publication is the current best solution to the research goal."
        ),
        tools=[
            ToolSpec(
                name="report",
                description=(
                    "Report belief that a publication is the current "
                    "best/valid solution towards the research goal."
                ),
                parameters=_schema(
                    {
                        "publication": {
                            "type": "string",
                            "description": "The reference of the publication.",
                        }
                    },
                    required=["publication"],
                ),
                handler=_report,
            )
        ],
    )


# -- computer -------------------------------------------------------------


def _execute(ctx: ToolContext, args: Dict[str, Any]) -> str:
    command = _require_str(args, "cmd")
    timeout = None
    if args.get("timeout_ms") is not None:
        timeout = (
            _optional_int(
                args, "timeout_ms", 0, minimum=1, maximum=MAX_TIMEOUT_MS
            )
            / 1000.0
        )
    result = ctx.computers.computer.execute(
        ctx.computer_handle(), command, timeout=timeout
    )
    return truncate(
        f"exit_code: {result.exit_code}\n"
        f"stdout:\n{result.stdout}\n"
        f"stderr:\n{result.stderr}"
    )


def create_computer_server() -> ToolServer:
    return ToolServer(
        name="computer",
        title="Computer: Tools to run commands in your own sandbox.",
        tools=[
            ToolSpec(
                name="execute",
                description=(
                    f"Run a bash command in your computer (working "
                    f"directory {WORKDIR}). Returns exit code, stdout and "
                    f"stderr."
                ),
                parameters=_schema(
                    {
                        "cmd": {
                            "type": "string",
                            "description": "The command to run.",
                        },
                        "timeout_ms": {
                            "type": "number",
                            "description": (
                                "Optional timeout in milliseconds."
                            ),
                        },
                    },
                    required=["cmd"],
                ),
                handler=_execute,
            )
        ],
    )


# -- registry -------------------------------------------------------------


def _error_result(call: ToolCall, code: str, message: str) -> ToolResult:
    return ToolResult(
        tool_call_id=call.id,
        name=call.name,
        is_error=True,
        content=f"Error [{code}]: {message}",
    )


class ToolRegistry:
    """The tool servers enabled for a run, and dispatch over them."""

    def __init__(self, servers: Sequence[ToolServer]) -> None:
        self.servers: Dict[str, ToolServer] = {s.name: s for s in servers}

    @classmethod
    def for_config(cls, config: RunConfig) -> "ToolRegistry":
        servers = [
            create_publications_server(has_computer=config.has_computer),
            create_goal_solution_server(),
        ]
        if config.has_computer:
            servers.append(create_computer_server())
        return cls(servers)

    def definitions(self) -> List[Dict[str, Any]]:
        """litellm ``tools`` payload for every enabled tool."""
        return [
            {
                "type": "function",
                "function": {
                    "name": f"{server.name}{TOOL_NAME_SEPARATOR}{tool.name}",
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for server in self.servers.values()
            for tool in server.tools
        ]

    def lookup(self, name: str) -> Optional[ToolSpec]:
        server_name, sep, tool_name = name.partition(TOOL_NAME_SEPARATOR)
        if not sep or server_name not in self.servers:
            return None
        return self.servers[server_name].find(tool_name)

    def dispatch(self, ctx: ToolContext, call: ToolCall) -> ToolResult:
        """Run *call* on behalf of ``ctx.agent_index``."""
        tool = self.lookup(call.name)
        if tool is None:
            logger.warning(
                f"Agent {ctx.agent_index} called unknown tool {call.name}"
            )
            return _error_result(
                call,
                ErrorCode.INVALID_PARAMETERS.value,
                f"Unknown tool: {call.name}",
            )
        if call.arguments is None:
            return _error_result(
                call,
                ErrorCode.INVALID_PARAMETERS.value,
                f"Could not parse arguments as a JSON object: "
                f"{call.raw_arguments[:200]}",
            )

        logger.debug(
            f"Agent {ctx.agent_index} -> {call.name}({call.arguments})"
        )
        try:
            content = tool.handler(ctx, call.arguments)
        except ResearchError as e:
            logger.info(
                f"Agent {ctx.agent_index} tool {call.name} failed: {e}"
            )
            return _error_result(call, e.code.value, e.message)
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            is_error=False,
            content=content,
        )
