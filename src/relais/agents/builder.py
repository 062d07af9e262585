"""Builder agent invoker: exactly one call per tick, never retried."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import ValidationError

from relais.agents.parsing import excerpt, extract_json_object
from relais.agents.process import AgentFailure, AgentInvocation
from relais.agents.prompts import BUILDER_ROLE
from relais.agents.schema_cache import format_validation_errors
from relais.agents.schemas import BuilderOutput, builder_result_from_output
from relais.agents.transport import detect_stall, transport_stall
from relais.domain.codes import ReportCode
from relais.errors import AgentCancelledError, AgentProcessError, AgentTimeoutError

if TYPE_CHECKING:
    from relais.agents.process import AgentResponse, AgentRunner
    from relais.agents.prompts import PromptRenderer
    from relais.agents.schema_cache import SchemaCache
    from relais.control_plane.cancellation import CancellationToken
    from relais.domain.models import BuilderResult, Task

STAGE: Final[str] = "BUILD"


@dataclass(frozen=True, slots=True)
class BuildResult:
    success: bool
    builder_result: BuilderResult | None
    raw_response: str
    raw_stderr: str
    failure: AgentFailure | None = None
    calls: int = 1


class BuilderInvoker:
    """Hand the task to the builder agent and validate its structured report.

    Invalid output is a STOP (the tick's changes are rejected); a stalled or
    timed-out transport is BLOCKED because partial mutation cannot be ruled out.
    """

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        runner: AgentRunner,
        schema_cache: SchemaCache,
        renderer: PromptRenderer,
        repo_root: Path,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._runner = runner
        self._schema_cache = schema_cache
        self._renderer = renderer
        self._repo_root = repo_root
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def build(self, task: Task, *, cancel_token: CancellationToken) -> BuildResult:
        agent_config = self._config.get("builder", {})
        max_turns = task.builder.max_turns or agent_config.get("max_turns", 40)
        prompt = self._renderer.render(
            BUILDER_ROLE, {"task": task.to_dict(), "max_turns": max_turns}
        ).prompt
        invocation = AgentInvocation.from_config(
            BUILDER_ROLE, agent_config, prompt=prompt, cwd=self._repo_root
        )

        try:
            response = await self._runner.run(invocation, cancel_token=cancel_token)
        except AgentCancelledError as exc:
            return self._failed(AgentFailure(code=ReportCode.STOP_INTERRUPTED, reason=str(exc)))
        except AgentTimeoutError as exc:
            stall = transport_stall(STAGE, f"{exc}\n{exc.stderr}".strip())
            return self._failed(
                AgentFailure(
                    code=ReportCode.BLOCKED_TRANSPORT_STALLED,
                    reason=f"builder did not finish: {exc}",
                    diagnostics=stall.to_diagnostics(),
                )
            )
        except AgentProcessError as exc:
            return self._failed(
                AgentFailure(
                    code=ReportCode.BLOCKED_MISSING_CONFIG,
                    reason=str(exc),
                    diagnostics={"command": list(exc.command)},
                )
            )

        if not response.ok:
            detection = detect_stall(f"{response.stderr}\n{response.stdout}")
            if detection.stalled:
                stall = transport_stall(
                    STAGE, response.stderr or response.stdout, detection.request_id
                )
                return self._failed(
                    AgentFailure(
                        code=ReportCode.BLOCKED_TRANSPORT_STALLED,
                        reason=f"builder transport stalled ({detection.matched_pattern})",
                        diagnostics=stall.to_diagnostics(),
                    ),
                    response,
                )
            return self._failed(
                _invalid("exit", f"builder exited with status {response.exit_code}", response),
                response,
            )

        extraction = extract_json_object(response.stdout)
        if not extraction.ok or extraction.payload is None:
            return self._failed(
                _invalid("json_parse", extraction.error or "unparseable output", response),
                response,
            )
        try:
            output = self._schema_cache.validate(BuilderOutput, extraction.payload)
        except ValidationError as exc:
            return self._failed(
                _invalid(
                    "schema",
                    "builder output failed schema validation",
                    response,
                    schema_errors=format_validation_errors(exc),
                ),
                response,
            )

        shape_errors = _shape_errors(output)
        if shape_errors:
            return self._failed(
                _invalid(
                    "shape",
                    "builder reported inconsistent touched files",
                    response,
                    schema_errors=shape_errors,
                ),
                response,
            )

        result = builder_result_from_output(output)
        self._logger.info(
            "builder_result_accepted",
            subtasks=len(result.subtasks_completed),
            touched=len(result.touched_files.all_paths()),
            blockers=len(result.blockers),
        )
        return BuildResult(
            success=True,
            builder_result=result,
            raw_response=response.stdout,
            raw_stderr=response.stderr,
        )

    def _failed(self, failure: AgentFailure, response: AgentResponse | None = None) -> BuildResult:
        self._logger.warning("builder_failed", code=failure.code.value, reason=failure.reason)
        return BuildResult(
            success=False,
            builder_result=None,
            raw_response=response.stdout if response is not None else "",
            raw_stderr=response.stderr if response is not None else "",
            failure=failure,
        )


def _invalid(
    kind: str,
    reason: str,
    response: AgentResponse,
    *,
    schema_errors: list[str] | None = None,
) -> AgentFailure:
    return AgentFailure(
        code=ReportCode.STOP_BUILDER_OUTPUT_INVALID,
        reason=reason,
        diagnostics={
            "kind": kind,
            "schema_errors": schema_errors or [],
            "stdout_excerpt": excerpt(response.stdout),
            "stderr_excerpt": excerpt(response.stderr),
        },
    )


def _shape_errors(output: BuilderOutput) -> list[str]:
    errors: list[str] = []
    seen: dict[str, str] = {}
    groups = output.touched_files.model_dump()
    for group in ("added", "modified", "deleted", "renamed"):
        for raw in groups[group]:
            posix = PurePosixPath(raw)
            if not raw or posix.is_absolute() or ".." in posix.parts:
                errors.append(f"touched_files.{group}: {raw!r} is not a repository-relative path")
                continue
            previous = seen.get(raw)
            if previous is not None and previous != group:
                errors.append(f"touched_files: {raw!r} listed under both {previous} and {group}")
            seen[raw] = group
    return errors


__all__ = ["BuildResult", "BuilderInvoker"]
