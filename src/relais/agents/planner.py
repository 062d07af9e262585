"""
relais — planning agent invoker

File: src/relais/agents/planner.py
Last updated: 2026-10-18

Purpose
- Ask the planning agent for exactly one Task and classify every way that can fail.

Functional requirements
- At most two calls per tick. The second call happens only when the first response
  is not syntactically parseable, and only if the cancellation token is still clear.
- A response that parses but fails schema validation is never retried:
  BLOCKED_ORCHESTRATOR_OUTPUT_INVALID with schema diagnostics.
- Timeout without a stall signature -> STOP_ORCHESTRATOR_TIMEOUT.
- Stall signature (timeout or non-zero exit) -> BLOCKED_TRANSPORT_STALLED.
- Cancellation -> STOP_INTERRUPTED.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import ValidationError

from relais.agents.parsing import excerpt, extract_json_object
from relais.agents.process import AgentFailure, AgentInvocation
from relais.agents.prompts import PLANNER_ROLE, with_retry_notice
from relais.agents.schema_cache import format_validation_errors
from relais.agents.schemas import PlannerTask, task_from_planner
from relais.agents.transport import detect_stall, transport_stall
from relais.domain.codes import ReportCode
from relais.errors import AgentCancelledError, AgentProcessError, AgentTimeoutError

if TYPE_CHECKING:
    from relais.agents.process import AgentResponse, AgentRunner
    from relais.agents.prompts import PromptRenderer
    from relais.agents.schema_cache import SchemaCache
    from relais.control_plane.cancellation import CancellationToken
    from relais.domain.models import Task

MAX_PLANNING_ATTEMPTS: Final[int] = 2
STAGE: Final[str] = "ORCHESTRATE"


@dataclass(frozen=True, slots=True)
class PlanningResult:
    """Outcome of the ORCHESTRATE phase."""

    success: bool
    task: Task | None
    error: str | None
    raw_response: str
    raw_stderr: str
    attempts: int
    retry_reason: str | None
    failure: AgentFailure | None = None
    extract_method: str | None = None


class PlanningInvoker:
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

    async def plan(
        self,
        variables: Mapping[str, object],
        *,
        cancel_token: CancellationToken,
    ) -> PlanningResult:
        base_prompt = self._renderer.render(PLANNER_ROLE, variables).prompt
        prompt = base_prompt
        attempts = 0
        retry_reason: str | None = None
        response: AgentResponse | None = None

        for attempt in range(MAX_PLANNING_ATTEMPTS):
            if attempt > 0:
                if cancel_token.cancelled:
                    return self._failed(
                        AgentFailure(
                            code=ReportCode.STOP_INTERRUPTED,
                            reason="interrupted before the planning retry",
                        ),
                        response,
                        attempts,
                        retry_reason,
                    )
                prompt = with_retry_notice(base_prompt, retry_reason or "unparseable output")
                self._logger.info("planner_retry", attempt=attempt + 1, reason=retry_reason)

            attempts += 1
            invocation = AgentInvocation.from_config(
                PLANNER_ROLE,
                self._config.get("orchestrator", {}),
                prompt=prompt,
                cwd=self._repo_root,
            )
            try:
                response = await self._runner.run(invocation, cancel_token=cancel_token)
            except AgentCancelledError as exc:
                return self._failed(
                    AgentFailure(code=ReportCode.STOP_INTERRUPTED, reason=str(exc)),
                    None,
                    attempts,
                    retry_reason,
                )
            except AgentTimeoutError as exc:
                return self._failed(self._classify_timeout(exc), None, attempts, retry_reason)
            except AgentProcessError as exc:
                return self._failed(
                    AgentFailure(
                        code=ReportCode.BLOCKED_MISSING_CONFIG,
                        reason=str(exc),
                        diagnostics={"command": list(exc.command)},
                    ),
                    None,
                    attempts,
                    retry_reason,
                )

            if not response.ok:
                return self._failed(
                    self._classify_exit(response), response, attempts, retry_reason
                )

            extraction = extract_json_object(response.stdout)
            if not extraction.ok or extraction.payload is None:
                retry_reason = f"failed to parse planner output as JSON: {extraction.error}"
                continue

            try:
                planned = self._schema_cache.validate(PlannerTask, extraction.payload)
                task = task_from_planner(planned, self._config)
            except ValidationError as exc:
                return self._failed(
                    self._invalid_output(
                        "planner output failed schema validation",
                        format_validation_errors(exc),
                        response,
                        extraction.method,
                    ),
                    response,
                    attempts,
                    retry_reason,
                )
            except ValueError as exc:
                return self._failed(
                    self._invalid_output(
                        "planner output failed task validation",
                        [str(exc)],
                        response,
                        extraction.method,
                    ),
                    response,
                    attempts,
                    retry_reason,
                )

            self._logger.info(
                "planner_task_accepted",
                task_id=task.task_id,
                task_kind=task.task_kind.value,
                attempts=attempts,
                extract_method=extraction.method,
            )
            return PlanningResult(
                success=True,
                task=task,
                error=None,
                raw_response=response.stdout,
                raw_stderr=response.stderr,
                attempts=attempts,
                retry_reason=retry_reason,
                extract_method=extraction.method,
            )

        return self._failed(
            AgentFailure(
                code=ReportCode.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID,
                reason=retry_reason or "planner output could not be parsed",
                diagnostics={
                    "schema_errors": [],
                    "stdout_excerpt": excerpt(response.stdout) if response else "",
                    "stderr_excerpt": excerpt(response.stderr) if response else "",
                    "extract_method": None,
                },
            ),
            response,
            attempts,
            retry_reason,
        )

    def _classify_timeout(self, exc: AgentTimeoutError) -> AgentFailure:
        detection = detect_stall(f"{exc.stderr}\n{exc.stdout}")
        if detection.stalled:
            stall = transport_stall(STAGE, f"{exc}\n{exc.stderr}".strip(), detection.request_id)
            return AgentFailure(
                code=ReportCode.BLOCKED_TRANSPORT_STALLED,
                reason=f"planner transport stalled ({detection.matched_pattern})",
                diagnostics=stall.to_diagnostics(),
            )
        return AgentFailure(code=ReportCode.STOP_ORCHESTRATOR_TIMEOUT, reason=str(exc))

    def _classify_exit(self, response: AgentResponse) -> AgentFailure:
        detection = detect_stall(f"{response.stderr}\n{response.stdout}")
        if detection.stalled:
            stall = transport_stall(STAGE, response.stderr or response.stdout, detection.request_id)
            return AgentFailure(
                code=ReportCode.BLOCKED_TRANSPORT_STALLED,
                reason=f"planner transport stalled ({detection.matched_pattern})",
                diagnostics=stall.to_diagnostics(),
            )
        return self._invalid_output(
            f"planner exited with status {response.exit_code}", [], response, None
        )

    def _invalid_output(
        self,
        reason: str,
        schema_errors: list[str],
        response: AgentResponse,
        extract_method: str | None,
    ) -> AgentFailure:
        return AgentFailure(
            code=ReportCode.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID,
            reason=reason,
            diagnostics={
                "schema_errors": schema_errors,
                "stdout_excerpt": excerpt(response.stdout),
                "stderr_excerpt": excerpt(response.stderr),
                "extract_method": extract_method,
            },
        )

    def _failed(
        self,
        failure: AgentFailure,
        response: AgentResponse | None,
        attempts: int,
        retry_reason: str | None,
    ) -> PlanningResult:
        self._logger.warning(
            "planner_failed",
            code=failure.code.value,
            reason=failure.reason,
            attempts=attempts,
        )
        extract_method = failure.diagnostics.get("extract_method")
        return PlanningResult(
            success=False,
            task=None,
            error=failure.reason,
            raw_response=response.stdout if response is not None else "",
            raw_stderr=response.stderr if response is not None else "",
            attempts=attempts,
            retry_reason=retry_reason,
            failure=failure,
            extract_method=extract_method if isinstance(extract_method, str) else None,
        )


__all__ = ["MAX_PLANNING_ATTEMPTS", "PlanningInvoker", "PlanningResult"]
