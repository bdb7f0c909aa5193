"""
Orchestrator: drives one workflow run against the engine.

Each turn renders the body against the current variables, sends it with
the interaction log and the offered tool schemas to the engine, and either
finishes on final text or runs the requested tools and loops.  Run states:

    not_started -> in_progress -> completed | failed | cancelled

A failing tool is reported to the engine as a tool message and never fails
the run on its own.  Engine failures, malformed engine responses, runtime
sub-workflow recursion and the overall run timeout fail the run.
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..capabilities.base import Capability, ToolResult
from ..capabilities.workflow_call import SubWorkflowTool
from ..config import RunnerSettings
from ..engine import Engine, EngineRequest, EngineResponse
from ..errors import (
    CheckpointCorruption,
    CheckpointError,
    CompatibilityMismatch,
    EngineError,
    MissingVariableError,
    OrchestrationFailure,
    RunTimeoutError,
    ToolExecutionFailure,
    WorkflowError,
)
from ..tools.builtin import BUILTIN_NAMES, builtin_tools
from ..tools.registry import ToolRegistry, default_registry
from .checkpoint import CheckpointManager, CompatibilityResult
from .composer import SubWorkflowComposer, plan_call
from .context import ExecutionContext, Message, RunStatus, ToolCall
from .models import SubWorkflowInvocation, WorkflowDocument
from .parameters import effective_defaults, resolve_parameters
from .parser import body_line_offset
from .resolver import compile_template, format_value, missing_variables, render
from .validator import ValidationResult, validate_document

logger = logging.getLogger(__name__)

MAX_RESULT_CHARS = 2000


@dataclass
class RunResult:
    workflow_id: str
    status: RunStatus
    output: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    context: Optional[ExecutionContext] = None
    error: Optional[str] = None


class _ToolCancelled(Exception):
    pass


class Orchestrator:
    """ Runs workflow documents against an engine, with checkpoints. """

    def __init__(self, engine: Engine, registry: Optional[ToolRegistry] = None,
                 checkpoints: Optional[CheckpointManager] = None,
                 settings: Optional[RunnerSettings] = None):
        self.engine = engine
        self.settings = settings or RunnerSettings()
        self.registry = registry if registry is not None else default_registry
        self.checkpoints = checkpoints or CheckpointManager(self.settings)
        self.composer = SubWorkflowComposer(self)
        self._active: Dict[str, ExecutionContext] = {}
        self._checkpoint_requests: Set[str] = set()

    # ------------------------------------------------------------ entry points
    def validate(self, document: WorkflowDocument) -> ValidationResult:
        known = set(self.registry.names()) | set(BUILTIN_NAMES) | set(self.settings.known_tools)
        return validate_document(document, known_tools=known)

    def prepare(self, document: WorkflowDocument, parameters: Optional[Dict[str, Any]] = None,
                workflow_id: Optional[str] = None,
                inherited: Optional[Dict[str, Any]] = None) -> ExecutionContext:
        """
        Validate the document, resolve parameters and build a fresh context.
        ``inherited`` variables are bound first and overlaid by ``parameters``.
        """
        workflow_id = workflow_id or new_workflow_id(document)
        validation = self.validate(document)
        validation.raise_for_errors(workflow_id)
        for warning in validation.warnings:
            logger.debug("%s: %s", workflow_id, warning)

        parameters = dict(parameters or {})
        inherited = dict(inherited or {})
        resolution = resolve_parameters(document, {**inherited, **parameters}, workflow_id=workflow_id)

        context = ExecutionContext(
            workflow_id=workflow_id,
            workflow_name=document.display_name,
            file_path=document.file_path,
            content_hash=document.content_hash,
            header_hash=document.header_hash,
            source_text=document.source_text,
        )
        declared = set(document.input.parameter_names())
        for name, value in resolution.values.items():
            inherited_only = name in inherited and name not in parameters
            context.set_variable(name, value, source="inherited" if inherited_only else "parameter",
                                 reasoning=resolution.sources[name])
        context.parameter_names = [n for n in resolution.values if n in declared]
        self._check_references(document, context)
        return context

    def _check_references(self, document: WorkflowDocument, context: ExecutionContext) -> None:
        """
        Fail before any sub-workflow or tool runs when the body references a
        name that neither the variables nor a merge-mode plan child provides.
        """
        compiled = compile_template(document.body.text, body_line_offset(document), document.file_path)
        missing = missing_variables(compiled, context.variables)
        if not missing:
            return
        provided = self.composer.plan_outputs(document)
        if provided is None:
            return
        unresolved = [name for name in missing if re.split(r"[.\[]", name, maxsplit=1)[0] not in provided]
        if unresolved:
            raise MissingVariableError(unresolved, workflow_id=context.workflow_id)

    async def run(self, document: WorkflowDocument, parameters: Optional[Dict[str, Any]] = None,
                  workflow_id: Optional[str] = None) -> RunResult:
        """Validate, resolve parameters and run a workflow to a terminal state."""
        context = self.prepare(document, parameters, workflow_id)
        return await self.execute(document, context)

    async def resume(self, workflow_id: str, document: WorkflowDocument, force: bool = False) -> RunResult:
        """
        Continue a run from its checkpoint.  Completed tools are not replayed;
        a resume note listing them is added to the interaction log instead.
        """
        try:
            state = self.checkpoints.load(workflow_id)
        except CheckpointCorruption:
            if not force:
                raise
            logger.warning("Checkpoint for %s is corrupt, trying the newest backup", workflow_id)
            state = self.checkpoints.load(workflow_id, use_backup=True)
        if state is None:
            raise CheckpointError(f"No checkpoint found for {workflow_id}", workflow_id=workflow_id)
        if state.status == RunStatus.COMPLETED:
            raise CheckpointError("Run already completed", workflow_id=workflow_id)

        self.validate(document).raise_for_errors(workflow_id)
        compatibility = self.checkpoints.validate_compatibility(
            state, document, available_tools=self.tool_names(document)
        )
        if not compatibility.can_resume and not force:
            raise CompatibilityMismatch(compatibility, workflow_id=workflow_id)
        for warning in compatibility.warnings:
            logger.warning("%s: %s", workflow_id, warning)

        context = self.reopen(self.checkpoints.restore(state), document, compatibility)
        logger.info("Resuming %s at step %d with %d completed tool call(s) (compatibility %.2f)",
                    workflow_id, context.step, len(context.completed_tools), compatibility.score)
        return await self.execute(document, context)

    def reopen(self, context: ExecutionContext, document: WorkflowDocument,
               compatibility: Optional[CompatibilityResult] = None) -> ExecutionContext:
        """Make a restored context runnable against the current document."""
        context.workflow_name = document.display_name
        context.file_path = document.file_path
        context.content_hash = document.content_hash
        context.header_hash = document.header_hash
        context.source_text = document.source_text

        if context.status in (RunStatus.FAILED, RunStatus.CANCELLED):
            started = any(m.role == "assistant" for m in context.log)
            context.status = RunStatus.IN_PROGRESS if started else RunStatus.NOT_STARTED

        if compatibility is not None and compatibility.requires_adaptation:
            defaults = effective_defaults(document.input)
            for name, value in defaults.values.items():
                if name not in context.variables:
                    context.set_variable(name, value, source="parameter",
                                         reasoning="default added when resuming a changed workflow")
                    context.parameter_names.append(name)

        if context.status == RunStatus.IN_PROGRESS:
            context.log.append(Message(role="user", content=resume_note(context)))
        return context

    def cancel(self, workflow_id: Optional[str] = None) -> bool:
        """Signal cancellation to one active run, or to all of them."""
        targets = [self._active[workflow_id]] if workflow_id in self._active else (
            list(self._active.values()) if workflow_id is None else []
        )
        for context in targets:
            logger.info("Cancellation requested for %s", context.workflow_id)
            context.cancel_event.set()
        return bool(targets)

    def request_checkpoint(self, workflow_id: str) -> None:
        """Save the run's checkpoint at its next loop step."""
        self._checkpoint_requests.add(workflow_id)

    # ------------------------------------------------------------------ loop
    async def execute(self, document: WorkflowDocument, context: ExecutionContext) -> RunResult:
        """Drive a prepared (or restored) context to a terminal state."""
        if not context.call_stack and document.file_path:
            context.call_stack = [str(Path(document.file_path).resolve())]
        offered = self.capabilities(document)
        context.available_tools = [c.name for c in offered] + [inv.tool_name for inv in document.invocations]
        self._active[context.workflow_id] = context

        timeout = document.config.timeout_seconds or self.settings.run_timeout_seconds
        logger.info("Starting %s (%s) from %s", context.workflow_id, context.workflow_name, context.status.value)
        try:
            if timeout:
                output = await asyncio.wait_for(self._drive(document, context, offered), timeout)
            else:
                output = await self._drive(document, context, offered)
        except asyncio.TimeoutError:
            error = RunTimeoutError(f"Run exceeded its timeout of {timeout:g}s", workflow_id=context.workflow_id)
            raise self._fail(context, error) from None
        except asyncio.CancelledError:
            context.status = RunStatus.CANCELLED
            logger.info("Run %s cancelled", context.workflow_id)
            self._save(context, best_effort=True)
            raise
        except EngineError as e:
            error = OrchestrationFailure(f"Engine unreachable: {e.message}", workflow_id=context.workflow_id)
            raise self._fail(context, error) from e
        except WorkflowError as e:
            raise self._fail(context, e)
        except Exception as e:
            logger.exception("Unexpected error in run %s", context.workflow_id)
            error = OrchestrationFailure(f"Unexpected error: {type(e).__name__}: {e}",
                                         workflow_id=context.workflow_id)
            raise self._fail(context, error) from e
        finally:
            self._active.pop(context.workflow_id, None)
            self._checkpoint_requests.discard(context.workflow_id)

        if context.is_cancelled and context.status != RunStatus.COMPLETED:
            context.status = RunStatus.CANCELLED
            logger.info("Run %s cancelled at step %d", context.workflow_id, context.step)
            self._save(context, best_effort=True)
        elif context.status == RunStatus.COMPLETED:
            logger.info("Run %s completed after %d step(s)", context.workflow_id, context.step)
            try:
                self.checkpoints.finalize(context.workflow_id, context)
            except CheckpointError as e:
                logger.warning("Could not retire checkpoint for %s: %s", context.workflow_id, e)
        return self._result(context, output)

    async def _drive(self, document: WorkflowDocument, context: ExecutionContext,
                     offered: List[Capability]) -> Optional[str]:
        tools = {c.name: c for c in offered}
        policy = document.extensions.checkpoint
        calls_since_save = 0

        if context.status == RunStatus.NOT_STARTED:
            async def apply_plan_result(invocation: SubWorkflowInvocation, result: ToolResult):
                nonlocal calls_since_save
                self._apply_result(context, plan_call(invocation), result, idempotent=False)
                calls_since_save += 1
                if policy.should_save(calls_since_save):
                    self._save(context)
                    calls_since_save = 0

            await self.composer.run_plan(document, context, apply_plan_result)
            if context.is_cancelled:
                return None
            if not context.log.by_role("user"):
                context.log.append(Message(role="user", content=self.render_prompt(document, context)))

        turns = 0
        while True:
            if context.is_cancelled:
                return None
            if turns >= self.settings.max_turns:
                raise OrchestrationFailure(f"Run exceeded {self.settings.max_turns} engine turns",
                                           workflow_id=context.workflow_id)
            if context.workflow_id in self._checkpoint_requests:
                self._checkpoint_requests.discard(context.workflow_id)
                self._save(context)
                calls_since_save = 0

            request = EngineRequest(
                workflow_id=context.workflow_id,
                prompt=self.render_prompt(document, context),
                history=context.log.entries(),
                tools=[c.schema() for c in offered],
                settings=document.config,
            )
            response = await self._complete(request, document)
            context.log.mark_sent()
            turns += 1
            context.step += 1
            if context.status == RunStatus.NOT_STARTED:
                context.status = RunStatus.IN_PROGRESS

            if response.is_final:
                context.log.append(Message(role="assistant", content=response.text or ""))
                context.status = RunStatus.COMPLETED
                return response.text or ""

            context.log.append(Message(role="assistant", content=response.text or "",
                                       tool_calls=list(response.tool_calls)))
            for index, call in enumerate(response.tool_calls):
                if context.is_cancelled:
                    # every requested call needs a reply for the log to be sendable again
                    for skipped in response.tool_calls[index:]:
                        context.log.append(Message(role="tool", content="Skipped: run cancelled",
                                                   tool_call_id=skipped.id, name=skipped.name))
                    return None
                await self._run_tool(call, tools, document, context)
                calls_since_save += 1
                if policy.should_save(calls_since_save):
                    self._save(context)
                    calls_since_save = 0

    async def _complete(self, request: EngineRequest, document: WorkflowDocument) -> EngineResponse:
        retry = document.extensions.retry
        if document.config.max_retries is not None:
            attempts = document.config.max_retries
        elif retry.retry_attempts:
            attempts = retry.retry_attempts
        else:
            attempts = self.settings.engine_retry_attempts

        attempt = 0
        while True:
            try:
                return await self.engine.complete(request)
            except EngineError as e:
                if not e.retryable or attempt >= attempts:
                    raise
                attempt += 1
                delay = retry.delay_for(attempt, self.settings.retry_delay_seconds)
                logger.warning("Engine call for %s failed (%s); retry %d/%d in %.2fs",
                               request.workflow_id, e.message, attempt, attempts, delay)
                await asyncio.sleep(delay)

    async def _run_tool(self, call: ToolCall, tools: Dict[str, Capability],
                        document: WorkflowDocument, context: ExecutionContext) -> None:
        capability = tools.get(call.name)
        if capability is None:
            self._apply_result(context, call, ToolResult(success=False, error=f"Unknown tool '{call.name}'"))
            return

        timeout = document.extensions.retry.timeout_seconds or self.settings.tool_timeout_seconds
        logger.debug("%s: calling %s(%s)", context.workflow_id, call.name, call.arguments)
        try:
            result = await self._invoke(capability, call.arguments, context, timeout)
        except ToolExecutionFailure as e:
            result = ToolResult(success=False, error=e.reason)
        except asyncio.TimeoutError:
            result = ToolResult(success=False, error=f"timed out after {timeout:g}s")
        except _ToolCancelled:
            context.log.append(Message(role="tool", content="Cancelled before completion",
                                       tool_call_id=call.id, name=call.name))
            return
        except OrchestrationFailure:
            raise
        except Exception as e:
            logger.exception("Tool %s raised an unexpected error", call.name)
            result = ToolResult(success=False, error=str(e) or type(e).__name__)
        self._apply_result(context, call, result, idempotent=capability.idempotent)

    async def _invoke(self, capability: Capability, arguments: Dict[str, Any],
                      context: ExecutionContext, timeout: Optional[float]) -> ToolResult:
        """Run a tool call, racing it against the run's cancellation event."""
        task = asyncio.ensure_future(capability.invoke(arguments, context))
        cancelled = asyncio.ensure_future(context.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, cancelled}, timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancelled.cancel()

        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if context.is_cancelled:
            raise _ToolCancelled()
        raise asyncio.TimeoutError()

    def _apply_result(self, context: ExecutionContext, call: ToolCall, result: ToolResult,
                      idempotent: bool = False) -> None:
        """Record a tool outcome in the context and the interaction log."""
        if not result.success:
            logger.warning("%s: tool %s failed: %s", context.workflow_id, call.name, result.error)
            context.record_tool(call, result.value, success=False, error=result.error)
            context.log.append(Message(role="tool", content=f"Error: {result.error}",
                                       tool_call_id=call.id, name=call.name))
            return

        previous = context.find_completed(call.name, call.arguments)
        for key, value in result.variables.items():
            context.set_variable(key, value, source=f"tool:{call.name}")
        context.record_tool(call, result.value, success=True)

        content = truncate(format_value(result.value))
        if previous is not None:
            note = "idempotent tool" if idempotent else "tool is not idempotent"
            content = f"[repeat of an identical call completed at {previous.executed_at.isoformat()}; {note}]\n{content}"
        context.log.append(Message(role="tool", content=content, tool_call_id=call.id, name=call.name))

    # --------------------------------------------------------------- helpers
    def capabilities(self, document: WorkflowDocument) -> List[Capability]:
        """Tools offered to the engine for this document."""
        offered = self.registry.select(document.tools)
        names = {c.name for c in offered}
        for capability in builtin_tools() + [SubWorkflowTool(self.composer, document)]:
            if capability.name not in names:
                offered.append(capability)
        return offered

    def tool_names(self, document: WorkflowDocument) -> List[str]:
        return [c.name for c in self.capabilities(document)] + [inv.tool_name for inv in document.invocations]

    def render_prompt(self, document: WorkflowDocument, context: ExecutionContext) -> str:
        compiled = compile_template(document.body.text, body_line_offset(document), document.file_path)
        return render(compiled, context.variables, workflow_id=context.workflow_id)

    def _save(self, context: ExecutionContext, best_effort: bool = False) -> None:
        try:
            self.checkpoints.save(context.workflow_id, context)
        except CheckpointError as e:
            if not best_effort:
                raise
            logger.warning("Final checkpoint for %s failed: %s", context.workflow_id, e)

    def _fail(self, context: ExecutionContext, error: WorkflowError) -> WorkflowError:
        context.status = RunStatus.FAILED
        if error.workflow_id is None:
            error.workflow_id = context.workflow_id
        logger.error("Run %s failed: %s", context.workflow_id, error.message)
        self._save(context, best_effort=True)
        if isinstance(error, OrchestrationFailure):
            error.result = self._result(context, None, error=error.message)
        return error

    def _result(self, context: ExecutionContext, output: Optional[str], error: Optional[str] = None) -> RunResult:
        return RunResult(
            workflow_id=context.workflow_id,
            status=context.status,
            output=output,
            variables=dict(context.variables),
            context=context,
            error=error,
        )


def new_workflow_id(document: WorkflowDocument) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", document.display_name.lower()).strip("-") or "workflow"
    return f"{slug}-{uuid.uuid4().hex[:8]}"


def truncate(text: str, limit: int = MAX_RESULT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"... [{len(text) - limit} more characters]"


def resume_note(context: ExecutionContext) -> str:
    """Message that surfaces the completed tool calls to the engine after a resume."""
    lines = [f"Resuming this workflow after an interruption at step {context.step}."]
    if context.phase:
        lines.append(f"Current phase: {context.phase}" + (f" (strategy: {context.strategy})" if context.strategy else ""))
    done = [t for t in context.completed_tools if t.success]
    if done:
        lines.append("These tool calls already completed; use their results instead of calling them again:")
        for tool in done:
            lines.append(f"- {tool.name}({format_value(tool.arguments)}) -> {truncate(format_value(tool.result), 200)}")
    if context.evolution.key_insights:
        lines.append("Key insights so far:")
        lines.extend(f"- {insight}" for insight in context.evolution.key_insights)
    return "\n".join(lines)
