"""
Sub-workflow composition.

A sub-workflow runs in its own ExecutionContext built from the parent's
per the inheritance mode:

    isolated  only the explicit parameters
    inherit   parent variables, overlaid with the parameters
    merge     like inherit, and the child's output variables are written
              back into the parent when it completes

A failing child is reported to the parent as a failed tool result.  Only a
runtime recursion (or exceeding max_depth) is fatal to the parent.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..capabilities.base import ToolResult
from ..errors import (
    CheckpointCorruption,
    MissingVariableError,
    OrchestrationFailure,
    ParseError,
    SubWorkflowCycleError,
    ValidationError,
    WorkflowError,
)
from .context import ExecutionContext, RunStatus, ToolCall
from .models import SubWorkflowInvocation, WorkflowDocument
from .parser import load_document
from .resolver import render

logger = logging.getLogger(__name__)

INITIAL_SOURCES = ("parameter", "inherited")


def plan_call(invocation: SubWorkflowInvocation) -> ToolCall:
    """The tool call recorded for a declared sub-workflow."""
    return ToolCall(
        id=f"plan-{invocation.name}",
        name=invocation.tool_name,
        arguments={"path": invocation.path, "mode": invocation.mode, "parameters": invocation.parameters},
    )


class SubWorkflowComposer:
    """Runs sub-workflows through the orchestrator that owns it."""

    def __init__(self, orchestrator):
        self.orchestrator = orchestrator

    def resolve_path(self, parent: WorkflowDocument, path: str) -> Path:
        target = Path(path).expanduser()
        if not target.is_absolute():
            target = parent.base_dir / target
        return target.resolve()

    async def invoke(self, parent_doc: WorkflowDocument, parent_ctx: ExecutionContext,
                     invocation: SubWorkflowInvocation, child_id: str) -> ToolResult:
        """
        Run one sub-workflow to a terminal state.  Never mutates the parent
        context; the returned ToolResult.variables are the writes the
        parent should apply (non-empty only in merge mode).
        """
        path = self.resolve_path(parent_doc, invocation.path)
        stack = list(parent_ctx.call_stack)
        if str(path) in stack:
            chain = " -> ".join(stack + [str(path)])
            raise SubWorkflowCycleError(f"Sub-workflow recursion: {chain}", workflow_id=parent_ctx.workflow_id)
        if len(stack) >= self.orchestrator.settings.max_depth:
            raise SubWorkflowCycleError(
                f"Sub-workflow nesting exceeds max_depth {self.orchestrator.settings.max_depth} at {path}",
                workflow_id=parent_ctx.workflow_id,
            )

        try:
            child_doc = load_document(path)
            parameters = bind_parameters(invocation.parameters, parent_ctx.variables, parent_ctx.workflow_id)
            child_ctx = self._resume_child(child_id, child_doc)
            if child_ctx is None:
                inherited = {} if invocation.mode == "isolated" else dict(parent_ctx.variables)
                child_ctx = self.orchestrator.prepare(child_doc, parameters, workflow_id=child_id,
                                                      inherited=inherited)
        except (ParseError, ValidationError, MissingVariableError) as e:
            logger.warning("Sub-workflow '%s' could not start: %s", invocation.name, e)
            return ToolResult(success=False, error=f"Sub-workflow '{invocation.name}' could not start: {e}")

        child_ctx.parent_id = parent_ctx.workflow_id
        child_ctx.call_stack = stack + [str(path)]
        child_ctx.cancel_event = parent_ctx.cancel_event

        logger.info("Running sub-workflow '%s' (%s, mode %s) as %s",
                    invocation.name, path, invocation.mode, child_id)
        try:
            result = await self.orchestrator.execute(child_doc, child_ctx)
        except SubWorkflowCycleError:
            raise
        except WorkflowError as e:
            logger.warning("Sub-workflow '%s' failed: %s", invocation.name, e)
            return ToolResult(success=False, error=f"Sub-workflow '{invocation.name}' failed: {e.message}",
                              value={"workflow_id": child_id, "status": RunStatus.FAILED.value})

        if result.status != RunStatus.COMPLETED:
            return ToolResult(success=False, error=f"Sub-workflow '{invocation.name}' ended {result.status.value}",
                              value={"workflow_id": child_id, "status": result.status.value})

        outputs = output_variables(child_doc, child_ctx)
        value = {
            "workflow_id": child_id,
            "status": result.status.value,
            "output": result.output,
            "variables": outputs,
        }
        writes = outputs if invocation.mode == "merge" else {}
        return ToolResult(success=True, value=value, variables=writes)

    def _resume_child(self, child_id: str, child_doc: WorkflowDocument) -> Optional[ExecutionContext]:
        """Context of an unfinished, compatible checkpoint for this child, if any."""
        checkpoints = self.orchestrator.checkpoints
        try:
            state = checkpoints.load(child_id)
        except CheckpointCorruption as e:
            logger.warning("Ignoring corrupt checkpoint for %s: %s", child_id, e)
            return None
        if state is None or state.status == RunStatus.COMPLETED:
            return None

        compatibility = checkpoints.validate_compatibility(
            state, child_doc, available_tools=self.orchestrator.tool_names(child_doc)
        )
        if not compatibility.can_resume:
            logger.warning("Checkpoint for %s is not compatible, starting fresh", child_id)
            return None

        logger.info("Resuming sub-workflow %s from its checkpoint (step %d)", child_id, state.step)
        return self.orchestrator.reopen(checkpoints.restore(state), child_doc, compatibility)

    async def run_plan(self, document: WorkflowDocument, context: ExecutionContext,
                       on_result: Callable[[SubWorkflowInvocation, ToolResult], Awaitable[None]]) -> None:
        """
        Run the declared sub-workflows in dependency order.  Invocations
        already completed in the context are skipped.  Ready members of a
        parallel group run concurrently; results are applied through
        ``on_result`` in declaration order.
        """
        invocations = document.invocations
        names = {inv.name for inv in invocations}
        finished = {inv.name for inv in invocations if context.has_completed(inv.tool_name)}
        pending: List[SubWorkflowInvocation] = [inv for inv in invocations if inv.name not in finished]
        for name in finished:
            logger.debug("Skipping sub-workflow '%s', already completed", name)

        while pending:
            if context.is_cancelled:
                return
            ready = [inv for inv in pending
                     if all(dep in finished or dep not in names for dep in inv.depends_on)]
            if not ready:
                raise OrchestrationFailure(
                    f"Unsatisfiable sub-workflow dependencies: {', '.join(inv.name for inv in pending)}",
                    workflow_id=context.workflow_id,
                )

            first = ready[0]
            if first.parallel_group:
                batch = [inv for inv in ready if inv.parallel_group == first.parallel_group]
            else:
                batch = [first]

            results = await run_batch([
                self.invoke(document, context, inv, f"{context.workflow_id}.{inv.name}") for inv in batch
            ])
            for inv, result in zip(batch, results):
                await on_result(inv, result)
                finished.add(inv.name)
                pending.remove(inv)

    def plan_outputs(self, document: WorkflowDocument) -> Optional[Set[str]]:
        """
        Names the merge-mode plan children of a document can write back, or
        None when one of them declares no output schema and may write any name.
        A child that cannot be loaded contributes nothing.
        """
        provided: Set[str] = set()
        for invocation in document.invocations:
            if invocation.mode != "merge":
                continue
            try:
                child = load_document(self.resolve_path(document, invocation.path))
            except ParseError:
                continue
            keys = declared_outputs(child)
            if keys is None:
                return None
            provided.update(keys)
        return provided


async def run_batch(coroutines: List[Awaitable[ToolResult]]) -> List[ToolResult]:
    """
    Run coroutines concurrently and return their results in order.  When one
    raises, the others are cancelled and awaited before the error propagates.
    """
    tasks = [asyncio.ensure_future(c) for c in coroutines]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for task in tasks:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
    return [task.result() for task in tasks]


def bind_parameters(parameters: Dict[str, Any], variables: Dict[str, Any],
                    workflow_id: Optional[str] = None) -> Dict[str, Any]:
    """Render string parameter values as templates against the caller's variables."""
    def _bind(value):
        if isinstance(value, str) and "{{" in value:
            return render(value, variables, workflow_id=workflow_id)
        if isinstance(value, dict):
            return {k: _bind(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_bind(v) for v in value]
        return value
    return {key: _bind(value) for key, value in parameters.items()}


def output_variables(document: WorkflowDocument, context: ExecutionContext) -> Dict[str, Any]:
    """
    Variables a run wrote itself (not its initial bindings), restricted to
    the keys of its output schema when one is declared.
    """
    keys = context.evolution.changed_keys(exclude_sources=INITIAL_SOURCES)
    allowed = declared_outputs(document)
    if allowed is not None:
        keys = [k for k in keys if k in allowed]
    return {k: context.variables[k] for k in keys if k in context.variables}


def declared_outputs(document: WorkflowDocument) -> Optional[List[str]]:
    """Keys of the output schema, or None when none is declared."""
    declared = document.output.schema
    if not declared:
        return None
    allowed = declared.get("properties", declared)
    return list(allowed) if isinstance(allowed, dict) else None
