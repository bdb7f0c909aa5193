""" Capabilities offered to every workflow run. """

from typing import Optional

from ..capabilities.tool import NativeTool
from ..workflow.context import ExecutionContext

BUILTIN_NAMES = ("record_insight", "set_phase", "invoke_workflow")


async def record_insight(insight: str, context: ExecutionContext) -> dict:
    """Record a key insight about the run so far.  Insights survive checkpoints."""
    context.add_insight(insight)
    return {"recorded": insight, "total": len(context.evolution.key_insights)}


async def set_phase(phase: str, context: ExecutionContext, strategy: Optional[str] = None) -> dict:
    """Update the free-text phase (and optionally strategy) label of the run."""
    context.phase = phase
    if strategy is not None:
        context.strategy = strategy
    return {"phase": context.phase, "strategy": context.strategy}


def builtin_tools():
    """The native built-ins.  invoke_workflow is bound per run by the orchestrator."""
    return [
        NativeTool(record_insight, idempotent=False),
        NativeTool(set_phase, idempotent=True),
    ]
