from pathlib import Path
from typing import Any, Dict

from ..errors import ToolExecutionFailure
from ..workflow.context import ExecutionContext
from ..workflow.models import INHERITANCE_MODES, SubWorkflowInvocation, WorkflowDocument
from .base import Capability, ToolResult

PARAMETERS = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "Workflow file, relative to the calling workflow"},
        "parameters": {"type": "object", "description": "Parameter bindings for the sub-workflow"},
        "mode": {"type": "string", "enum": list(INHERITANCE_MODES),
                 "description": "How the sub-workflow sees the caller's variables"},
        "name": {"type": "string", "description": "Label for the invocation"},
    },
    "required": ["path"],
}


class SubWorkflowTool(Capability):
    """Capability that runs another workflow file as a sub-workflow.

    The engine calls it like any other tool:
      - path: *.prompt.md file relative to the calling workflow
      - parameters: bindings for the child (string values are rendered
        against the caller's variables first)
      - mode: inherit (default), isolated or merge
    """

    def __init__(self, composer, document: WorkflowDocument):
        super().__init__(
            name="invoke_workflow",
            description="Run another workflow as a sub-workflow and return its result.",
            parameters=PARAMETERS,
            idempotent=False,
        )
        self.composer = composer
        self.document = document

    async def invoke(self, arguments: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        path = arguments.get("path")
        if not isinstance(path, str) or not path.strip():
            raise ToolExecutionFailure(self.name, "'path' is required")
        parameters = arguments.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise ToolExecutionFailure(self.name, "'parameters' must be an object")
        mode = arguments.get("mode") or "inherit"
        if mode not in INHERITANCE_MODES:
            raise ToolExecutionFailure(self.name, f"unknown mode '{mode}'")

        invocation = SubWorkflowInvocation(
            name=arguments.get("name") or Path(path).name.split(".")[0],
            path=path,
            parameters=parameters,
            mode=mode,
        )
        child_id = f"{context.workflow_id}.{invocation.name}.{context.step}"
        return await self.composer.invoke(self.document, context, invocation, child_id)
