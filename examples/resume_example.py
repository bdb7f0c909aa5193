"""Example: a run that loses its engine halfway, then resumes from its checkpoint.

The second run does not repeat the weather lookup; the engine receives a
resume note with the completed tool calls instead.
"""
import asyncio

from dotprompt_runner.config import configure_logging, load_settings
from dotprompt_runner.engine import ScriptedEngine
from dotprompt_runner.errors import EngineError, OrchestrationFailure
from dotprompt_runner.workflow.orchestrator import Orchestrator
from dotprompt_runner.workflow.parser import load_document

from run_workflow_example import HERE, registry

WORKFLOW_ID = "trip-planner-demo"


async def main():
    settings = load_settings(HERE / "settings.yaml")
    configure_logging(settings.log_level)
    document = load_document(HERE / "workflows" / "trip-planner.prompt.md")

    first = ScriptedEngine([
        {"tool_calls": [{"id": "b1", "name": "estimate_cost", "arguments": {"city": "Porto", "days": 2}}]},
        "Budget estimated.",
        {"tool_calls": [{"id": "p1", "name": "lookup_weather", "arguments": {"city": "Porto"}}]},
        EngineError("connection reset", retryable=False),
    ])
    orchestrator = Orchestrator(first, registry=registry, settings=settings)
    try:
        await orchestrator.run(document, {"city": "Porto", "days": 2}, workflow_id=WORKFLOW_ID)
    except OrchestrationFailure as e:
        print("first run failed:", e)
        print("checkpoints:", orchestrator.checkpoints.list_checkpoints())

    second = ScriptedEngine([
        lambda request: f"Two days in Porto, sunny, about 240 EUR. ({len(request.history)} log entries seen)",
    ])
    orchestrator = Orchestrator(second, registry=registry, settings=settings)
    result = await orchestrator.resume(WORKFLOW_ID, document)

    print("\n--- RESUMED RUN ---")
    print("status:", result.status.value)
    print("resume note:\n" + second.requests[0].history[-1].content)
    print("output:", result.output)
    print("tool calls:", [t.name for t in result.context.completed_tools])


if __name__ == "__main__":
    asyncio.run(main())
