"""Example: run a workflow that plans a trip, with a merge-mode budget sub-workflow.

The engine is scripted so the example runs offline: the budget child asks
for `estimate_cost`, then the parent checks the weather and answers.
"""
import asyncio
from pathlib import Path

from dotprompt_runner.config import configure_logging, load_settings
from dotprompt_runner.engine import ScriptedEngine
from dotprompt_runner.tools.registry import ToolRegistry
from dotprompt_runner.workflow.orchestrator import Orchestrator
from dotprompt_runner.workflow.parser import load_document

HERE = Path(__file__).parent

registry = ToolRegistry()


@registry.tool(outputs=["budget_total"])
def estimate_cost(city: str, days: int):
    """Rough cost of a stay, in EUR."""
    return {"budget_total": days * 120, "currency": "EUR"}


@registry.tool(idempotent=True)
def lookup_weather(city: str):
    """Weather forecast for a city."""
    return {"city": city, "forecast": "sunny", "high_c": 24}


def script():
    return [
        # budget sub-workflow
        {"tool_calls": [{"id": "b1", "name": "estimate_cost", "arguments": {"city": "Lisbon", "days": 3}}]},
        "Budget estimated.",
        # trip-planner
        {"tool_calls": [{"id": "p1", "name": "lookup_weather", "arguments": '{"city": "Lisbon"}'}]},
        "Day 1: Alfama walk. Day 2: Belem by the river. Day 3: Sintra. Total about 360 EUR.",
    ]


async def main():
    settings = load_settings(HERE / "settings.yaml")
    configure_logging(settings.log_level)

    document = load_document(HERE / "workflows" / "trip-planner.prompt.md")
    orchestrator = Orchestrator(ScriptedEngine(script()), registry=registry, settings=settings)

    validation = orchestrator.validate(document)
    for warning in validation.warnings:
        print("warning:", warning)

    result = await orchestrator.run(document, {"city": "Lisbon"})

    print("\n--- RUN RESULT ---")
    print("workflow_id:", result.workflow_id)
    print("status:", result.status.value)
    print("budget_total:", result.variables.get("budget_total"))
    print("output:", result.output)
    print("\n--- INTERACTION LOG ---")
    for message in result.context.log:
        print(f"[{message.role}] {message.content or [c.name for c in message.tool_calls]}")


if __name__ == "__main__":
    asyncio.run(main())
