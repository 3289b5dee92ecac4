#!/usr/bin/env python3
"""
Example Agent - Calculator Provider

This agent demonstrates a task executor that:
1. Registers with the registry with the "math" capability
2. Connects to the broker and keeps its presence fresh with heartbeats
3. Executes "calculate" tasks assigned to it
4. Reports the result (or failure) back to the requester

Usage:
    python -m agentlink.server                 # in another terminal
    python scripts/calculator_agent.py

Environment (optional, also read from .env):
    A2A_REGISTRY_URL   default http://localhost:8000
    A2A_BROKER_URL     default ws://localhost:8000/ws
"""

import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from agentlink import AgentNode, NodeSettings, RegistryUnavailable, Task

AGENT_ID = "calculator"

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


OPERATIONS = {
    "add": lambda a, b: a + b,
    "subtract": lambda a, b: a - b,
    "multiply": lambda a, b: a * b,
}


async def calculate(task: Task) -> dict:
    """Perform the requested mathematical operation."""
    operation = task.parameters.get("operation", "add")
    a = float(task.parameters.get("a", 0))
    b = float(task.parameters.get("b", 0))

    if operation == "divide":
        if b == 0:
            raise ValueError("Division by zero")
        result = a / b
    elif operation in OPERATIONS:
        result = OPERATIONS[operation](a, b)
    else:
        raise ValueError(f"Unknown operation: {operation}")

    logger.info(f"{a} {operation} {b} = {result}")
    return {"operation": operation, "operands": [a, b], "result": result}


async def main():
    load_dotenv()
    settings = NodeSettings(
        agent_id=AGENT_ID,
        name="Calculator",
        description="Basic arithmetic",
        capabilities=["math"],
        registry_url=os.getenv("A2A_REGISTRY_URL", "http://localhost:8000"),
        broker_url=os.getenv("A2A_BROKER_URL", "ws://localhost:8000/ws"),
    )

    print("=" * 70)
    print("CALCULATOR AGENT STARTING")
    print("=" * 70)
    print(f"Agent ID: {settings.agent_id}")
    print(f"Registry: {settings.registry_url}")
    print(f"Broker:   {settings.broker_url}")
    print("=" * 70)

    node = AgentNode.from_settings(settings)
    node.tasks.register_executor("calculate", calculate)

    try:
        async with node:
            print("\nWaiting for calculate tasks (Ctrl+C to stop)...")
            await asyncio.Event().wait()
    except RegistryUnavailable as e:
        print(f"\nCannot reach the registry: {e.reason}")
        print("Start the server with:")
        print("   python -m agentlink.server")
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nCALCULATOR AGENT SHUTTING DOWN")
