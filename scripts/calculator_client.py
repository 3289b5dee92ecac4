#!/usr/bin/env python3
"""
Example Agent - Calculator Requester

Demonstrates the requester side of the task pipeline:
1. Registers and discovers agents with the "math" capability
2. Pings the chosen agent and asks for its capabilities
3. Distributes a few "calculate" tasks and waits for their results
4. Runs the same work inside a conversation thread

Usage:
    python -m agentlink.server                 # terminal 1
    python scripts/calculator_agent.py         # terminal 2
    python scripts/calculator_client.py        # terminal 3
"""

import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv

from agentlink import (
    AgentNode,
    NoCapableAgent,
    NodeSettings,
    RegistryUnavailable,
    TaskExecutionFailed,
    TaskSpec,
)

AGENT_ID = "calculator-client"

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


REQUESTS = [
    {"operation": "add", "a": 2, "b": 3},
    {"operation": "multiply", "a": 6, "b": 7},
    {"operation": "divide", "a": 1, "b": 0},
]


async def run(node: AgentNode) -> None:
    calculators = await node.discover("math")
    if not calculators:
        print("No calculator online. Start scripts/calculator_agent.py first.")
        return
    target = calculators[0]
    print(f"\nFound {len(calculators)} calculator(s), using {target.id}")

    pong = await node.router.request(target.id, "ping", expires_in=5)
    caps = await node.router.request(target.id, "get_capabilities", expires_in=5)
    print(f"ping -> {pong.payload}")
    print(f"capabilities -> {caps.payload['capabilities']}")

    conversation = await node.conversations.start_conversation(
        [target.id],
        context={"topic": "arithmetic"},
    )

    for parameters in REQUESTS:
        print("\n" + "-" * 70)
        print(f"Requesting: {json.dumps(parameters)}")
        try:
            task = await node.tasks.distribute_task(
                TaskSpec(name="calculate", parameters=parameters),
                "math",
            )
            done = await node.tasks.wait_for_task(task.id, timeout=10)
            print(f"Result: {done.result}")
            await node.conversations.send_to_conversation(
                conversation.id,
                {"task": task.id, "result": done.result},
            )
        except NoCapableAgent as e:
            print(f"Nobody can do it: {e}")
        except TaskExecutionFailed as e:
            print(f"Task failed: {e.error}")
        except asyncio.TimeoutError:
            print("Timed out waiting for the result")

    await node.conversations.end_conversation(conversation.id)
    print("\n" + "=" * 70)
    print(json.dumps(node.network_stats(), indent=2))


async def main():
    load_dotenv()
    settings = NodeSettings(
        agent_id=AGENT_ID,
        name="Calculator client",
        registry_url=os.getenv("A2A_REGISTRY_URL", "http://localhost:8000"),
        broker_url=os.getenv("A2A_BROKER_URL", "ws://localhost:8000/ws"),
        discovery_ttl=0,
    )

    try:
        async with AgentNode.from_settings(settings) as node:
            await node.transport.wait_connected(timeout=10)
            await run(node)
    except RegistryUnavailable as e:
        print(f"Cannot reach the registry: {e.reason}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
