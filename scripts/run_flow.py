#!/usr/bin/env python3
"""Run a flow stored as JSON and print the outcome.

Usage:
    python scripts/run_flow.py flow.json --input i1="hello world"

    # runtime inputs may also live in the file under "runtime_inputs";
    # --input values override them. Values that parse as JSON are decoded.
    python scripts/run_flow.py flow.json --input cfg='{"limit": 5}'

Environment Variables:
    OPENAI_API_KEY: enables real AI model calls (placeholder text otherwise)
    NODE_MAX_RETRIES, NODE_RETRY_BACKOFF_MS, NODE_TIMEOUT_MS: retry policy
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def parse_inputs(pairs: List[str]) -> Dict[str, Any]:
    inputs: Dict[str, Any] = {}
    for pair in pairs:
        node_id, sep, raw = pair.partition("=")
        if not sep or not node_id:
            raise ValueError(f"--input expects node=value, got {pair!r}")
        try:
            inputs[node_id] = json.loads(raw)
        except json.JSONDecodeError:
            inputs[node_id] = raw
    return inputs


async def run(payload: Dict[str, Any]) -> Dict[str, Any]:
    # Import here so .env is read after argument parsing
    from nodeflow.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        outcome = await runtime.engine.run_payload(payload)
    finally:
        await runtime.close()
    return outcome.to_dict()


def main():
    parser = argparse.ArgumentParser(
        description="Run a nodeflow flow from a JSON file",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("flow", type=Path, help="Path to a flow JSON document")
    parser.add_argument(
        "--input",
        action="append",
        default=[],
        metavar="NODE=VALUE",
        help="Runtime input for an entry node (repeatable)",
    )
    parser.add_argument("--compact", action="store_true", help="Print single-line JSON")
    args = parser.parse_args()

    try:
        payload = json.loads(args.flow.read_text())
        payload["runtime_inputs"] = {
            **(payload.get("runtime_inputs") or {}),
            **parse_inputs(args.input),
        }
    except (OSError, ValueError, TypeError, AttributeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    from nodeflow.service.errors import ServiceError

    try:
        result = asyncio.run(run(payload))
    except ServiceError as e:
        print(f"Error: {e.message}")
        for detail in (e.detail or {}).get("errors", []):
            print(f"  - {detail}")
        sys.exit(1)

    print(json.dumps(result, indent=None if args.compact else 2, default=str))
    if result["status"] != "completed":
        sys.exit(2)


if __name__ == "__main__":
    main()
