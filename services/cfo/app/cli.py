"""
CFO command line.

    cfo serve                       run the HTTP service (uvicorn)
    cfo status                      ask the running agent for a status dump
    cfo decide                      force a decision cycle now
    cfo approve approval-12         approve a pending approval
    cfo reject approval-12 --reason "too large"
    cfo pause / cfo resume

Everything except `serve` is a one-shot COMMAND message over the agent bus.
The reply is printed as JSON when it arrives within --wait seconds.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Optional

from .bus import AgentMessage, MessageBus, MessageType
from .config import AGENT_ID, HTTP_HOST, HTTP_PORT, NATS_URL

CLI_AGENT_ID = "cfo-cli"


async def send_command(
    command: str,
    args: Dict[str, Any],
    nats_url: str = NATS_URL,
    target: str = AGENT_ID,
    wait: float = 10.0,
) -> Optional[Dict[str, Any]]:
    """Send one command to the agent and wait for its REPORT reply."""
    bus = MessageBus(CLI_AGENT_ID, supervisor_id=target)
    await bus.connect(nats_url)
    loop = asyncio.get_running_loop()
    reply: asyncio.Future = loop.create_future()
    sent_id: Dict[str, str] = {}

    async def on_reply(message: AgentMessage) -> None:
        if message.type != MessageType.REPORT or reply.done():
            return
        if message.payload.get("in_reply_to") == sent_id.get("id"):
            reply.set_result(message.payload)

    try:
        if wait > 0:
            await bus.subscribe(on_reply)
        sent = await bus.send(target, MessageType.COMMAND, {"command": command, **args})
        sent_id["id"] = sent.id
        if wait <= 0:
            return None
        try:
            return await asyncio.wait_for(reply, timeout=wait)
        except asyncio.TimeoutError:
            return None
    finally:
        await bus.close()


def cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run("app.main:app", host=args.host, port=args.port)
    return 0


def cmd_bus(args) -> int:
    payload: Dict[str, Any] = {}
    if getattr(args, "id", None):
        payload["id"] = args.id
    if getattr(args, "reason", None):
        payload["reason"] = args.reason

    response = asyncio.run(send_command(args.command, payload, args.nats_url, args.agent, args.wait))
    if response is None:
        if args.wait > 0:
            print(f"No reply from {args.agent} within {args.wait:.0f}s", file=sys.stderr)
            return 1
        print(f"Sent {args.command} to {args.agent}")
        return 0

    print(json.dumps(response, indent=2, default=str))
    return 0 if response.get("ok", True) else 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="cfo",
        description="CFO agent: run the service or send it operator commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--nats-url", default=NATS_URL, help=f"NATS server (default: {NATS_URL})")
    parser.add_argument("--agent", default=AGENT_ID, help=f"Target agent id (default: {AGENT_ID})")
    parser.add_argument("--wait", type=float, default=10.0, help="Seconds to wait for a reply, 0 to not wait")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP service")
    serve_parser.add_argument("--host", default=HTTP_HOST)
    serve_parser.add_argument("--port", type=int, default=HTTP_PORT)
    serve_parser.set_defaults(func=cmd_serve)

    for name, help_text in (
        ("status", "Print the agent status"),
        ("decide", "Force a decision cycle now"),
    ):
        subparsers.add_parser(name, help=help_text).set_defaults(func=cmd_bus)

    for name, help_text in (
        ("pause", "Pause trading until resumed"),
        ("resume", "Resume trading and cancel any emergency cooldown"),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("--reason", default=None)
        p.set_defaults(func=cmd_bus)

    approve_parser = subparsers.add_parser("approve", help="Approve a pending approval")
    approve_parser.add_argument("id", help="Approval id, e.g. approval-12")
    approve_parser.set_defaults(func=cmd_bus)

    reject_parser = subparsers.add_parser("reject", help="Reject a pending approval")
    reject_parser.add_argument("id", help="Approval id, e.g. approval-12")
    reject_parser.add_argument("--reason", default=None)
    reject_parser.set_defaults(func=cmd_bus)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
