"""
Agent Message Bus Client

Typed messages between the CFO and its peer agents over NATS JetStream.

Subjects:
    cfo.agents.<agent_id>   inbox of one agent (commands, intel, requests)

Messages are pydantic models serialized as JSON. Inbound messages are
acknowledged after the handler returns; expired messages are acked and
dropped without reaching the handler.

@module bus
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

import nats
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)

STREAM_NAME = "CFO_AGENTS"
SUBJECT_PREFIX = "cfo.agents"


class MessageType(str, Enum):
    INTEL = "intel"
    ALERT = "alert"
    REPORT = "report"
    REQUEST = "request"
    COMMAND = "command"
    STATUS = "status"
    HEARTBEAT = "heartbeat"


class MessagePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AgentMessage(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    from_agent: str
    to_agent: str
    type: MessageType
    priority: MessagePriority = MessagePriority.MEDIUM
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) > self.expires_at


MessageHandler = Callable[[AgentMessage], Awaitable[None]]


def inbox_subject(agent_id: str) -> str:
    return f"{SUBJECT_PREFIX}.{agent_id}"


async def ensure_stream(js, name: str, subjects) -> None:
    """Ensures a NATS JetStream stream exists."""
    try:
        await js.stream_info(name)
    except Exception:
        await js.add_stream(name=name, subjects=subjects)


class MessageBus:
    """
    Send and receive agent messages.

    Usage:
        bus = MessageBus("cfo", supervisor_id="nova-supervisor")
        await bus.connect("nats://localhost:4222")
        await bus.subscribe(handle_message)
        await bus.report_to_supervisor(MessageType.STATUS, {"ok": True})
    """

    def __init__(self, agent_id: str, supervisor_id: str = "nova-supervisor"):
        self.agent_id = agent_id
        self.supervisor_id = supervisor_id
        self.nc = None
        self.js = None
        self._subscription = None

    @property
    def connected(self) -> bool:
        return self.nc is not None and self.nc.is_connected

    async def connect(self, url: str) -> None:
        self.nc = await nats.connect(url)
        self.js = self.nc.jetstream()
        await ensure_stream(self.js, STREAM_NAME, [f"{SUBJECT_PREFIX}.>"])
        logger.info(f"Message bus connected to {url} as {self.agent_id}")

    async def send(
        self,
        to: str,
        type: MessageType,
        payload: Dict[str, Any],
        priority: MessagePriority = MessagePriority.MEDIUM,
        expires_in: Optional[timedelta] = None,
    ) -> AgentMessage:
        message = AgentMessage(
            from_agent=self.agent_id,
            to_agent=to,
            type=type,
            priority=priority,
            payload=payload,
        )
        if expires_in is not None:
            message.expires_at = message.created_at + expires_in

        if self.js is None:
            logger.warning(f"Bus not connected, dropping {type.value} message to {to}")
            return message

        await self.js.publish(inbox_subject(to), message.model_dump_json().encode())
        return message

    async def report_to_supervisor(
        self,
        type: MessageType,
        payload: Dict[str, Any],
        priority: MessagePriority = MessagePriority.MEDIUM,
    ) -> AgentMessage:
        body = dict(payload)
        body.setdefault("source", self.agent_id)
        body.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        return await self.send(self.supervisor_id, type, body, priority)

    async def subscribe(self, handler: MessageHandler) -> None:
        """Deliver this agent's inbox to `handler`, acking each message."""

        async def _on_message(msg) -> None:
            try:
                message = AgentMessage.model_validate_json(msg.data.decode())
            except ValueError as e:
                logger.error(f"Dropping malformed bus message: {e}")
                await msg.ack()
                return

            if message.is_expired():
                logger.info(f"Dropping expired {message.type.value} message {message.id}")
                await msg.ack()
                return

            try:
                await handler(message)
            except Exception as e:
                logger.exception(f"Handler failed for message {message.id}: {e}")
            await msg.ack()

        self._subscription = await self.js.subscribe(
            inbox_subject(self.agent_id),
            durable=f"{self.agent_id}-inbox",
            cb=_on_message,
            manual_ack=True,
        )

    async def close(self) -> None:
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None
        if self.nc is not None:
            await self.nc.drain()
            self.nc = None
            self.js = None
