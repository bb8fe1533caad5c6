"""Live chat between a buyer and staff, grouped by order id.

History lives in memory for the life of the process. Each order has its own
lock; joining (history delivery) and sending (append + broadcast) both run
under it, so every participant sees one total order of messages and a late
joiner gets the full history before any new message.
"""

import asyncio
import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..utils.logger import logger
from .actions import run_best_effort
from .orders import OrderRecord, OrderStore, utcnow
from .tokens import OrderTokenIssuer

CUSTOMER = "customer"
STAFF = "staff"
ROLES = (CUSTOMER, STAFF)
MESSAGE_LIMIT = 2000
SEND_TIMEOUT = 5.0


class ChatError(Exception):
    pass


@dataclass
class ChatMessage:
    sender: str
    text: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"sender": self.sender, "text": self.text, "timestamp": self.created_at.isoformat()}


class ChatConnection:
    """One websocket (or any object with ``send_json``) taking part in a chat."""

    def __init__(self, socket: Any):
        self.socket = socket
        self.order_id: Optional[str] = None
        self.role: Optional[str] = None

    async def send_json(self, payload: dict[str, Any]) -> None:
        await self.socket.send_json(payload)


@dataclass
class ChatSession:
    order_id: str
    messages: list[ChatMessage] = field(default_factory=list)
    participants: set[ChatConnection] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    staff_notified: bool = False


Notice = Callable[[OrderRecord], Awaitable[Any]]


class ChatRelay:
    def __init__(
        self,
        store: OrderStore,
        issuer: OrderTokenIssuer,
        staff_key: str = "",
        on_complete: Optional[Notice] = None,
        on_chat_started: Optional[Notice] = None,
        send_timeout: float = SEND_TIMEOUT,
    ):
        self.store = store
        self.issuer = issuer
        self.staff_key = staff_key
        self.on_complete = on_complete
        self.on_chat_started = on_chat_started
        self.send_timeout = send_timeout
        self._sessions: dict[str, ChatSession] = {}

    def session(self, order_id: str) -> ChatSession:
        session = self._sessions.get(order_id)
        if session is None:
            session = ChatSession(order_id=order_id)
            self._sessions[order_id] = session
        return session

    def history(self, order_id: str) -> list[ChatMessage]:
        session = self._sessions.get(order_id)
        return list(session.messages) if session else []

    def participants(self, order_id: str) -> set[ChatConnection]:
        session = self._sessions.get(order_id)
        return set(session.participants) if session else set()

    def _authorize(self, order_id: Any, token: Any) -> OrderRecord:
        if not isinstance(order_id, str) or not order_id.strip():
            raise ChatError("Order id is required.")
        if not self.issuer.verify(order_id, token):
            raise ChatError("Unauthorized.")
        record = self.store.get(order_id)
        if record is None:
            raise ChatError("Order not found yet. Please try again shortly.")
        return record

    def _check_staff_key(self, staff_key: Any) -> None:
        if not self.staff_key:
            raise ChatError("Staff chat is not enabled.")
        if not isinstance(staff_key, str) or not hmac.compare_digest(
            staff_key.encode("utf-8"), self.staff_key.encode("utf-8")
        ):
            raise ChatError("Invalid staff key.")

    def _require_joined(self, conn: ChatConnection, order_id: Any) -> ChatSession:
        if conn.order_id is None or conn.order_id != order_id:
            raise ChatError("Join the chat for this order first.")
        return self.session(conn.order_id)

    async def join(
        self,
        conn: ChatConnection,
        order_id: Any,
        token: Any,
        role: Any = CUSTOMER,
        staff_key: Any = None,
    ) -> list[ChatMessage]:
        role = str(role or CUSTOMER).strip().lower()
        if role not in ROLES:
            raise ChatError("Role must be customer or staff.")
        record = self._authorize(order_id, token)
        if role == STAFF:
            self._check_staff_key(staff_key)

        if conn.order_id is not None:
            await self.leave(conn)

        session = self.session(record.order_id)
        async with session.lock:
            conn.order_id = record.order_id
            conn.role = role
            session.participants.add(conn)
            history = list(session.messages)
            await conn.send_json({"type": "history", "messages": [message.to_dict() for message in history]})
            notify = role == CUSTOMER and not session.staff_notified and self.on_chat_started is not None
            if notify:
                session.staff_notified = True

        logger.info(f"Chat join: order={record.order_id} role={role} participants={len(session.participants)}")
        if notify:
            await run_best_effort("chat-started-notice", self.on_chat_started, record)
        return history

    async def send(self, conn: ChatConnection, order_id: Any, token: Any, text: Any) -> ChatMessage:
        self._authorize(order_id, token)
        session = self._require_joined(conn, order_id)

        body = str(text or "").strip()
        if not body:
            raise ChatError("Message is empty.")
        body = body[:MESSAGE_LIMIT]

        async with session.lock:
            message = ChatMessage(sender=conn.role or CUSTOMER, text=body)
            session.messages.append(message)
            await self._broadcast(session, {"type": "message", "message": message.to_dict()})
        return message

    async def complete(self, conn: ChatConnection, order_id: Any, token: Any) -> bool:
        """Mark the order complete and tell the group. Returns True on the first transition."""
        record = self._authorize(order_id, token)
        session = self._require_joined(conn, order_id)

        first = await self.store.mark_completed(record.order_id)
        async with session.lock:
            await self._broadcast(session, {"type": "completed", "orderId": record.order_id})

        if first:
            logger.info(f"Order {record.order_id} marked complete by {conn.role}.")
            if self.on_complete is not None:
                await run_best_effort("completion-notice", self.on_complete, record)
        return first

    async def leave(self, conn: ChatConnection) -> None:
        if conn.order_id is None:
            return
        session = self._sessions.get(conn.order_id)
        if session is not None:
            session.participants.discard(conn)
        logger.info(f"Chat leave: order={conn.order_id} role={conn.role}")
        conn.order_id = None
        conn.role = None

    async def _broadcast(self, session: ChatSession, payload: dict[str, Any]) -> None:
        # caller holds session.lock; a slow socket is dropped like a failed one
        dropped: list[ChatConnection] = []
        for participant in list(session.participants):
            try:
                await asyncio.wait_for(participant.send_json(payload), timeout=self.send_timeout)
            except Exception as exc:
                logger.warning(f"Dropping chat participant on order {session.order_id}: {exc!r}")
                dropped.append(participant)

        for participant in dropped:
            session.participants.discard(participant)
            participant.order_id = None
            participant.role = None
