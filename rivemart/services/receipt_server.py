import asyncio
import json
from typing import Any, Awaitable, Optional

from aiohttp import WSMsgType, web
from jinja2 import Environment, PackageLoader, select_autoescape

from ..config import Settings
from ..utils import money
from ..utils.logger import logger
from .actions import run_best_effort
from .chat import ChatConnection, ChatError, ChatRelay
from .intake import IntakePipeline
from .notifier import mask_email
from .orders import InvalidReview, OrderRecord, OrderStore
from .tokens import OrderTokenIssuer

PAGE_PATHS = {"/success", "/receipt", "/receipt/review", "/receipt/confirm-email", "/receipt/ticket"}
NOT_FOUND_REFRESH_SECONDS = 5


class ReceiptServer:
    """HTTP side of the shop: SellApp webhook, buyer receipt pages and live chat."""

    def __init__(
        self,
        settings: Settings,
        store: OrderStore,
        issuer: OrderTokenIssuer,
        pipeline: IntakePipeline,
        chat: ChatRelay,
        notifier: Any = None,
        fulfillment: Any = None,
    ):
        self.settings = settings
        self.host = settings.host
        self.port = settings.port
        self.store = store
        self.issuer = issuer
        self.pipeline = pipeline
        self.chat = chat
        self.notifier = notifier
        self.fulfillment = fulfillment
        self.templates = Environment(
            loader=PackageLoader("rivemart", "templates"),
            autoescape=select_autoescape(["html"]),
        )
        self.templates.filters["money"] = money.display
        self._tasks: set[asyncio.Task] = set()

        self.app = web.Application(middlewares=[self._error_middleware])
        self.app.router.add_get("/health", self.health)
        self.app.router.add_post("/sellapp-webhook", self.sellapp_webhook)
        self.app.router.add_get("/success", self.success)
        self.app.router.add_get("/receipt", self.receipt)
        self.app.router.add_post("/receipt/review", self.submit_review)
        self.app.router.add_post("/receipt/confirm-email", self.confirm_email)
        self.app.router.add_post("/receipt/ticket", self.open_ticket)
        self.app.router.add_get("/chat", self.chat_socket)
        self.app.on_shutdown.append(self._on_shutdown)

        self.runner: Optional[web.AppRunner] = None

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as exc:
            logger.exception(f"Receipt server error on {request.path}: {exc}")
            if request.path in PAGE_PATHS:
                return self._page(
                    "message.html",
                    status=500,
                    heading="Something went wrong",
                    message="Please try again in a moment.",
                    error=True,
                )
            return web.json_response({"ok": False, "message": "internal server error"}, status=500)

    async def start(self) -> None:
        if self.runner is not None:
            return

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"Receipt server listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self.runner is None:
            return

        await self.runner.cleanup()
        self.runner = None
        logger.info("Receipt server stopped.")

    async def drain(self) -> None:
        """Wait for background side effects that are still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _on_shutdown(self, app: web.Application) -> None:
        await self.drain()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def health(self, request: web.Request):
        return web.json_response(
            {
                "ok": True,
                "orders": len(self.store),
                "order_channel_configured": bool(self.settings.order_channel_id),
                "staff_channel_configured": bool(self.settings.staff_channel_id),
                "staff_chat_enabled": bool(self.settings.staff_chat_key),
            }
        )

    async def sellapp_webhook(self, request: web.Request):
        try:
            body = await request.read()
            if not self.pipeline.verify_signature(body, request.headers.get("signature")):
                logger.warning("Rejected SellApp webhook with a bad signature.")
                return web.json_response({"message": "Invalid signature"}, status=401)

            try:
                payload = json.loads(body.decode("utf-8") or "{}")
            except (UnicodeDecodeError, json.JSONDecodeError):
                return web.json_response({"message": "Invalid JSON"}, status=400)
            if not isinstance(payload, dict):
                return web.json_response({"message": "Ignored"})

            event = payload.get("event")
            logger.info(f"Webhook received: {event}")
            result = await self.pipeline.process(event, payload.get("data"))
            if not result.accepted:
                return web.json_response({"message": "Ignored"})

            if result.created:
                self._spawn(self.pipeline.dispatch(result.record))
            return web.json_response({"message": "OK", "orderId": result.record.order_id})
        except Exception as exc:
            logger.exception(f"Webhook error: {exc}")
            return web.json_response({"message": "Handled with error"}, status=500)

    async def success(self, request: web.Request):
        order_id = str(request.query.get("order", "")).strip()
        if not order_id:
            return self._invalid_link()
        raise web.HTTPSeeOther(location=self.settings.receipt_url(order_id, self.issuer.issue(order_id)))

    async def receipt(self, request: web.Request):
        order_id = str(request.query.get("order", "")).strip()
        token = str(request.query.get("token", "")).strip()
        if not order_id or not token:
            return self._invalid_link()

        record, rejection = self._authorized_record(order_id, token, as_json=False)
        if rejection is not None:
            return rejection

        return self._page(
            "receipt.html",
            order=record,
            token=token,
            masked_email=mask_email(record.email),
            total=money.display(record.total, record.currency),
            secondary_total=(
                money.display(record.secondary_total, record.secondary_currency) if record.secondary_total else ""
            ),
            invite_url=self.settings.discord_invite_url,
        )

    async def submit_review(self, request: web.Request):
        payload, as_json = await self._read_payload(request)
        if payload is None:
            return web.json_response({"ok": False, "message": "invalid json body"}, status=400)

        order_id = str(payload.get("order") or payload.get("orderId") or "").strip()
        token = str(payload.get("token") or "").strip()
        record, rejection = self._authorized_record(order_id, token, as_json=as_json)
        if rejection is not None:
            return rejection

        try:
            review = await self.store.add_review(record.order_id, payload.get("rating"), payload.get("text"))
        except InvalidReview as exc:
            return self._reject(as_json, 400, "Review not accepted", str(exc), record, token)

        logger.info(f"Review {review.rating}/5 stored for order {record.order_id}.")
        if self.notifier is not None:
            self._spawn(run_best_effort("review-notice", self.notifier.send_review, record))

        if as_json:
            return web.json_response(
                {
                    "ok": True,
                    "review": {
                        "rating": review.rating,
                        "text": review.text,
                        "createdAt": review.created_at.isoformat(),
                    },
                }
            )
        raise web.HTTPSeeOther(location=self.settings.receipt_url(record.order_id, token))

    async def confirm_email(self, request: web.Request):
        payload, as_json = await self._read_payload(request)
        if payload is None:
            return web.json_response({"ok": False, "message": "invalid json body"}, status=400)

        order_id = str(payload.get("order") or payload.get("orderId") or "").strip()
        token = str(payload.get("token") or "").strip()
        record, rejection = self._authorized_record(order_id, token, as_json=as_json)
        if rejection is not None:
            return rejection

        confirmed = await self.store.confirm_email(record.order_id, payload.get("email"))
        if not confirmed:
            return self._reject(
                as_json, 400, "Email not confirmed", "That email does not match this order.", record, token
            )

        if as_json:
            return web.json_response({"ok": True, "emailConfirmed": True})
        raise web.HTTPSeeOther(location=self.settings.receipt_url(record.order_id, token))

    async def open_ticket(self, request: web.Request):
        payload, as_json = await self._read_payload(request)
        if payload is None:
            return web.json_response({"ok": False, "message": "invalid json body"}, status=400)

        order_id = str(payload.get("order") or payload.get("orderId") or "").strip()
        token = str(payload.get("token") or "").strip()
        record, rejection = self._authorized_record(order_id, token, as_json=as_json)
        if rejection is not None:
            return rejection

        channel_id = record.ticket_channel_id
        if not channel_id and self.fulfillment is not None:
            await run_best_effort("support-ticket", self.fulfillment.open_ticket, record)
            # the channel may exist even when a later step of opening it failed
            channel_id = record.ticket_channel_id

        if not channel_id:
            return self._reject(
                as_json,
                503,
                "Ticket unavailable",
                "We couldn't open a ticket right now. Please reach out to us on Discord.",
                record,
                token,
            )

        channel_url = f"https://discord.com/channels/{self.settings.guild_id or '@me'}/{channel_id}"
        if as_json:
            return web.json_response({"ok": True, "channelId": str(channel_id), "url": channel_url})
        return self._page(
            "message.html",
            heading="Ticket opened",
            message=f"Your support ticket is ready on Discord: {channel_url}",
            back_url=self.settings.receipt_url(record.order_id, token),
        )

    async def chat_socket(self, request: web.Request):
        socket = web.WebSocketResponse(heartbeat=30)
        await socket.prepare(request)
        conn = ChatConnection(socket)

        try:
            async for frame in socket:
                if frame.type == WSMsgType.TEXT:
                    await self._handle_chat_frame(conn, frame.data)
                elif frame.type == WSMsgType.ERROR:
                    logger.warning(f"Chat socket closed with error: {socket.exception()}")
        finally:
            await self.chat.leave(conn)
        return socket

    async def _handle_chat_frame(self, conn: ChatConnection, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            frame = None
        if not isinstance(frame, dict):
            await conn.send_json({"type": "error", "message": "Frames must be JSON objects."})
            return

        kind = str(frame.get("type") or "").strip().lower()
        order_id = frame.get("order") or frame.get("orderId")
        token = frame.get("token")
        try:
            if kind == "join":
                await self.chat.join(conn, order_id, token, frame.get("role"), frame.get("staffKey"))
            elif kind == "send":
                await self.chat.send(conn, order_id, token, frame.get("text"))
            elif kind == "complete":
                await self.chat.complete(conn, order_id, token)
            else:
                raise ChatError(f"Unknown event {kind or '<none>'}.")
        except ChatError as exc:
            await conn.send_json({"type": "error", "message": str(exc)})

    def _authorized_record(
        self, order_id: str, token: str, as_json: bool
    ) -> tuple[Optional[OrderRecord], Optional[web.Response]]:
        # token first: a wrong token must never reveal whether the order exists
        if not order_id or not self.issuer.verify(order_id, token):
            return None, self._reject(
                as_json, 403, "Unauthorized", "This receipt link is not valid for that order."
            )

        record = self.store.get(order_id)
        if record is None:
            if as_json:
                return None, web.json_response(
                    {"ok": False, "message": "order not found yet, try again shortly"}, status=404
                )
            return None, self._page(
                "message.html",
                status=404,
                heading="Order not found yet",
                message="We're still processing your payment. This page will refresh in a few seconds.",
                refresh_seconds=NOT_FOUND_REFRESH_SECONDS,
                error=True,
            )
        return record, None

    def _reject(
        self,
        as_json: bool,
        status: int,
        heading: str,
        message: str,
        record: Optional[OrderRecord] = None,
        token: str = "",
    ) -> web.Response:
        if as_json:
            return web.json_response({"ok": False, "message": message}, status=status)
        back_url = self.settings.receipt_url(record.order_id, token) if record is not None else ""
        return self._page("message.html", status=status, heading=heading, message=message, back_url=back_url, error=True)

    def _invalid_link(self) -> web.Response:
        return self._page(
            "message.html",
            status=403,
            heading="Invalid receipt link",
            message="This link is missing the order or its access token.",
            error=True,
        )

    def _page(self, template: str, status: int = 200, **context: Any) -> web.Response:
        context.setdefault("shop_name", self.settings.shop_name)
        html = self.templates.get_template(template).render(**context)
        return web.Response(text=html, status=status, content_type="text/html")

    async def _read_payload(self, request: web.Request) -> tuple[Optional[dict[str, Any]], bool]:
        if request.content_type == "application/json":
            return await self._safe_json(request), True
        form = await request.post()
        return {key: form.get(key) for key in form.keys()}, False

    async def _safe_json(self, request: web.Request) -> Optional[dict[str, Any]]:
        try:
            body = await request.json()
        except Exception:
            return None
        if not isinstance(body, dict):
            return None
        return body
