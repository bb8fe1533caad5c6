"""SellApp webhook intake.

The storefront payload is loosely structured and has moved around between
API versions, so every field is read through an ordered list of fallback
paths (``FieldRule``). The first present value wins; when none is present
the rule's default is used. Keep the path order as listed: it is the order
in which the storefront has historically placed each field.
"""

import hashlib
import hmac
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from ..config import Settings
from ..utils import money
from ..utils.logger import logger
from .actions import ActionResult, run_best_effort
from .orders import NOT_PROVIDED, OrderRecord, OrderStore, ProductLine, utcnow
from .tokens import OrderTokenIssuer

ACCEPTED_EVENTS = frozenset({"order.paid", "order.completed"})
ATTRIBUTE_LISTS = ("additional_information", "custom_fields")


@dataclass(frozen=True)
class FieldRule:
    name: str
    paths: tuple[str, ...]
    default: Any = None

    def extract(self, payload: Any) -> Any:
        for path in self.paths:
            value = lookup(payload, path)
            if not is_absent(value):
                return value
        return self.default


ORDER_RULES = {
    rule.name: rule
    for rule in (
        FieldRule("order_id", ("id", "order_id", "invoice_id")),
        FieldRule("variants", ("product_variants", "products", "items"), []),
        FieldRule("email", ("customer_information.email", "customer.email", "email"), "Unknown"),
        FieldRule("country", ("customer_information.country", "customer.country", "country"), "Unknown"),
        FieldRule(
            "chat_handle",
            ("customer_information.discord_data.username", "customer.discord_username", "discord_username"),
            "Not linked",
        ),
        FieldRule(
            "chat_user_id",
            (
                "customer_information.discord_data.id",
                "customer_information.discord_data.user_id",
                "customer.discord_id",
            ),
        ),
        FieldRule(
            "coupon",
            (
                "product_variants.0.invoice_payment.payment_details.modifications.0.attributes.code",
                "coupon.code",
                "coupon_code",
            ),
            "None",
        ),
        FieldRule("currency", ("payment.full_price.currency", "payment.currency", "currency")),
        FieldRule("total", ("payment.full_price.base", "payment.total.base", "payment.full_price.total")),
        FieldRule("secondary_total", ("payment.total.gross_sale_usd",)),
        FieldRule("exchange_rate", ("payment.total.exchange_rate", "payment.exchange_rate")),
        FieldRule("payment_status", ("status", "payment.status"), "Paid"),
        FieldRule("created_at", ("created_at", "createdAt")),
    )
}

VARIANT_RULES = {
    rule.name: rule
    for rule in (
        FieldRule("name", ("product_title", "title", "product.title", "name"), "Unknown"),
        FieldRule("quantity", ("quantity", "qty"), 1),
        FieldRule("unit_price", ("unit_price", "price", "invoice_payment.payment_details.unit_price"), 0),
        FieldRule("line_total", ("total", "invoice_payment.payment_details.total")),
    )
}


def lookup(payload: Any, path: str) -> Any:
    current = payload
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def is_absent(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def find_attribute(variant: dict[str, Any], keyword: str) -> str:
    for key in ATTRIBUTE_LISTS:
        entries = variant.get(key)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            label = str(entry.get("label") or "").lower()
            if keyword and keyword in label:
                value = entry.get("value")
                return NOT_PROVIDED if is_absent(value) else str(value).strip()
    return NOT_PROVIDED


def parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        ts = float(raw)
        if ts > 10_000_000_000:
            ts /= 1000
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return utcnow()
    raw_s = str(raw or "").strip()
    if not raw_s:
        return utcnow()
    if raw_s.isdigit():
        return parse_timestamp(int(raw_s))
    try:
        parsed = datetime.fromisoformat(raw_s.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable order timestamp {raw_s!r}; using time of receipt.")
        return utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_int(value: Any, default: Optional[int]) -> Optional[int]:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def _to_rate(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(rate) or rate <= 0:
        return None
    return rate


@dataclass
class IntakeResult:
    status: str
    record: Optional[OrderRecord] = None
    created: bool = False
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"


class IntakePipeline:
    def __init__(
        self,
        settings: Settings,
        store: OrderStore,
        issuer: OrderTokenIssuer,
        notifier: Any = None,
        fulfillment: Any = None,
    ):
        self.settings = settings
        self.store = store
        self.issuer = issuer
        self.notifier = notifier
        self.fulfillment = fulfillment

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        secret = self.settings.webhook_secret
        if not secret:
            return True
        if not signature:
            return False
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        try:
            return hmac.compare_digest(expected, signature.strip().lower())
        except TypeError:
            return False

    async def process(self, event: Any, data: Any) -> IntakeResult:
        event_name = str(event or "").strip().lower()
        if event_name not in ACCEPTED_EVENTS:
            logger.info(f"Ignoring webhook event {event_name or '<none>'}.")
            return IntakeResult(status="ignored", reason="unhandled event")

        if not isinstance(data, dict):
            logger.warning(f"Webhook {event_name} carried no order object.")
            return IntakeResult(status="ignored", reason="missing order data")

        snapshot = self.build_record(data)
        if snapshot is None:
            logger.warning(f"Webhook {event_name} carried no order id.")
            return IntakeResult(status="ignored", reason="missing order id")

        record, created = await self.store.upsert(snapshot)
        if created:
            logger.info(f"Order {record.order_id} recorded ({record.product} x{record.quantity}).")
        else:
            logger.info(f"Order {record.order_id} redelivered; record refreshed, side effects skipped.")
        return IntakeResult(status="accepted", record=record, created=created)

    def build_record(self, data: dict[str, Any]) -> Optional[OrderRecord]:
        raw_id = ORDER_RULES["order_id"].extract(data)
        if is_absent(raw_id) or isinstance(raw_id, (dict, list)):
            return None
        order_id = str(raw_id).strip()

        lines = self._build_lines(ORDER_RULES["variants"].extract(data))
        currency = str(ORDER_RULES["currency"].extract(data) or self.settings.primary_currency).strip().upper()
        total = _to_int(ORDER_RULES["total"].extract(data), default=None)
        if total is None:
            total = sum(line.line_total for line in lines)

        secondary_currency = self.settings.secondary_currency
        secondary_total, estimated = self._secondary_total(data, currency, total)

        chat_user_id = _to_int(ORDER_RULES["chat_user_id"].extract(data), default=None)

        return OrderRecord(
            order_id=order_id,
            token=self.issuer.issue(order_id),
            lines=lines,
            email=str(ORDER_RULES["email"].extract(data)).strip(),
            country=str(ORDER_RULES["country"].extract(data)).strip(),
            chat_handle=str(ORDER_RULES["chat_handle"].extract(data)).strip(),
            chat_user_id=chat_user_id if chat_user_id and chat_user_id > 0 else None,
            coupon=str(ORDER_RULES["coupon"].extract(data)).strip(),
            currency=currency,
            total=total,
            secondary_currency=secondary_currency,
            secondary_total=secondary_total,
            secondary_estimated=estimated,
            payment_status=str(ORDER_RULES["payment_status"].extract(data)).strip().capitalize(),
            created_at=parse_timestamp(ORDER_RULES["created_at"].extract(data)),
        )

    def _build_lines(self, variants: Any) -> list[ProductLine]:
        if isinstance(variants, dict):
            variants = [variants]
        if not isinstance(variants, list):
            return []

        lines: list[ProductLine] = []
        for variant in variants:
            if not isinstance(variant, dict):
                continue
            quantity = _to_int(VARIANT_RULES["quantity"].extract(variant), default=1)
            if quantity is None or quantity <= 0:
                quantity = 1
            unit_price = _to_int(VARIANT_RULES["unit_price"].extract(variant), default=0) or 0
            line_total = _to_int(VARIANT_RULES["line_total"].extract(variant), default=None)
            if line_total is None:
                line_total = unit_price * quantity
            lines.append(
                ProductLine(
                    name=str(VARIANT_RULES["name"].extract(variant)).strip(),
                    quantity=quantity,
                    unit_price=unit_price,
                    line_total=line_total,
                    attribute=find_attribute(variant, self.settings.attribute_keyword),
                )
            )
        return lines

    def _secondary_total(self, data: dict[str, Any], currency: str, total: int) -> tuple[int, bool]:
        secondary_currency = self.settings.secondary_currency
        if currency == secondary_currency:
            return total, False

        if secondary_currency == "USD":
            reported = _to_int(ORDER_RULES["secondary_total"].extract(data), default=None)
            if reported is not None:
                return reported, False

        rate = _to_rate(ORDER_RULES["exchange_rate"].extract(data)) or self.settings.approx_exchange_rate
        return money.estimate(total, rate), True

    async def dispatch(self, record: OrderRecord) -> list[ActionResult]:
        """Run the side effects of a newly accepted order.

        Each action is attempted independently; a failure is logged and
        reported in the result list, never raised.
        """
        results: list[ActionResult] = []
        if self.notifier is not None:
            results.append(await run_best_effort("order-notification", self.notifier.send_order, record))

        if self.fulfillment is not None and record.chat_user_id:
            results.append(await run_best_effort("buyer-role", self.fulfillment.grant_role, record))
            results.append(await run_best_effort("support-ticket", self.fulfillment.open_ticket, record))

        failed = [result.name for result in results if not result.ok]
        if failed:
            logger.warning(f"Order {record.order_id}: side effects not completed: {', '.join(failed)}")
        return results
