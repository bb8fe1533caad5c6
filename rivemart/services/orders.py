import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, ClassVar, Iterator, Optional

NOT_PROVIDED = "Not provided"
REVIEW_TEXT_LIMIT = 1000


class OrderNotFound(LookupError):
    pass


class InvalidReview(ValueError):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProductLine:
    name: str = "Unknown"
    quantity: int = 1
    unit_price: int = 0
    line_total: int = 0
    attribute: str = NOT_PROVIDED


@dataclass
class Review:
    rating: int
    text: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OrderRecord:
    """Normalized snapshot of one storefront order.

    Amounts are integers in minor units. ``secondary_total`` is flagged with
    ``secondary_estimated`` when it was derived from the configured rate
    instead of read from the payload.
    """

    # fields a repeated webhook delivery is allowed to refresh
    WEBHOOK_FIELDS: ClassVar[tuple[str, ...]] = (
        "lines",
        "email",
        "country",
        "chat_handle",
        "chat_user_id",
        "coupon",
        "currency",
        "total",
        "secondary_currency",
        "secondary_total",
        "secondary_estimated",
        "payment_status",
        "created_at",
    )

    order_id: str
    token: str
    lines: list[ProductLine] = field(default_factory=list)
    email: str = "Unknown"
    country: str = "Unknown"
    chat_handle: str = "Not linked"
    chat_user_id: Optional[int] = None
    coupon: str = "None"
    currency: str = "GBP"
    total: int = 0
    secondary_currency: str = "USD"
    secondary_total: int = 0
    secondary_estimated: bool = False
    payment_status: str = "Paid"
    created_at: datetime = field(default_factory=utcnow)
    completed: bool = False
    completed_at: Optional[datetime] = None
    review: Optional[Review] = None
    email_confirmed: bool = False
    ticket_channel_id: Optional[int] = None
    role_granted: bool = False

    @property
    def product(self) -> str:
        if not self.lines:
            return "Unknown"
        return ", ".join(line.name for line in self.lines)

    @property
    def quantity(self) -> int:
        return sum(line.quantity for line in self.lines) if self.lines else 0

    @property
    def attribute(self) -> str:
        for line in self.lines:
            if line.attribute and line.attribute != NOT_PROVIDED:
                return line.attribute
        return NOT_PROVIDED

    @property
    def created_display(self) -> str:
        return format_datetime(self.created_at.astimezone(timezone.utc), usegmt=True)

    def refresh_from(self, other: "OrderRecord") -> None:
        for name in self.WEBHOOK_FIELDS:
            setattr(self, name, getattr(other, name))

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("token", None)
        payload["created_at"] = self.created_at.isoformat()
        payload["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        if self.review is not None:
            payload["review"]["created_at"] = self.review.created_at.isoformat()
        return payload


def parse_rating(value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidReview("rating must be a whole number from 1 to 5")
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidReview("rating must be a whole number from 1 to 5")
        value = int(value)
    try:
        rating = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidReview("rating must be a whole number from 1 to 5") from None
    if rating < 1 or rating > 5:
        raise InvalidReview("rating must be between 1 and 5")
    return rating


class OrderStore:
    """In-process order table.

    Every read-modify-write on a record runs under that order id's
    ``asyncio.Lock`` so duplicate webhook deliveries racing each other still
    produce a single record, and only one of them reports ``created``.
    """

    def __init__(self):
        self._orders: dict[str, OrderRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    def values(self) -> Iterator[OrderRecord]:
        return iter(list(self._orders.values()))

    def get(self, order_id: str) -> Optional[OrderRecord]:
        return self._orders.get(order_id)

    def lock(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    async def upsert(self, snapshot: OrderRecord) -> tuple[OrderRecord, bool]:
        async with self.lock(snapshot.order_id):
            existing = self._orders.get(snapshot.order_id)
            if existing is None:
                self._orders[snapshot.order_id] = snapshot
                return snapshot, True
            existing.refresh_from(snapshot)
            return existing, False

    async def mark_completed(self, order_id: str) -> bool:
        """Mark an order completed. Returns True only for the call that flipped it."""
        async with self.lock(order_id):
            record = self._require(order_id)
            if record.completed:
                return False
            record.completed = True
            record.completed_at = utcnow()
            return True

    async def add_review(self, order_id: str, rating: Any, text: Optional[str] = None) -> Review:
        parsed = parse_rating(rating)
        body = str(text or "").strip()[:REVIEW_TEXT_LIMIT]
        async with self.lock(order_id):
            record = self._require(order_id)
            record.review = Review(rating=parsed, text=body)
            return record.review

    async def confirm_email(self, order_id: str, email: Optional[str]) -> bool:
        candidate = str(email or "").strip().lower()
        async with self.lock(order_id):
            record = self._require(order_id)
            if not candidate or "@" not in candidate or candidate != record.email.strip().lower():
                return False
            record.email_confirmed = True
            return True

    def _require(self, order_id: str) -> OrderRecord:
        record = self._orders.get(order_id)
        if record is None:
            raise OrderNotFound(order_id)
        return record
