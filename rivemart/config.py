import os
import secrets
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

from dotenv import load_dotenv

from .utils.logger import logger


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once at startup and never mutated."""

    receipt_secret: str
    discord_token: str = ""
    order_channel_id: Optional[int] = None
    staff_channel_id: Optional[int] = None
    guild_id: Optional[int] = None
    buyer_role_id: Optional[int] = None
    ticket_category_id: Optional[int] = None
    staff_role_id: Optional[int] = None
    staff_chat_key: str = ""
    webhook_secret: str = ""
    attribute_keyword: str = "roblox"
    primary_currency: str = "GBP"
    secondary_currency: str = "USD"
    approx_exchange_rate: float = 1.27
    shop_name: str = "RiveMart"
    discord_invite_url: str = ""
    public_base_url: str = ""
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        receipt_secret = (os.getenv("RECEIPT_SECRET") or "").strip()
        if not receipt_secret:
            logger.warning("RECEIPT_SECRET is not set; receipt links will not survive a restart.")
            receipt_secret = secrets.token_hex(32)

        order_channel_id = _env_int("ORDER_CHANNEL_ID")
        port_value = os.getenv("PORT") or os.getenv("BOT_API_PORT") or "8080"

        return cls(
            receipt_secret=receipt_secret,
            discord_token=(os.getenv("DISCORD_TOKEN") or "").strip(),
            order_channel_id=order_channel_id,
            staff_channel_id=_env_int("STAFF_CHANNEL_ID") or order_channel_id,
            guild_id=_env_int("GUILD_ID"),
            buyer_role_id=_env_int("BUYER_ROLE_ID"),
            ticket_category_id=_env_int("TICKET_CATEGORY_ID"),
            staff_role_id=_env_int("STAFF_ROLE_ID"),
            staff_chat_key=(os.getenv("STAFF_CHAT_KEY") or "").strip(),
            webhook_secret=(os.getenv("SELLAPP_WEBHOOK_SECRET") or "").strip(),
            attribute_keyword=(os.getenv("ATTRIBUTE_KEYWORD") or "roblox").strip().lower() or "roblox",
            primary_currency=(os.getenv("PRIMARY_CURRENCY") or "GBP").strip().upper() or "GBP",
            secondary_currency=(os.getenv("SECONDARY_CURRENCY") or "USD").strip().upper() or "USD",
            approx_exchange_rate=_to_float(os.getenv("APPROX_EXCHANGE_RATE"), default=1.27),
            shop_name=(os.getenv("SHOP_NAME") or "RiveMart").strip() or "RiveMart",
            discord_invite_url=(os.getenv("DISCORD_INVITE_URL") or "").strip(),
            public_base_url=(os.getenv("PUBLIC_BASE_URL") or "").strip().rstrip("/"),
            host=(os.getenv("BOT_API_HOST") or "0.0.0.0").strip() or "0.0.0.0",
            port=_to_int(port_value, default=8080),
        )

    def receipt_url(self, order_id: str, token: str) -> str:
        query = urlencode({"order": order_id, "token": token})
        return f"{self.public_base_url}/receipt?{query}"


def _env_int(key: str) -> Optional[int]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return None
    return _to_int(value.strip(), default=None)


def _to_int(value: Any, default: Optional[int]) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
