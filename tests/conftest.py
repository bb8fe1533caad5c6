"""Shared fixtures.

Discord is never contacted: the notifier and fulfillment collaborators are
``AsyncMock`` fakes and the receipt server runs on aiohttp's test client.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from rivemart.config import Settings
from rivemart.services.chat import ChatRelay
from rivemart.services.intake import IntakePipeline
from rivemart.services.orders import OrderStore
from rivemart.services.receipt_server import ReceiptServer
from rivemart.services.tokens import OrderTokenIssuer


@pytest.fixture
def settings() -> Settings:
    return Settings(
        receipt_secret="test-receipt-secret",
        order_channel_id=111,
        staff_channel_id=222,
        guild_id=333,
        staff_chat_key="staff-key",
    )


@pytest.fixture
def store() -> OrderStore:
    return OrderStore()


@pytest.fixture
def issuer(settings: Settings) -> OrderTokenIssuer:
    return OrderTokenIssuer(settings.receipt_secret)


@pytest.fixture
def notifier() -> MagicMock:
    fake = MagicMock()
    fake.send_order = AsyncMock(return_value=True)
    fake.send_review = AsyncMock(return_value=True)
    fake.send_completion = AsyncMock(return_value=True)
    fake.send_chat_started = AsyncMock(return_value=True)
    return fake


@pytest.fixture
def fulfillment() -> MagicMock:
    fake = MagicMock()

    async def _open_ticket(record):
        record.ticket_channel_id = 555
        return 555

    fake.grant_role = AsyncMock(return_value=True)
    fake.open_ticket = AsyncMock(side_effect=_open_ticket)
    return fake


@pytest.fixture
def pipeline(settings, store, issuer, notifier, fulfillment) -> IntakePipeline:
    return IntakePipeline(settings, store, issuer, notifier, fulfillment)


@pytest.fixture
def relay(settings, store, issuer, notifier) -> ChatRelay:
    return ChatRelay(
        store,
        issuer,
        staff_key=settings.staff_chat_key,
        on_complete=notifier.send_completion,
        on_chat_started=notifier.send_chat_started,
    )


@pytest.fixture
def server(settings, store, issuer, pipeline, relay, notifier, fulfillment) -> ReceiptServer:
    return ReceiptServer(settings, store, issuer, pipeline, relay, notifier=notifier, fulfillment=fulfillment)


@pytest.fixture
async def client(aiohttp_client, server):
    return await aiohttp_client(server.app)
