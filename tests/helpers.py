from typing import Any


class FakeSocket:
    """Collects the frames a chat participant would receive."""

    def __init__(self, fail: bool = False):
        self.frames: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.frames.append(payload)

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [frame for frame in self.frames if frame.get("type") == kind]


def make_payload(order_id: str = "1001", event: str = "order.paid", **overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": order_id,
        "product_variants": [
            {
                "product_title": "VIP Pass",
                "quantity": 1,
                "unit_price": 1200,
                "additional_information": [{"label": "Roblox Username", "value": "Foo123"}],
            }
        ],
        "customer_information": {
            "email": "buyer@example.com",
            "country": "GB",
            "discord_data": {"username": "buyer#0001", "id": "123456789012345678"},
        },
        "payment": {"full_price": {"base": 1200, "currency": "GBP"}, "total": {"gross_sale_usd": 1525}},
        "created_at": "2024-05-01T12:30:00Z",
    }
    data.update(overrides)
    return {"event": event, "data": data}
