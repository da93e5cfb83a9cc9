"""Request-building helpers shared by the tests."""

from datetime import datetime, timezone
from typing import Any, Optional


USER = "user-1"
OTHER_USER = "user-2"
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def change(
    record_id: str,
    data: Optional[dict[str, Any]] = None,
    client_timestamp: Optional[datetime] = None,
    action: str = "upsert",
) -> dict[str, Any]:
    """A change item as a client would send it."""
    item: dict[str, Any] = {"id": record_id, "action": action}
    if data is not None:
        item["data"] = data
    if client_timestamp is not None:
        item["clientTimestamp"] = client_timestamp.isoformat()
    return item


def push_body(
    device_id: str,
    expenses: Optional[list] = None,
    categories: Optional[list] = None,
    budgets: Optional[list] = None,
) -> dict[str, Any]:
    return {
        "deviceId": device_id,
        "changes": {
            "expenses": expenses or [],
            "categories": categories or [],
            "budgets": budgets or [],
        },
    }


def register_body(device_id: str, name: str = "Phone", platform: str = "android") -> dict[str, Any]:
    return {"deviceId": device_id, "deviceName": name, "platform": platform}
