from __future__ import annotations

from datetime import datetime
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from campus_booking import Actor, BookingLifecycleController, BookingStatus, BookingYamlRepository, Role

mcp = FastMCP(
    "Campus Booking MCP Server",
    instructions="Expose campus resource bookings and availability checks from the campus_booking project.",
    json_response=True,
)

DATA_DIR = Path(__file__).parent / "data"
CONTROLLER = BookingLifecycleController(BookingYamlRepository(DATA_DIR))
# MCP callers are unauthenticated; every request books with requester rights.
REQUESTER_ROLE = Role.STUDENT


@mcp.resource("booking://statuses")
async def list_statuses() -> list[str]:
    """List booking statuses; pending and approved bookings hold their slot."""
    return [status.value for status in BookingStatus]


@mcp.tool()
def list_approved_bookings(resource_name: str | None = None) -> list[dict[str, str]]:
    """Return approved bookings, optionally filtered by resource name."""
    bookings = CONTROLLER.list_bookings(None)
    return [booking for booking in bookings if resource_name is None or booking["resource_name"] == resource_name]


@mcp.tool()
def check_availability(resource_name: str, start_iso: str, end_iso: str) -> dict[str, object]:
    """Report the live bookings that collide with the given window."""
    busy = CONTROLLER.check_availability(resource_name, datetime.fromisoformat(start_iso), datetime.fromisoformat(end_iso))
    return {"available": not busy, "busy": [item.to_dict() for item in busy]}


@mcp.tool()
def request_booking(
    user_id: str,
    resource_type: str,
    resource_name: str,
    start_iso: str,
    end_iso: str,
    reason: str = "MCP booking",
) -> dict[str, str]:
    """Submit a pending booking for the given user with requester rights only."""
    actor = Actor(user_id=user_id, role=REQUESTER_ROLE)
    created = CONTROLLER.create(
        actor,
        resource_type=resource_type,
        resource_name=resource_name,
        start=datetime.fromisoformat(start_iso),
        end=datetime.fromisoformat(end_iso),
        reason=reason,
    )
    return created.to_dict()


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
