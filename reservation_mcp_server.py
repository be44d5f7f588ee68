from __future__ import annotations

from functools import lru_cache

from mcp.server.fastmcp import FastMCP

from room_reservation import ReservationSqlRepository, load_settings, request_reservation as guarded_request
from room_reservation.booking import parse_date, parse_identifier

mcp = FastMCP(
    "Room Reservation MCP Server",
    instructions="Expose meeting rooms and reservations from the room_reservation project.",
    json_response=True,
)


@lru_cache(maxsize=1)
def get_repository() -> ReservationSqlRepository:
    repository = ReservationSqlRepository.from_settings(load_settings())
    repository.create_schema()
    return repository


@mcp.tool()
def list_rooms() -> list[dict]:
    """List meeting rooms with their capacity."""
    return [room.to_dict() for room in get_repository().list_rooms()]


@mcp.tool()
def list_reservations(room_id: int | None = None, date: str | None = None) -> list[dict]:
    """Return reservations, optionally filtered by room and YYYY-MM-DD date."""
    on_date = parse_date(date) if date else None
    room = parse_identifier(room_id, "room_id") if room_id is not None else None
    records = get_repository().list_reservations(room_id=room, on_date=on_date)
    return [record.to_dict() for record in records]


@mcp.tool()
def request_reservation(
    room_id: int,
    employee_id: int,
    date: str,
    start_time: str,
    end_time: str,
    title: str | None = None,
) -> dict:
    """Book a room for HH:MM-HH:MM on a date. Fails if the slot overlaps an existing booking."""
    created = guarded_request(get_repository(), room_id, employee_id, date, start_time, end_time, title)
    return created.to_dict()


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
