from __future__ import annotations

from typing import Any
import logging

from flask import Flask, jsonify, request

from .booking import parse_date, parse_identifier, request_reservation
from .errors import (
    MissingFieldsError,
    RecordNotFoundError,
    ReservationConflictError,
    ReservationError,
    ReservationReferenceError,
    ReservationStorageError,
    ReservationTimeoutError,
    ReservationValidationError,
)
from .settings import Settings, load_settings
from .sql_store import ReservationSqlRepository

logger = logging.getLogger(__name__)

REPOSITORY_EXTENSION = "room_reservation.repository"

MESSAGE_RESERVATION_CREATED = "Reserva creada correctamente"
MESSAGE_ROOM_CREATED = "Sala creada correctamente"
MESSAGE_EMPLOYEE_CREATED = "Empleado agregado"
MESSAGE_MISSING_FIELDS = "Faltan campos obligatorios"
MESSAGE_CONFLICT = "Conflicto: horario ya reservado"

_ERROR_MESSAGES = {
    "validation": "Datos no válidos",
    "reference": "La sala o el empleado no existe",
    "conflict": MESSAGE_CONFLICT,
    "not_found": "Registro no encontrado",
    "timeout": "El servidor está ocupado, intente de nuevo",
    "storage": "Error interno de almacenamiento",
}


def create_app(
    settings: Settings | None = None,
    repository: ReservationSqlRepository | None = None,
) -> Flask:
    app = Flask(__name__)
    effective_settings = settings or load_settings()
    store = repository or ReservationSqlRepository.from_settings(effective_settings)
    store.create_schema()
    app.extensions[REPOSITORY_EXTENSION] = store

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    @app.get("/reservations")
    def list_reservations() -> Any:
        try:
            room_id = request.args.get("room_id")
            on_date = request.args.get("date")
            records = store.list_reservations(
                room_id=parse_identifier(room_id, "room_id") if room_id else None,
                on_date=parse_date(on_date) if on_date else None,
            )
        except ReservationError as error:
            return _error_response(error)
        return jsonify([record.to_dict() for record in records])

    @app.post("/reservations")
    def create_reservation() -> Any:
        payload = _json_payload()
        try:
            created = request_reservation(
                store,
                payload.get("room_id"),
                payload.get("employee_id"),
                payload.get("date"),
                payload.get("start_time"),
                payload.get("end_time"),
                payload.get("title"),
            )
        except ReservationError as error:
            return _error_response(error)

        return jsonify({"id": created.id, "message": MESSAGE_RESERVATION_CREATED, "reservation": created.to_dict()}), 201

    @app.get("/rooms")
    def list_rooms() -> Any:
        try:
            rooms = store.list_rooms()
        except ReservationError as error:
            return _error_response(error)
        return jsonify([room.to_dict() for room in rooms])

    @app.post("/rooms")
    def create_room() -> Any:
        payload = _json_payload()
        try:
            room = store.add_room(
                payload.get("name"),
                capacity=payload.get("capacity", 0),
                description=payload.get("description"),
            )
        except ReservationError as error:
            return _error_response(error)
        return jsonify({"id": room.id, "message": MESSAGE_ROOM_CREATED}), 201

    @app.delete("/rooms/<int:room_id>")
    def delete_room(room_id: int) -> Any:
        try:
            store.delete_room(parse_identifier(room_id, "room_id"))
        except ReservationError as error:
            return _error_response(error)
        return jsonify({"message": f"Sala {room_id} eliminada"})

    @app.get("/employees")
    def list_employees() -> Any:
        try:
            employees = store.list_employees()
        except ReservationError as error:
            return _error_response(error)
        return jsonify([employee.to_dict() for employee in employees])

    @app.post("/employees")
    def create_employee() -> Any:
        payload = _json_payload()
        try:
            employee = store.add_employee(
                payload.get("first_name"),
                payload.get("last_name"),
                payload.get("email"),
            )
        except ReservationError as error:
            return _error_response(error)
        return jsonify({"id": employee.id, "message": MESSAGE_EMPLOYEE_CREATED}), 201

    @app.put("/employees/<int:employee_id>")
    def update_employee(employee_id: int) -> Any:
        payload = _json_payload()
        try:
            store.update_employee(
                parse_identifier(employee_id, "employee_id"),
                payload.get("first_name"),
                payload.get("last_name"),
                payload.get("email"),
            )
        except ReservationError as error:
            return _error_response(error)
        return jsonify({"message": f"Empleado {employee_id} actualizado"})

    @app.delete("/employees/<int:employee_id>")
    def delete_employee(employee_id: int) -> Any:
        try:
            store.delete_employee(parse_identifier(employee_id, "employee_id"))
        except ReservationError as error:
            return _error_response(error)
        return jsonify({"message": f"Empleado {employee_id} eliminado"})

    return app


def _json_payload() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _error_response(error: ReservationError) -> tuple[Any, int]:
    if isinstance(error, ReservationValidationError):
        status = 400
        message = MESSAGE_MISSING_FIELDS if isinstance(error, MissingFieldsError) else _ERROR_MESSAGES["validation"]
    elif isinstance(error, (ReservationConflictError, ReservationReferenceError)):
        status = 400
        message = _ERROR_MESSAGES[error.code]
    elif isinstance(error, RecordNotFoundError):
        status = 404
        message = _ERROR_MESSAGES["not_found"]
    elif isinstance(error, ReservationTimeoutError):
        status = 503
        message = _ERROR_MESSAGES["timeout"]
    else:
        status = 500
        message = _ERROR_MESSAGES["storage"]

    if isinstance(error, ReservationStorageError):
        logger.error("Request %s %s failed: %s", request.method, request.path, error)

    response = jsonify({"error": message, "code": error.code, "detail": str(error)})
    if status == 503:
        response.headers["Retry-After"] = "1"
    return response, status


def main() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app(settings)
    app.run(host=settings.host, port=settings.port, debug=settings.debug, threaded=True)


if __name__ == "__main__":
    main()
