"""Flask JSON API in front of the walk billing engine."""

from __future__ import annotations

import atexit
import logging
from typing import Any

from flask import Flask, abort, jsonify, request
from werkzeug.exceptions import HTTPException

from dogwalking.billing.jobs import ReconciliationScheduler, run_reconciliation
from dogwalking.billing.store import MemoryStore, SqliteStore
from dogwalking.billing.system import WalkingSystem, ValidationError
from dogwalking.config import Config

logger = logging.getLogger(__name__)

USER_FIELDS = ("username", "email", "phone", "first_name", "last_name")
CLIENT_FIELDS = ("address", "emergency_contact", "notes")
WALKER_FIELDS = (
    "bio",
    "availability",
    "rate_20_min",
    "rate_30_min",
    "rate_60_min",
    "rate_overnight",
    "street",
    "city",
    "state",
    "zip",
    "color",
)
PET_FIELDS = ("name", "breed", "age", "size", "notes")
WALK_CREATE_FIELDS = (
    "client_id",
    "pet_id",
    "pet_ids",
    "walker_id",
    "date",
    "time",
    "duration",
    "billing_amount",
    "notes",
    "is_group_walk",
    "repeat_weekly",
    "number_of_weeks",
)


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(data: dict, *names: str) -> None:
    missing = [name for name in names if data.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")


def _pick(data: dict, names) -> dict[str, Any]:
    return {name: data[name] for name in names if name in data}


def _found(value: Any, what: str) -> Any:
    if value is None or value is False:
        abort(404, description=f"{what} not found")
    return value


def _pet_ids_from(data: dict) -> list | None:
    """Accept ``pet_ids`` as a list or the legacy comma-separated ``all_pet_ids``."""

    if "pet_ids" in data:
        pet_ids = data["pet_ids"]
        if pet_ids is not None and not isinstance(pet_ids, list):
            raise ValidationError("pet_ids must be a list of pet ids")
        return pet_ids
    legacy = data.get("all_pet_ids")
    if legacy in (None, ""):
        return None
    try:
        return [int(part) for part in str(legacy).split(",") if part.strip()]
    except ValueError:
        raise ValidationError("all_pet_ids must be a comma-separated list of pet ids") from None


def _build_system(config: Any) -> WalkingSystem:
    database_path = config["DATABASE_PATH"]
    if database_path == ":memory:":
        return WalkingSystem(MemoryStore())
    return WalkingSystem(SqliteStore(database_path))


def create_app(config: Any = None, system: WalkingSystem | None = None) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    app.config.from_object(config or Config)

    system = system or _build_system(app.config)
    app.extensions["walking_system"] = system

    interval = app.config.get("RECONCILE_INTERVAL_SECONDS", 0)
    if interval > 0 and not app.config.get("TESTING"):
        scheduler = ReconciliationScheduler(system, interval)
        scheduler.start()
        atexit.register(scheduler.shutdown)
        app.extensions["reconciliation_scheduler"] = scheduler

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------
    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError) -> Any:
        return jsonify({"message": str(exc)}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException) -> Any:
        return jsonify({"message": exc.description}), exc.code

    # ------------------------------------------------------------------
    # Referential checks
    # ------------------------------------------------------------------
    def check_walk_references(data: dict, current: dict | None = None) -> None:
        client_id = data.get("client_id", current["client_id"] if current else None)
        if system.get_client(client_id) is None:
            raise ValidationError("Client does not exist")
        if "walker_id" in data and data["walker_id"] is not None:
            if system.get_walker(data["walker_id"]) is None:
                raise ValidationError("Walker does not exist")
        pet_ids = list(data.get("pet_ids") or [])
        if "pet_id" in data:
            pet_ids.insert(0, data["pet_id"])
        elif current and (pet_ids or "client_id" in data):
            pet_ids = [*current["pet_ids"], *pet_ids]
        for pet_id in pet_ids:
            pet = system.get_pet(pet_id)
            if pet is None:
                raise ValidationError(f"Pet {pet_id} does not exist")
            if pet["client_id"] != client_id:
                raise ValidationError(f"Pet {pet_id} does not belong to this client")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    @app.get("/api/users")
    def list_users() -> Any:
        return jsonify(system.get_all_users())

    @app.get("/api/users/<int:user_id>")
    def get_user(user_id: int) -> Any:
        return jsonify(_found(system.get_user_with_role(user_id), "User"))

    @app.post("/api/users")
    def create_user() -> Any:
        data = _payload()
        _require(data, "username", "email", "first_name", "last_name", "role")
        user = system.create_user(role=data["role"], **_pick(data, USER_FIELDS))
        return jsonify(user), 201

    @app.put("/api/users/<int:user_id>")
    def update_user(user_id: int) -> Any:
        data = _payload()
        user = system.update_user(user_id, **_pick(data, (*USER_FIELDS, "role", "is_active")))
        return jsonify(_found(user, "User"))

    @app.get("/api/users/<int:user_id>/unread-messages")
    def unread_messages(user_id: int) -> Any:
        return jsonify({"count": system.get_unread_message_count(user_id)})

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------
    @app.get("/api/clients")
    def list_clients() -> Any:
        return jsonify(system.get_all_clients_with_balances())

    @app.get("/api/clients/<int:client_id>")
    def get_client(client_id: int) -> Any:
        return jsonify(_found(system.get_client_with_pets(client_id), "Client"))

    @app.post("/api/clients")
    def create_client() -> Any:
        data = _payload()
        _require(data, "username", "email", "first_name", "last_name")
        user = system.create_user(role="client", **_pick(data, USER_FIELDS))
        client = system.create_client(user_id=user["id"], **_pick(data, CLIENT_FIELDS))
        user["client_details"] = client
        return jsonify(user), 201

    @app.put("/api/clients/<int:client_id>")
    def update_client(client_id: int) -> Any:
        client = system.update_client(client_id, **_pick(_payload(), CLIENT_FIELDS))
        return jsonify(_found(client, "Client"))

    @app.get("/api/clients/<int:client_id>/payments")
    def client_payments(client_id: int) -> Any:
        client = _found(system.get_client(client_id), "Client")
        return jsonify(client["payments"])

    @app.post("/api/clients/<int:client_id>/payments")
    def record_client_payment(client_id: int) -> Any:
        data = _payload()
        _require(data, "amount", "payment_date")
        client = system.record_client_payment(
            client_id,
            data["amount"],
            data["payment_date"],
            data.get("payment_method") or "cash",
            data.get("notes"),
        )
        return jsonify(_found(client, "Client")), 201

    @app.get("/api/clients/<int:client_id>/pets")
    def client_pets(client_id: int) -> Any:
        _found(system.get_client(client_id), "Client")
        include_inactive = request.args.get("include_inactive") == "true"
        return jsonify(system.get_pets_by_client_id(client_id, include_inactive=include_inactive))

    @app.post("/api/clients/<int:client_id>/pets")
    def create_pet(client_id: int) -> Any:
        _found(system.get_client(client_id), "Client")
        data = _payload()
        _require(data, "name")
        pet = system.create_pet(client_id=client_id, **_pick(data, PET_FIELDS))
        return jsonify(pet), 201

    @app.get("/api/clients/<int:client_id>/walks")
    def client_walks(client_id: int) -> Any:
        _found(system.get_client(client_id), "Client")
        return jsonify(system.get_walks_by_client_id(client_id))

    # ------------------------------------------------------------------
    # Walkers
    # ------------------------------------------------------------------
    @app.get("/api/walkers")
    def list_walkers() -> Any:
        return jsonify(system.get_all_walkers())

    @app.get("/api/walkers/<int:walker_id>")
    def get_walker(walker_id: int) -> Any:
        return jsonify(_found(system.get_walker(walker_id), "Walker"))

    @app.post("/api/walkers")
    def create_walker() -> Any:
        data = _payload()
        _require(data, "username", "email", "first_name", "last_name")
        user = system.create_user(role="walker", **_pick(data, USER_FIELDS))
        walker = system.create_walker(user_id=user["id"], **_pick(data, WALKER_FIELDS))
        user["walker_details"] = walker
        return jsonify(user), 201

    @app.put("/api/walkers/<int:walker_id>")
    def update_walker(walker_id: int) -> Any:
        walker = system.update_walker(walker_id, **_pick(_payload(), (*WALKER_FIELDS, "rating")))
        return jsonify(_found(walker, "Walker"))

    @app.get("/api/walkers/<int:walker_id>/walks")
    def walker_walks(walker_id: int) -> Any:
        _found(system.get_walker(walker_id), "Walker")
        return jsonify(system.get_walks_by_walker_id(walker_id))

    @app.get("/api/walkers/<int:walker_id>/earnings")
    def walker_earnings(walker_id: int) -> Any:
        _found(system.get_walker(walker_id), "Walker")
        return jsonify(system.get_walker_earnings(walker_id))

    @app.get("/api/walkers/<int:walker_id>/unpaid-earnings")
    def walker_unpaid_earnings(walker_id: int) -> Any:
        _found(system.get_walker(walker_id), "Walker")
        return jsonify(system.get_unpaid_walker_earnings(walker_id))

    @app.get("/api/walkers/<int:walker_id>/payments")
    def walker_payments(walker_id: int) -> Any:
        _found(system.get_walker(walker_id), "Walker")
        return jsonify(system.get_walker_payments(walker_id))

    @app.post("/api/walkers/<int:walker_id>/payments")
    def pay_walker(walker_id: int) -> Any:
        data = _payload()
        _require(data, "amount", "payment_date")
        payment = system.process_walker_payment(
            walker_id,
            data["amount"],
            data["payment_date"],
            data.get("payment_method") or "cash",
            data.get("notes"),
        )
        return jsonify(_found(payment, "Walker")), 201

    @app.get("/api/walker-payments/<int:payment_id>")
    def walker_payment_details(payment_id: int) -> Any:
        return jsonify(_found(system.get_walker_payment_details(payment_id), "Payment"))

    # ------------------------------------------------------------------
    # Pets
    # ------------------------------------------------------------------
    @app.get("/api/pets/<int:pet_id>")
    def get_pet(pet_id: int) -> Any:
        return jsonify(_found(system.get_pet(pet_id), "Pet"))

    @app.put("/api/pets/<int:pet_id>")
    def update_pet(pet_id: int) -> Any:
        pet = system.update_pet(pet_id, **_pick(_payload(), (*PET_FIELDS, "is_active")))
        return jsonify(_found(pet, "Pet"))

    # ------------------------------------------------------------------
    # Walks
    # ------------------------------------------------------------------
    @app.get("/api/walks")
    def list_walks() -> Any:
        if request.args.get("date"):
            return jsonify(system.get_walks_by_date(request.args["date"]))
        if request.args.get("recurring_group_id"):
            return jsonify(system.get_walks_by_recurring_group(request.args["recurring_group_id"]))
        return jsonify(system.get_walks_by_status(request.args.get("status")))

    @app.get("/api/walks/upcoming")
    def upcoming_walks() -> Any:
        return jsonify(system.get_upcoming_walks(app.config["UPCOMING_WALKS_LIMIT"]))

    @app.get("/api/walks/<int:walk_id>")
    def get_walk(walk_id: int) -> Any:
        return jsonify(_found(system.get_walk_with_details(walk_id), "Walk"))

    @app.post("/api/walks")
    def create_walk() -> Any:
        data = _payload()
        _require(data, "client_id", "pet_id", "date", "time")
        fields = _pick(data, WALK_CREATE_FIELDS)
        pet_ids = _pet_ids_from(data)
        if pet_ids is not None:
            fields["pet_ids"] = pet_ids
        check_walk_references(fields)
        walk = system.create_walk(**fields)
        return jsonify(walk), 201

    @app.put("/api/walks/<int:walk_id>")
    def update_walk(walk_id: int) -> Any:
        current = _found(system.get_walk(walk_id), "Walk")
        data = _payload()
        # Payment state has its own endpoints.
        data.pop("is_paid", None)
        data.pop("paid_date", None)
        data.pop("is_balance_applied", None)
        data.pop("id", None)
        pet_ids = _pet_ids_from(data)
        data.pop("all_pet_ids", None)
        if pet_ids is not None:
            data["pet_ids"] = pet_ids
        if {"client_id", "walker_id", "pet_id", "pet_ids"} & set(data):
            check_walk_references(data, current)
        return jsonify(_found(system.update_walk(walk_id, **data), "Walk"))

    @app.delete("/api/walks/<int:walk_id>")
    def delete_walk(walk_id: int) -> Any:
        _found(system.delete_walk(walk_id), "Walk")
        return "", 204

    @app.put("/api/walks/<int:walk_id>/payment-status")
    def walk_payment_status(walk_id: int) -> Any:
        data = _payload()
        if not isinstance(data.get("is_balance_applied"), bool):
            raise ValidationError("is_balance_applied must be a boolean")
        if not data["is_balance_applied"]:
            raise ValidationError("Applied balances cannot be reversed")
        return jsonify(_found(system.set_walk_balance_applied(walk_id), "Walk"))

    @app.put("/api/walks/<int:walk_id>/paid")
    def walk_paid(walk_id: int) -> Any:
        data = _payload()
        walk = system.mark_walk_paid(
            walk_id,
            is_paid=bool(data.get("is_paid", True)),
            paid_date=data.get("paid_date"),
        )
        return jsonify(_found(walk, "Walk"))

    @app.get("/api/walks/<int:walk_id>/photos")
    def walk_photos(walk_id: int) -> Any:
        _found(system.get_walk(walk_id), "Walk")
        return jsonify(system.get_walk_photos(walk_id))

    @app.post("/api/walks/<int:walk_id>/photos")
    def add_walk_photo(walk_id: int) -> Any:
        data = _payload()
        _require(data, "photo_url")
        photo = system.create_walk_photo(walk_id=walk_id, photo_url=data["photo_url"])
        return jsonify(_found(photo, "Walk")), 201

    # ------------------------------------------------------------------
    # Batch reconciliation
    # ------------------------------------------------------------------
    @app.post("/api/walks/update-outstanding")
    def update_outstanding() -> Any:
        return jsonify({"updated": system.update_outstanding_walks()})

    @app.post("/api/walks/update-completed")
    def update_completed() -> Any:
        return jsonify(
            {
                "completed": system.update_completed_walks(),
                "balances_applied": system.apply_completed_walks_to_client_balances(),
                "earnings_created": system.apply_walker_earnings_for_completed_walks(),
            }
        )

    @app.post("/api/reconcile")
    def reconcile() -> Any:
        return jsonify(run_reconciliation(system))

    @app.post("/api/walks/apply-balances")
    def apply_balances() -> Any:
        return jsonify({"applied": system.apply_completed_walks_to_client_balances()})

    @app.post("/api/walks/apply-walker-earnings")
    def apply_walker_earnings() -> Any:
        return jsonify({"created": system.apply_walker_earnings_for_completed_walks()})

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    @app.get("/api/messages/<int:user1_id>/<int:user2_id>")
    def conversation(user1_id: int, user2_id: int) -> Any:
        return jsonify(system.get_messages_between_users(user1_id, user2_id))

    @app.post("/api/messages")
    def send_message() -> Any:
        data = _payload()
        _require(data, "sender_id", "receiver_id", "content")
        for key in ("sender_id", "receiver_id"):
            if system.get_user(data[key]) is None:
                raise ValidationError(f"{key} does not refer to a user")
        message = system.create_message(
            sender_id=data["sender_id"],
            receiver_id=data["receiver_id"],
            content=data["content"],
        )
        return jsonify(message), 201

    @app.put("/api/messages/<int:message_id>/read")
    def read_message(message_id: int) -> Any:
        return jsonify(_found(system.mark_message_as_read(message_id), "Message"))

    return app


__all__ = ["create_app"]
