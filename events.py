"""
Event registry: blood drives organised by blood banks.

Registration is one conditional update whose filter carries the capacity
and duplicate checks, so two concurrent registrations can never both get
past ``max_capacity``. When the guard misses, the event is re-read to work
out why (full, already registered, not approved) before retrying.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, DESCENDING, ReturnDocument

import errors
from database import Database, as_utc, paginate, serialize, to_document, to_object_id, utcnow
from schemas import DEFAULT_REQUIREMENTS, Event, EventCreate, EventUpdate, GeoPoint, Identity

MAX_REGISTER_ATTEMPTS = 5


def event_status(event: Dict[str, Any], now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    if event.get("status") == "cancelled":
        return "Cancelled"
    if event.get("status") == "completed" or now > event["end_date"]:
        return "Completed"
    if event["start_date"] <= now <= event["end_date"]:
        return "Ongoing"
    return "Upcoming"


def describe(event: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Serialized event plus the derived ``is_full`` and ``event_status`` fields."""
    data = serialize(event)
    data.pop("registrant_ids", None)
    data["is_full"] = event.get("registered_count", 0) >= event.get("max_capacity", 0)
    data["event_status"] = event_status(event, now)
    return data


def _regex(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


def _point(coordinates: List[float]) -> Dict[str, Any]:
    try:
        return GeoPoint(coordinates=coordinates).model_dump()
    except PydanticValidationError as exc:
        raise errors.validation_failed(exc)


class EventRegistry:
    collection_name = "events"

    def __init__(self, database: Database, accounts=None, logger: Optional[logging.Logger] = None):
        self.database = database
        self.accounts = accounts
        self.logger = logger or logging.getLogger(__name__)

    @property
    def collection(self):
        return self.database.collection(self.collection_name)

    def _find(self, event_id: Any) -> Dict[str, Any]:
        event = self.collection.find_one({"_id": to_object_id(event_id, "Event")})
        if not event:
            raise errors.NotFoundError("Event not found")
        return event

    def get(self, event_id: str) -> Dict[str, Any]:
        return describe(self._find(event_id))

    @staticmethod
    def _check_owner(event: Dict[str, Any], editor: Identity, action: str) -> None:
        if editor.is_admin:
            return
        if not editor.is_bloodbank or event["organizer_id"] != editor.id:
            raise errors.ForbiddenError(f"You can only {action} your own events")

    # --- Lifecycle ---

    def create(
        self,
        event: Dict[str, Any],
        organizer_id: str,
        organizer_name: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        try:
            payload = EventCreate.model_validate(event)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)

        start, end = as_utc(payload.start_date), as_utc(payload.end_date)
        if start < now:
            raise errors.InvalidDateRange("Event start date must be in the future")
        if end < start:
            raise errors.InvalidDateRange()

        fields = payload.model_dump(exclude={"organizer_id", "coordinates", "requirements"})
        fields.update(start_date=start, end_date=end)
        if payload.coordinates is not None:
            fields["coordinates"] = _point(payload.coordinates)
        try:
            record = Event(
                **fields,
                requirements=payload.requirements or DEFAULT_REQUIREMENTS,
                organizer_id=organizer_id,
                organizer_name=organizer_name,
                status="pending",
            )
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)

        event_id = self.database.create_document(self.collection_name, record)
        self.logger.info("event created event_id=%s organizer_id=%s", event_id, organizer_id)
        return self.get(event_id)

    def update(self, event_id: str, changes: Dict[str, Any], editor: Identity, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Organizer edits of an approved event send it back to review."""
        now = now or utcnow()
        try:
            validated = EventUpdate.model_validate(changes)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)
        updates = {k: v for k, v in validated.model_dump(include=validated.model_fields_set).items() if v is not None}

        event = self._find(event_id)
        self._check_owner(event, editor, "update")
        if not editor.is_admin and "status" in updates:
            raise errors.ForbiddenError("Only admins can change event status")
        if not updates:
            raise errors.ValidationError("No changes provided")

        if "coordinates" in updates:
            updates["coordinates"] = _point(updates["coordinates"])
        start = as_utc(updates.get("start_date", event["start_date"]))
        end = as_utc(updates.get("end_date", event["end_date"]))
        if "start_date" in updates and start < now:
            raise errors.InvalidDateRange("Event start date must be in the future")
        if end < start:
            raise errors.InvalidDateRange()

        if editor.is_bloodbank and event["status"] == "approved":
            updates["status"] = "pending"
        if updates.get("status") == "pending":
            # back in review, the earlier approval no longer applies
            updates.update(approved_by=None, approved_at=None)

        query: Dict[str, Any] = {"_id": event["_id"]}
        if "max_capacity" in updates:
            query["registered_count"] = {"$lte": updates["max_capacity"]}
        updates = to_document(updates)
        updates["updated_at"] = utcnow()
        updated = self.collection.find_one_and_update(query, {"$set": updates}, return_document=ReturnDocument.AFTER)
        if updated is None:
            if "max_capacity" in updates:
                raise errors.ValidationError("Capacity cannot be lower than the number of registrations")
            raise errors.NotFoundError("Event not found")
        self.logger.info(
            "event updated event_id=%s editor=%s status=%s", event_id, editor.id, updated["status"]
        )
        return describe(updated)

    def delete(self, event_id: str, editor: Identity) -> None:
        event = self._find(event_id)
        self._check_owner(event, editor, "delete")
        self.collection.delete_one({"_id": event["_id"]})
        self.logger.info("event deleted event_id=%s editor=%s", event_id, editor.id)

    def cancel(self, event_id: str, editor: Identity) -> Dict[str, Any]:
        event = self._find(event_id)
        self._check_owner(event, editor, "cancel")
        if event["status"] in ("cancelled", "completed"):
            raise errors.InvalidTransition(f"Event cannot be cancelled (current status: {event['status']})")
        updated = self.collection.find_one_and_update(
            {"_id": event["_id"], "status": event["status"]},
            {"$set": {"status": "cancelled", "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise errors.ConflictError("Event changed while cancelling, please retry")
        self.logger.info("event cancelled event_id=%s editor=%s", event_id, editor.id)
        return describe(updated)

    def approve(self, event_id: str, admin_id: str) -> Dict[str, Any]:
        now = utcnow()
        return self._review(
            event_id,
            {"status": "approved", "approved_by": admin_id, "approved_at": now, "rejection_reason": None, "updated_at": now},
        )

    def reject(self, event_id: str, admin_id: str, reason: str) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise errors.ValidationError("Rejection reason is required")
        now = utcnow()
        return self._review(
            event_id,
            {"status": "rejected", "approved_by": admin_id, "approved_at": now, "rejection_reason": reason.strip(), "updated_at": now},
        )

    def _review(self, event_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        oid = to_object_id(event_id, "Event")
        updated = self.collection.find_one_and_update(
            {"_id": oid, "status": "pending"}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
        if updated is None:
            current = self._find(oid)
            raise errors.InvalidTransition(f"Only pending events can be reviewed (current status: {current['status']})")
        self.logger.info("event reviewed event_id=%s status=%s by=%s", event_id, changes["status"], changes["approved_by"])
        return describe(updated)

    # --- Registration ---

    def register(self, event_id: str, user_id: str) -> Dict[str, Any]:
        oid = to_object_id(event_id, "Event")
        for _ in range(MAX_REGISTER_ATTEMPTS):
            event = self._find(oid)
            if event["status"] != "approved":
                raise errors.ValidationError("Event is not approved for registration")
            capacity = event["max_capacity"]
            if event.get("registered_count", 0) >= capacity:
                raise errors.EventFull()
            if user_id in event.get("registrant_ids", []):
                raise errors.AlreadyRegistered()

            now = utcnow()
            updated = self.collection.find_one_and_update(
                {
                    "_id": oid,
                    "status": "approved",
                    "max_capacity": capacity,
                    "registered_count": {"$lt": capacity},
                    "registrant_ids": {"$ne": user_id},
                },
                {
                    "$push": {
                        "registrations": {"user_id": user_id, "registered_at": now, "status": "confirmed"},
                        "registrant_ids": user_id,
                    },
                    "$inc": {"registered_count": 1},
                    "$set": {"updated_at": now},
                },
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                self.logger.info(
                    "event registration event_id=%s user_id=%s count=%s/%s",
                    event_id, user_id, updated["registered_count"], capacity,
                )
                return describe(updated)
        raise errors.ConflictError("Event changed while registering, please retry")

    def unregister(self, event_id: str, user_id: str) -> Dict[str, Any]:
        oid = to_object_id(event_id, "Event")
        pull = {"registrations": {"user_id": user_id}, "registrant_ids": user_id}
        now = utcnow()
        updated = self.collection.find_one_and_update(
            {"_id": oid, "registrant_ids": user_id, "registered_count": {"$gt": 0}},
            {"$pull": pull, "$inc": {"registered_count": -1}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            # counter already at zero
            updated = self.collection.find_one_and_update(
                {"_id": oid, "registrant_ids": user_id},
                {"$pull": pull, "$set": {"registered_count": 0, "updated_at": now}},
                return_document=ReturnDocument.AFTER,
            )
        if updated is None:
            self._find(oid)
            raise errors.NotRegistered()
        self.logger.info("event unregistration event_id=%s user_id=%s", event_id, user_id)
        return describe(updated)

    def registrations(self, event_id: str, viewer: Identity) -> Dict[str, Any]:
        event = self._find(event_id)
        if not (viewer.is_admin or (viewer.is_bloodbank and event["organizer_id"] == viewer.id)):
            raise errors.ForbiddenError("Only the event organizer or an admin can view registrations")

        entries = event.get("registrations", [])
        users = self.accounts.get_users([r["user_id"] for r in entries]) if self.accounts else {}
        enriched = [
            {"user": users[r["user_id"]], "registered_at": r.get("registered_at"), "status": r.get("status")}
            for r in entries
            if r["user_id"] in users
        ]
        return {
            "event_id": str(event["_id"]),
            "event_title": event["title"],
            "max_capacity": event["max_capacity"],
            "registered_count": event.get("registered_count", 0),
            "registrations": enriched,
        }

    # --- Listings ---

    def list_public(
        self,
        search: Optional[str] = None,
        location: Optional[str] = None,
        upcoming: bool = False,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"status": "approved"}
        if location:
            query["location"] = _regex(location)
        if search:
            query["$or"] = [
                {"title": _regex(search)},
                {"description": _regex(search)},
                {"location": _regex(search)},
                {"organizer_name": _regex(search)},
            ]
        if upcoming:
            query["start_date"] = {"$gte": utcnow()}
        skip, limit = paginate(page, limit)
        events = self.database.get_documents(
            self.collection_name, query, limit=limit, sort=[("start_date", ASCENDING)], skip=skip
        )
        return [describe(e) for e in events], self.collection.count_documents(query)

    def list_all(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        query = {"status": status} if status and status != "all" else {}
        skip, limit = paginate(page, limit)
        events = self.database.get_documents(
            self.collection_name, query, limit=limit, sort=[("created_at", DESCENDING)], skip=skip
        )
        counts = self.collection.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
        return {
            "events": [describe(e) for e in events],
            "total": self.collection.count_documents(query),
            "status_counts": {row["_id"]: row["count"] for row in counts},
        }

    def list_for_organizer(self, bank_id: str) -> List[Dict[str, Any]]:
        events = self.database.get_documents(
            self.collection_name, {"organizer_id": bank_id}, sort=[("created_at", DESCENDING)]
        )
        return [describe(e) for e in events]

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        events = self.database.get_documents(
            self.collection_name, {"registrant_ids": user_id, "status": "approved"}, sort=[("start_date", ASCENDING)]
        )
        return [describe(e) for e in events]
