"""
Contact form messages and their admin workflow (read receipts, notes,
status/priority triage and a single reply).
"""
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, DESCENDING, ReturnDocument

import errors
from database import Database, paginate, pagination_info, serialize, to_document, to_object_id, utcnow
from schemas import (
    AdminNote,
    AdminResponse,
    ContactMessage,
    ContactStatusChange,
    ContactSubmission,
    ContactUpdate,
    NoteRequest,
    ResponseRequest,
)

SORTABLE_FIELDS = ("created_at", "updated_at", "priority", "status", "subject", "email")
PUBLIC_FIELDS = (
    "first_name", "last_name", "email", "subject", "message", "status", "priority",
    "admin_response", "status_history", "created_at", "updated_at",
)


class ContactRegistry:
    collection_name = "contact_messages"

    def __init__(self, database: Database, accounts=None, logger: Optional[logging.Logger] = None):
        self.database = database
        self.accounts = accounts
        self.logger = logger or logging.getLogger(__name__)

    @property
    def collection(self):
        return self.database.collection(self.collection_name)

    def _enrich(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Swap admin ids for their public profile where the account still exists."""
        data = serialize(message)
        if self.accounts is None:
            return data
        ids = [data.get("read_by")]
        ids += [n.get("added_by") for n in data.get("admin_notes", [])]
        ids += [h.get("changed_by") for h in data.get("status_history", [])]
        if data.get("admin_response"):
            ids.append(data["admin_response"].get("responded_by"))
        users = self.accounts.get_users([i for i in ids if i])
        if not users:
            return data

        if data.get("read_by") in users:
            data["read_by"] = users[data["read_by"]]
        for note in data.get("admin_notes", []):
            note["added_by"] = users.get(note["added_by"], note["added_by"])
        for change in data.get("status_history", []):
            change["changed_by"] = users.get(change["changed_by"], change["changed_by"])
        if data.get("admin_response"):
            responder = data["admin_response"]["responded_by"]
            data["admin_response"]["responded_by"] = users.get(responder, responder)
        return data

    def _find(self, message_id: Any) -> Dict[str, Any]:
        message = self.collection.find_one({"_id": to_object_id(message_id, "Message")})
        if not message:
            raise errors.NotFoundError("Message not found")
        return message

    def _modify(self, message_id: Any, query: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        query = {"_id": to_object_id(message_id, "Message"), **query}
        updated = self.collection.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        if updated is None:
            raise errors.NotFoundError("Message not found")
        return updated

    def get(self, message_id: str) -> Dict[str, Any]:
        return self._enrich(self._find(message_id))

    def submit(self, submission: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and store a contact form; every violated field is reported."""
        try:
            payload = ContactSubmission.model_validate(submission)
            record = ContactMessage(**payload.model_dump(), status="pending")
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)

        message_id = self.database.create_document(self.collection_name, record)
        self.logger.info("contact message submitted message_id=%s priority=%s", message_id, record.priority)
        return serialize(self._find(message_id))

    def list_messages(
        self,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status and status != "all":
            query["status"] = status
        if priority and priority != "all":
            query["priority"] = priority
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [
                {"first_name": pattern},
                {"last_name": pattern},
                {"email": pattern},
                {"subject": pattern},
                {"message": pattern},
            ]
        if sort_by not in SORTABLE_FIELDS:
            raise errors.ValidationError(f"Cannot sort by {sort_by}")
        direction = ASCENDING if sort_order == "asc" else DESCENDING

        skip, limit = paginate(page, limit)
        messages = self.database.get_documents(
            self.collection_name, query, limit=limit, sort=[(sort_by, direction)], skip=skip
        )
        total = self.collection.count_documents(query)
        count = self.collection.count_documents
        return {
            "messages": serialize(messages),
            "pagination": pagination_info(page, limit, total),
            "stats": {
                "total": count({}),
                "pending": count({"status": "pending"}),
                "in_progress": count({"status": "in-progress"}),
                "resolved": count({"status": "resolved"}),
                "unread": count({"is_read": False}),
                "urgent": count({"priority": "urgent"}),
            },
        }

    def update(self, message_id: str, changes: Dict[str, Any], admin_id: str) -> Dict[str, Any]:
        try:
            payload = ContactUpdate.model_validate(changes)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)
        if payload.status is None and payload.priority is None:
            raise errors.ValidationError("Nothing to update")

        current = self._find(message_id)
        now = utcnow()
        update: Dict[str, Any] = {"$set": {"updated_at": now}}
        if payload.priority is not None:
            update["$set"]["priority"] = payload.priority
        if payload.status is not None and payload.status != current["status"]:
            update["$set"]["status"] = payload.status
            entry = ContactStatusChange(
                status=payload.status,
                changed_by=admin_id,
                changed_at=now,
                note=payload.status_note or f"Status changed to {payload.status}",
            )
            update["$push"] = {"status_history": to_document(entry)}

        updated = self._modify(current["_id"], {}, update)
        self.logger.info(
            "contact message updated message_id=%s status=%s priority=%s", message_id, updated["status"], updated["priority"]
        )
        return self._enrich(updated)

    def update_status(self, message_id: str, status: str, admin_id: str, note: Optional[str] = None) -> Dict[str, Any]:
        return self.update(message_id, {"status": status, "status_note": note}, admin_id)

    def mark_read(self, message_id: str, admin_id: str) -> Dict[str, Any]:
        """First reader wins; repeat calls leave ``read_by``/``read_at`` alone."""
        oid = to_object_id(message_id, "Message")
        updated = self.collection.find_one_and_update(
            {"_id": oid, "is_read": False},
            {"$set": {"is_read": True, "read_by": admin_id, "read_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            updated = self._find(oid)
        return self._enrich(updated)

    def add_note(self, message_id: str, note: str, admin_id: str) -> Dict[str, Any]:
        try:
            payload = NoteRequest(note=note)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)
        entry = AdminNote(note=payload.note, added_by=admin_id, added_at=utcnow())
        updated = self._modify(message_id, {}, {"$push": {"admin_notes": to_document(entry)}})
        self.logger.info("contact note added message_id=%s by=%s", message_id, admin_id)
        return self._enrich(updated)

    def respond(self, message_id: str, message: str, admin_id: str) -> Dict[str, Any]:
        try:
            payload = ResponseRequest(message=message)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)
        now = utcnow()
        response = AdminResponse(message=payload.message, responded_by=admin_id, responded_at=now)
        current = self._find(message_id)
        update: Dict[str, Any] = {
            "$set": {"admin_response": to_document(response), "status": "resolved", "updated_at": now}
        }
        if current["status"] != "resolved":
            entry = ContactStatusChange(status="resolved", changed_by=admin_id, changed_at=now, note="Response sent")
            update["$push"] = {"status_history": to_document(entry)}
        updated = self._modify(current["_id"], {}, update)
        self.logger.info("contact message answered message_id=%s by=%s", message_id, admin_id)
        return self._enrich(updated)

    def delete(self, message_id: str) -> None:
        result = self.collection.delete_one({"_id": to_object_id(message_id, "Message")})
        if result.deleted_count == 0:
            raise errors.NotFoundError("Message not found")
        self.logger.info("contact message deleted message_id=%s", message_id)

    def messages_for_email(self, email: str) -> List[Dict[str, Any]]:
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise errors.ValidationError("Valid email is required")
        found = self.collection.find({"email": email}, {field: 1 for field in PUBLIC_FIELDS}).sort("created_at", DESCENDING)
        return [self._enrich(message) for message in found]
