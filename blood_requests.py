"""
Blood request registry.

Status changes are appended to ``status_history`` in the same update that
sets ``status``; the history is never rewritten.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument

import errors
from database import Database, paginate, serialize, to_document, to_object_id, utcnow
from schemas import (
    BLOOD_TYPES,
    REQUEST_STATUSES,
    URGENCY_RANK,
    BloodRequest,
    BloodRequestCreate,
    BloodRequestUpdate,
    Identity,
    RequestNotification,
    StatusChange,
)

OPEN_STATUSES = ("pending", "approved")


def urgency_order(requests: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Most urgent first, newest first within the same urgency."""
    newest_first = sorted(requests, key=lambda r: r.get("created_at") or datetime.min, reverse=True)
    return sorted(newest_first, key=lambda r: URGENCY_RANK.get(r.get("urgency"), len(URGENCY_RANK)))


class BloodRequestRegistry:
    collection_name = "blood_requests"

    def __init__(self, database: Database, blood_banks, notifier=None, logger: Optional[logging.Logger] = None):
        self.database = database
        self.blood_banks = blood_banks
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)

    @property
    def collection(self):
        return self.database.collection(self.collection_name)

    def _find(self, request_id: Any) -> Dict[str, Any]:
        request = self.collection.find_one({"_id": to_object_id(request_id, "Blood request")})
        if not request:
            raise errors.NotFoundError("Blood request not found")
        return request

    def get(self, request_id: str) -> Dict[str, Any]:
        return serialize(self._find(request_id))

    def create(self, request: Dict[str, Any], requester: Identity) -> Dict[str, Any]:
        try:
            payload = BloodRequestCreate.model_validate(request)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)
        if not self.blood_banks.exists(payload.blood_bank_id):
            raise errors.NotFoundError("Blood bank not found")

        now = utcnow()
        notifications = []
        if payload.urgency == "urgent":
            notifications.append(
                RequestNotification(
                    type="urgent_request",
                    message=f"Urgent blood request for {payload.units} unit(s) of {payload.blood_type}",
                    blood_bank_id=payload.blood_bank_id,
                    timestamp=now,
                )
            )
        try:
            record = BloodRequest(
                **payload.model_dump(),
                requester_id=requester.id,
                requester_name=requester.name,
                requester_email=requester.email,
                status="pending",
                status_history=[StatusChange(status="pending", note="Request created", timestamp=now)],
                notifications=notifications,
            )
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)

        request_id = self.database.create_document(self.collection_name, record)
        created = self.get(request_id)
        self.logger.info(
            "blood request created request_id=%s bank_id=%s urgency=%s",
            request_id, payload.blood_bank_id, payload.urgency,
        )
        if notifications and self.notifier is not None:
            self.notifier.notify(created)
        return created

    def update_status(self, request_id: str, status: str, note: str, actor: Identity) -> Dict[str, Any]:
        if status not in REQUEST_STATUSES:
            raise errors.InvalidStatus()
        request = self._find(request_id)
        if not (actor.is_admin or (actor.is_bloodbank and request["blood_bank_id"] == actor.id)):
            raise errors.ForbiddenError("Only the receiving blood bank can change this request")

        now = utcnow()
        entry = StatusChange(status=status, note=note or "", timestamp=now).model_dump()
        updated = self.collection.find_one_and_update(
            {"_id": request["_id"]},
            {"$set": {"status": status, "updated_at": now}, "$push": {"status_history": entry}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise errors.NotFoundError("Blood request not found")
        self.logger.info("blood request status request_id=%s status=%s by=%s", request_id, status, actor.id)
        return serialize(updated)

    def _check_owner(self, request: Dict[str, Any], requester: Identity, action: str) -> None:
        if request["requester_id"] != requester.id:
            raise errors.ForbiddenError(f"Not authorized to {action} this request")

    def update(self, request_id: str, changes: Dict[str, Any], requester: Identity) -> Dict[str, Any]:
        try:
            validated = BloodRequestUpdate.model_validate(changes)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)
        updates = {k: v for k, v in validated.model_dump(include=validated.model_fields_set).items() if v is not None}
        if not updates:
            raise errors.ValidationError("No changes provided")

        request = self._find(request_id)
        self._check_owner(request, requester, "update")
        updates = to_document(updates)
        updates["updated_at"] = utcnow()
        updated = self.collection.find_one_and_update(
            {"_id": request["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
        return serialize(updated)

    def delete(self, request_id: str, requester: Identity) -> None:
        request = self._find(request_id)
        self._check_owner(request, requester, "delete")
        self.collection.delete_one({"_id": request["_id"]})
        self.logger.info("blood request deleted request_id=%s", request_id)

    # --- Listings ---

    def list_requests(
        self,
        blood_type: Optional[str] = None,
        urgency: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {}
        if blood_type:
            if blood_type not in BLOOD_TYPES:
                raise errors.InvalidBloodType()
            query["blood_type"] = blood_type
        if urgency:
            query["urgency"] = urgency
        if status:
            query["status"] = status
        skip, limit = paginate(page, limit)
        found = self.database.get_documents(
            self.collection_name, query, limit=limit, sort=[("created_at", DESCENDING)], skip=skip
        )
        return serialize(found), self.collection.count_documents(query)

    def list_for_requester(self, requester_id: str) -> List[Dict[str, Any]]:
        found = self.database.get_documents(
            self.collection_name, {"requester_id": requester_id}, sort=[("created_at", DESCENDING)]
        )
        return serialize(found)

    def list_for_bank(self, bank_id: str, status: Optional[str] = None, urgency: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"blood_bank_id": bank_id}
        if status:
            query["status"] = status
        if urgency:
            query["urgency"] = urgency
        return serialize(urgency_order(self.database.get_documents(self.collection_name, query)))

    def urgent_for_bank(self, bank_id: str) -> List[Dict[str, Any]]:
        found = self.database.get_documents(
            self.collection_name,
            {"blood_bank_id": bank_id, "urgency": "urgent", "status": {"$in": list(OPEN_STATUSES)}},
            sort=[("created_at", DESCENDING)],
        )
        return serialize(found)
