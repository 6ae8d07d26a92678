"""Public donor list."""
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument

import errors
from database import Database, paginate, serialize, to_document, to_object_id, utcnow
from schemas import BLOOD_TYPES, Donor, DonorCreate, DonorUpdate


class DonorDirectory:
    collection_name = "donors"

    def __init__(self, database: Database, logger: Optional[logging.Logger] = None):
        self.database = database
        self.logger = logger or logging.getLogger(__name__)

    @property
    def collection(self):
        return self.database.collection(self.collection_name)

    def create(self, donor: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            payload = DonorCreate.model_validate(donor)
            record = Donor(**payload.model_dump(), user_id=user_id)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)
        donor_id = self.database.create_document(self.collection_name, record)
        self.logger.info("donor added donor_id=%s blood_type=%s", donor_id, record.blood_type)
        return self.get(donor_id)

    def get(self, donor_id: str) -> Dict[str, Any]:
        donor = self.collection.find_one({"_id": to_object_id(donor_id, "Donor")})
        if not donor:
            raise errors.NotFoundError("Donor not found")
        return serialize(donor)

    def list(self, blood_type: Optional[str] = None, page: int = 1, limit: int = 10) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {}
        if blood_type:
            if blood_type not in BLOOD_TYPES:
                raise errors.InvalidBloodType()
            query["blood_type"] = blood_type
        skip, limit = paginate(page, limit)
        donors = self.database.get_documents(
            self.collection_name, query, limit=limit, sort=[("created_at", DESCENDING)], skip=skip
        )
        return serialize(donors), self.collection.count_documents(query)

    def by_blood_type(self, blood_type: str) -> List[Dict[str, Any]]:
        if blood_type not in BLOOD_TYPES:
            raise errors.InvalidBloodType()
        return serialize(self.database.get_documents(self.collection_name, {"blood_type": blood_type}))

    def update(self, donor_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        try:
            validated = DonorUpdate.model_validate(changes)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)
        updates = {k: v for k, v in validated.model_dump(include=validated.model_fields_set).items() if v is not None}
        if not updates:
            raise errors.ValidationError("No changes provided")
        updates = to_document(updates)
        updates["updated_at"] = utcnow()
        donor = self.collection.find_one_and_update(
            {"_id": to_object_id(donor_id, "Donor")}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
        if not donor:
            raise errors.NotFoundError("Donor not found")
        return serialize(donor)

    def delete(self, donor_id: str) -> None:
        result = self.collection.delete_one({"_id": to_object_id(donor_id, "Donor")})
        if result.deleted_count == 0:
            raise errors.NotFoundError("Donor not found")
        self.logger.info("donor removed donor_id=%s", donor_id)
