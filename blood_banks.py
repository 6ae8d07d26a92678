"""
Blood bank registry: bank profiles, staff logins and the 8-slot blood stock.

Stock mutations are single conditional updates on the bank document, so
concurrent staff updates never drive a counter below zero.
"""
import logging
import math
import re
import uuid
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

import errors
from database import Database, paginate, serialize, to_document, to_object_id, utcnow
from schemas import (
    BLOOD_TYPES,
    WEEKDAYS,
    BloodBank,
    BloodBankProfileUpdate,
    BloodBankUpdate,
    GeoPoint,
    Identity,
    OperatingHours,
)
from security import PasswordHasher, TokenSigner

DAY_ABBREVIATIONS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
EARTH_RADIUS_KM = 6371.0088
LOW_STOCK_THRESHOLD = 10
MAX_STOCK_ATTEMPTS = 5


def _hours_dict(hours: Any) -> Dict[str, Any]:
    if isinstance(hours, BaseModel):
        return hours.model_dump()
    return dict(hours or {})


def is_currently_open(hours: Any, now: Optional[datetime] = None) -> bool:
    """True when ``now`` falls inside today's opening window (inclusive)."""
    now = now or datetime.now()
    today = _hours_dict(hours).get(WEEKDAYS[now.weekday()])
    if not today or not today.get("is_open"):
        return False
    current = now.strftime("%H:%M")
    return today.get("open_time", "00:00") <= current <= today.get("close_time", "00:00")


def total_units(stock: Mapping[str, int]) -> int:
    return sum(stock.get(blood_type, 0) for blood_type in BLOOD_TYPES)


def low_stock_types(stock: Mapping[str, int], threshold: int = LOW_STOCK_THRESHOLD) -> List[Dict[str, Any]]:
    return [
        {"type": blood_type, "units": stock.get(blood_type, 0)}
        for blood_type in BLOOD_TYPES
        if stock.get(blood_type, 0) < threshold
    ]


def operating_hours_display(hours: Any) -> str:
    """Group consecutive days with identical hours, e.g. ``Mon-Tue-Wed: 09:00 - 17:00``."""
    hours = _hours_dict(hours)
    groups = []
    current = None
    for day, label in zip(WEEKDAYS, DAY_ABBREVIATIONS):
        entry = hours.get(day) or {}
        if not entry.get("is_open"):
            current = None
            continue
        window = f"{entry.get('open_time')} - {entry.get('close_time')}"
        if current and current["time"] == window:
            current["days"] += f"-{label}"
        else:
            current = {"days": label, "time": window}
            groups.append(current)
    return ", ".join(f"{g['days']}: {g['time']}" for g in groups) or "Hours not specified"


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def bank_identity(bank: Dict[str, Any]) -> Identity:
    return Identity(kind="bloodbank", id=str(bank["_id"]), email=bank["email"], name=bank.get("name", ""), role="bloodbank")


def _regex(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


class BloodBankRegistry:
    collection_name = "blood_banks"

    def __init__(
        self,
        database: Database,
        hasher: PasswordHasher,
        tokens: TokenSigner,
        token_expire_minutes: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.database = database
        self.hasher = hasher
        self.tokens = tokens
        self.token_expire_minutes = token_expire_minutes
        self.logger = logger or logging.getLogger(__name__)

    @property
    def collection(self):
        return self.database.collection(self.collection_name)

    # --- Accounts ---

    def create(self, name: str, email: str, password: str, created_by: Optional[str] = None) -> Dict[str, Any]:
        """Admin-created bank with placeholder fields the staff fill in later."""
        email = email.strip().lower()
        if self.collection.find_one({"email": email}):
            raise errors.DuplicateEmail("Blood bank with this email already exists")
        hours = OperatingHours()
        try:
            bank = BloodBank(
                name=name,
                email=email,
                password_hash=self.hasher.hash(password),
                license_number=f"TEMP-{uuid.uuid4().hex[:12].upper()}",
                operating_hours=hours,
                operating_hours_display=operating_hours_display(hours),
                last_stock_update=utcnow(),
                created_by=created_by,
            )
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)
        try:
            bank_id = self.database.create_document(self.collection_name, bank)
        except DuplicateKeyError:
            raise errors.DuplicateEmail("Blood bank with this email already exists")
        self.logger.info("blood bank created bank_id=%s created_by=%s", bank_id, created_by)
        return self.get(bank_id)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        bank = self.collection.find_one({"email": email.strip().lower(), "is_active": True})
        if not bank or not self.hasher.verify(password, bank.get("password_hash", "")):
            self.logger.warning("blood bank login rejected email=%s", email)
            raise errors.InvalidCredentials()
        token = self.tokens.issue(
            str(bank["_id"]),
            "bloodbank",
            expire_minutes=self.token_expire_minutes,
            name=bank["name"],
            email=bank["email"],
        )
        self.logger.info("blood bank logged in bank_id=%s", bank["_id"])
        return {
            "token": token,
            "data": {
                "id": str(bank["_id"]),
                "name": bank["name"],
                "email": bank["email"],
                "license_number": bank.get("license_number"),
                "address": bank.get("address"),
                "contact": bank.get("contact"),
                "type": "bloodbank",
            },
        }

    def verify_token(self, token: str) -> Dict[str, Any]:
        return self.resolve_claims(self.tokens.decode(token))

    def resolve_claims(self, claims: Dict[str, Any]) -> Dict[str, Any]:
        if claims.get("type") != "bloodbank":
            raise errors.InvalidToken()
        return self.get(claims["sub"], active_only=True)

    # --- Reads ---

    def _find(self, bank_id: str, active_only: bool = False) -> Dict[str, Any]:
        query: Dict[str, Any] = {"_id": to_object_id(bank_id, "Blood bank")}
        if active_only:
            query["is_active"] = True
        bank = self.collection.find_one(query)
        if not bank:
            raise errors.NotFoundError("Blood bank not found")
        return bank

    def get(self, bank_id: str, active_only: bool = False) -> Dict[str, Any]:
        return serialize(self._find(bank_id, active_only))

    def exists(self, bank_id: str) -> bool:
        try:
            self._find(bank_id, active_only=True)
        except errors.NotFoundError:
            return False
        return True

    def _stock_filter(self, blood_type: Optional[str], has_stock: bool) -> Dict[str, Any]:
        if not (blood_type and has_stock):
            return {}
        if blood_type not in BLOOD_TYPES:
            raise errors.InvalidBloodType()
        return {f"blood_stock.{blood_type}": {"$gt": 0}}

    def list_banks(
        self,
        city: Optional[str] = None,
        state: Optional[str] = None,
        search: Optional[str] = None,
        blood_type: Optional[str] = None,
        has_stock: bool = False,
        is_open: bool = False,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"is_active": True}
        if city:
            query["address.city"] = _regex(city)
        if state:
            query["address.state"] = _regex(state)
        if is_open:
            query["is_open"] = True
        if search:
            query["$or"] = [
                {"name": _regex(search)},
                {"address.city": _regex(search)},
                {"address.state": _regex(search)},
                {"special_services": _regex(search)},
            ]
        query.update(self._stock_filter(blood_type, has_stock))

        skip, limit = paginate(page, limit)
        banks = self.database.get_documents(
            self.collection_name,
            query,
            limit=limit,
            sort=[("rating", DESCENDING), ("review_count", DESCENDING)],
            skip=skip,
        )
        return serialize(banks), self.collection.count_documents(query)

    def search(self, q: str) -> List[Dict[str, Any]]:
        if not q or not q.strip():
            raise errors.ValidationError("Search query is required")
        banks, _ = self.list_banks(search=q.strip(), limit=100)
        return banks

    def nearby(
        self,
        lat: float,
        lng: float,
        radius_km: float = 50,
        blood_type: Optional[str] = None,
        has_stock: bool = False,
    ) -> List[Dict[str, Any]]:
        """Active banks within ``radius_km`` great-circle distance, nearest first."""
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise errors.ValidationError("Latitude and longitude are out of range")
        if radius_km <= 0:
            raise errors.ValidationError("Radius must be positive")
        query: Dict[str, Any] = {"is_active": True, "location": {"$ne": None}}
        if self.database.geo_index:
            query["location"] = {
                "$geoWithin": {"$centerSphere": [[lng, lat], radius_km / EARTH_RADIUS_KM]}
            }
        query.update(self._stock_filter(blood_type, has_stock))

        found = []
        for bank in self.collection.find(query):
            bank_lng, bank_lat = bank["location"]["coordinates"]
            distance = haversine_km(lat, lng, bank_lat, bank_lng)
            if distance <= radius_km:
                bank["distance_km"] = round(distance, 2)
                found.append(bank)
        found.sort(key=lambda b: b["distance_km"])
        return serialize(found)

    def stock(self, bank_id: str) -> Dict[str, Any]:
        bank = self._find(bank_id)
        stock = bank.get("blood_stock", {})
        return {
            "name": bank["name"],
            "blood_stock": stock,
            "last_stock_update": bank.get("last_stock_update"),
            "total_units": total_units(stock),
            "low_stock_types": low_stock_types(stock),
        }

    def dashboard(self, bank_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        bank = self._find(bank_id)
        stock = bank.get("blood_stock", {})
        stats = {
            "total_blood_units": total_units(stock),
            "low_stock_types": low_stock_types(stock),
            "is_currently_open": is_currently_open(bank.get("operating_hours"), now),
            "last_stock_update": bank.get("last_stock_update"),
            "rating": bank.get("rating", 0),
            "review_count": bank.get("review_count", 0),
        }
        return {"blood_bank": serialize(bank), "stats": stats}

    # --- Writes ---

    def _apply_changes(self, bank_id: str, changes: Dict[str, Any], model) -> Dict[str, Any]:
        try:
            validated = model.model_validate(changes)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)
        # nested sections are replaced whole, with their defaults filled in
        dumped = validated.model_dump(include=validated.model_fields_set)
        updates = to_document({k: v for k, v in dumped.items() if v is not None})

        coordinates = updates.pop("coordinates", None)
        if coordinates is not None:
            try:
                updates["location"] = GeoPoint(coordinates=coordinates).model_dump()
            except PydanticValidationError as exc:
                raise errors.validation_failed(exc)
        if "operating_hours" in updates:
            updates["operating_hours_display"] = operating_hours_display(updates["operating_hours"])
        if not updates:
            raise errors.ValidationError("No changes provided")

        updates["updated_at"] = utcnow()
        try:
            bank = self.collection.find_one_and_update(
                {"_id": to_object_id(bank_id, "Blood bank")},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise errors.ConflictError("License number already in use")
        if not bank:
            raise errors.NotFoundError("Blood bank not found")
        self.logger.info("blood bank updated bank_id=%s fields=%s", bank_id, ",".join(sorted(updates)))
        return serialize(bank)

    def update(self, bank_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Admin edit."""
        return self._apply_changes(bank_id, changes, BloodBankUpdate)

    def update_profile(self, bank_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Staff edit of their own profile."""
        return self._apply_changes(bank_id, changes, BloodBankProfileUpdate)

    def update_stock(self, bank_id: str, blood_type: str, quantity: int, op: str = "set") -> Dict[str, Any]:
        if blood_type not in BLOOD_TYPES:
            raise errors.InvalidBloodType()
        if op not in ("set", "add", "subtract"):
            raise errors.ValidationError("Operation must be one of set, add, subtract")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise errors.ValidationError("Quantity must be a whole number")
        if op != "set" and quantity < 0:
            raise errors.ValidationError("Quantity must not be negative")

        oid = to_object_id(bank_id, "Blood bank")
        field = f"blood_stock.{blood_type}"
        now = utcnow()
        stamp = {"last_stock_update": now, "updated_at": now}
        after = ReturnDocument.AFTER

        for _ in range(MAX_STOCK_ATTEMPTS):
            if op == "set":
                bank = self.collection.find_one_and_update(
                    {"_id": oid}, {"$set": {field: max(0, quantity), **stamp}}, return_document=after
                )
            elif op == "add":
                bank = self.collection.find_one_and_update(
                    {"_id": oid}, {"$inc": {field: quantity}, "$set": stamp}, return_document=after
                )
            else:
                bank = self.collection.find_one_and_update(
                    {"_id": oid, field: {"$gte": quantity}},
                    {"$inc": {field: -quantity}, "$set": stamp},
                    return_document=after,
                )
                if bank is None:
                    # not enough units: clamp at zero
                    bank = self.collection.find_one_and_update(
                        {"_id": oid, "$or": [{field: {"$lt": quantity}}, {field: {"$exists": False}}]},
                        {"$set": {field: 0, **stamp}},
                        return_document=after,
                    )
            if bank is not None:
                break
            if not self.collection.find_one({"_id": oid}, {"_id": 1}):
                raise errors.NotFoundError("Blood bank not found")
        else:
            raise errors.ConflictError("Blood stock changed concurrently, please retry")

        new_quantity = bank["blood_stock"][blood_type]
        self.logger.info(
            "blood stock updated bank_id=%s blood_type=%s op=%s quantity=%s new_quantity=%s",
            bank_id, blood_type, op, quantity, new_quantity,
        )
        return {
            "blood_type": blood_type,
            "new_quantity": new_quantity,
            "blood_stock": bank["blood_stock"],
            "last_stock_update": bank.get("last_stock_update"),
        }

    def delete(self, bank_id: str) -> None:
        result = self.collection.delete_one({"_id": to_object_id(bank_id, "Blood bank")})
        if result.deleted_count == 0:
            raise errors.NotFoundError("Blood bank not found")
        self.logger.info("blood bank deleted bank_id=%s", bank_id)
