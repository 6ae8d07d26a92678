"""
Account directory: donor/admin registration, login and bearer-token resolution.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

import errors
from database import Database, paginate, serialize, to_document, to_object_id, utcnow
from schemas import BLOOD_TYPES, PHONE_PATTERN, Identity, User
from security import PasswordHasher, TokenSigner

PROFILE_FIELDS = ("first_name", "last_name", "phone", "blood_type", "date_of_birth", "city", "state")


def user_identity(user: Dict[str, Any]) -> Identity:
    return Identity(
        kind="user",
        id=str(user["_id"]),
        email=user["email"],
        name=f"{user.get('first_name', '')} {user.get('last_name', '')}".strip(),
        role=user.get("role", "user"),
    )


class AccountDirectory:
    collection_name = "users"

    def __init__(
        self,
        database: Database,
        hasher: PasswordHasher,
        tokens: TokenSigner,
        logger: Optional[logging.Logger] = None,
    ):
        self.database = database
        self.hasher = hasher
        self.tokens = tokens
        self.logger = logger or logging.getLogger(__name__)

    @property
    def collection(self):
        return self.database.collection(self.collection_name)

    def register(self, profile: Dict[str, Any], password: str, role: str = "user") -> Dict[str, Any]:
        """Create an account and return it without the password hash."""
        email = str(profile.get("email", "")).strip().lower()
        if self.collection.find_one({"email": email}):
            raise errors.DuplicateEmail()

        fields = {k: v for k, v in profile.items() if k not in ("password", "password_hash", "role")}
        fields["email"] = email
        try:
            user = User(**fields, password_hash=self.hasher.hash(password), role=role)
        except PydanticValidationError as exc:
            raise errors.validation_failed(exc)

        try:
            user_id = self.database.create_document(self.collection_name, user)
        except DuplicateKeyError:
            raise errors.DuplicateEmail()
        self.logger.info("user registered user_id=%s role=%s", user_id, role)
        return serialize(self.collection.find_one({"_id": to_object_id(user_id)}))

    def create_admin(self, profile: Dict[str, Any], password: str) -> Dict[str, Any]:
        return self.register(profile, password, role="admin")

    def ensure_admin(self, email: str, password: str) -> Dict[str, Any]:
        """Create the bootstrap admin unless an admin already exists."""
        existing = self.collection.find_one({"role": "admin"})
        if existing:
            return serialize(existing)
        profile = {
            "first_name": "Admin",
            "last_name": "User",
            "email": email,
            "phone": "+1234567890",
            "blood_type": "O+",
            "city": "Admin City",
            "state": "Admin State",
        }
        admin = self.create_admin(profile, password)
        self.logger.info("bootstrap admin created email=%s", admin["email"])
        return admin

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self.collection.find_one({"email": email.strip().lower(), "is_active": True})
        if not user or not self.hasher.verify(password, user.get("password_hash", "")):
            self.logger.warning("login rejected email=%s", email)
            raise errors.InvalidCredentials()

        user = self.collection.find_one_and_update(
            {"_id": user["_id"]},
            {"$set": {"last_login": utcnow(), "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        token = self.issue_token(user)
        self.logger.info("user logged in user_id=%s", user["_id"])
        return {"user": serialize(user), "token": token}

    def issue_token(self, user: Dict[str, Any]) -> str:
        return self.tokens.issue(str(user["_id"]), "user", email=user["email"], role=user.get("role", "user"))

    def verify_token(self, token: str) -> Dict[str, Any]:
        return self.resolve_claims(self.tokens.decode(token))

    def resolve_claims(self, claims: Dict[str, Any]) -> Dict[str, Any]:
        if claims.get("type") != "user":
            raise errors.InvalidToken()
        return self.get_user(claims["sub"])

    def get_user(self, user_id: str) -> Dict[str, Any]:
        user = self.collection.find_one({"_id": to_object_id(user_id, "User"), "is_active": True})
        if not user:
            raise errors.NotFoundError("User not found")
        return serialize(user)

    def get_users(self, user_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Public profile fields keyed by id, for enriching references."""
        object_ids = []
        for user_id in set(user_ids):
            try:
                object_ids.append(to_object_id(user_id))
            except errors.NotFoundError:
                continue
        found = self.collection.find(
            {"_id": {"$in": object_ids}},
            {"first_name": 1, "last_name": 1, "email": 1, "phone": 1, "blood_type": 1},
        )
        return {str(user["_id"]): serialize(user) for user in found}

    def update_profile(self, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        updates = {k: v for k, v in changes.items() if k in PROFILE_FIELDS and v is not None}
        if "blood_type" in updates and updates["blood_type"] not in BLOOD_TYPES:
            raise errors.InvalidBloodType()
        if "phone" in updates and not PHONE_PATTERN.match(updates["phone"]):
            raise errors.ValidationError("Invalid phone number format")
        updates = to_document(updates)

        oid = to_object_id(user_id, "User")
        current = self.collection.find_one({"_id": oid})
        if not current:
            raise errors.NotFoundError("User not found")
        if all(current.get(k) == v for k, v in updates.items()):
            raise errors.ValidationError("No changes were made to the profile")

        updates["updated_at"] = utcnow()
        self.collection.update_one({"_id": oid}, {"$set": updates})
        self.logger.info("profile updated user_id=%s fields=%s", user_id, ",".join(sorted(updates)))
        return self.get_user(user_id)

    def list_users(self, role: Optional[str] = None, page: int = 1, limit: int = 10) -> Tuple[List[Dict[str, Any]], int]:
        query = {"role": role} if role else {}
        skip, limit = paginate(page, limit)
        users = self.database.get_documents(
            self.collection_name, query, limit=limit, sort=[("created_at", DESCENDING)], skip=skip
        )
        return serialize(users), self.collection.count_documents(query)

    def deactivate(self, user_id: str) -> Dict[str, Any]:
        user = self.collection.find_one_and_update(
            {"_id": to_object_id(user_id, "User")},
            {"$set": {"is_active": False, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not user:
            raise errors.NotFoundError("User not found")
        self.logger.info("user deactivated user_id=%s", user_id)
        return serialize(user)
