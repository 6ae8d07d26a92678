"""
Database Schemas for the Blood Donor API

Record models validate a document before it is written; each maps to a
MongoDB collection:
- users (User)
- blood_banks (BloodBank)
- events (Event)
- blood_requests (BloodRequest)
- contact_messages (ContactMessage)
- donors (Donor)

Payload models below the records describe request bodies.
"""
import re
from datetime import date, datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

BLOOD_TYPES = ("O+", "O-", "A+", "A-", "B+", "B-", "AB+", "AB-")
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
REQUEST_STATUSES = ("pending", "approved", "rejected", "fulfilled", "cancelled")
URGENCY_RANK = {"urgent": 0, "high": 1, "medium": 2, "low": 3}

BloodType = Literal["O+", "O-", "A+", "A-", "B+", "B-", "AB+", "AB-"]
Role = Literal["user", "admin"]
Urgency = Literal["low", "medium", "high", "urgent"]
Priority = Literal["low", "medium", "high", "urgent"]
RequestStatus = Literal["pending", "approved", "rejected", "fulfilled", "cancelled"]
EventStatus = Literal["pending", "approved", "rejected", "cancelled", "completed"]
RegistrationStatus = Literal["confirmed", "cancelled", "attended"]
ContactStatus = Literal["pending", "in-progress", "resolved", "closed"]
StockOperation = Literal["set", "add", "subtract"]
BankService = Literal[
    "Blood Collection",
    "Blood Testing",
    "Blood Storage",
    "Platelet Donation",
    "Plasma Collection",
    "Apheresis",
    "Mobile Blood Drives",
    "Emergency Blood Supply",
    "Rare Blood Types",
    "Cord Blood Banking",
    "Bone Marrow Registry",
    "Educational Programs",
    "24/7 Emergency Service",
]

PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]{10,}$")
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

DEFAULT_REQUIREMENTS = "Must be 18+ years old, weigh at least 110 lbs, and be in good health"


def empty_stock() -> Dict[str, int]:
    return {blood_type: 0 for blood_type in BLOOD_TYPES}


# Users (Authentication + Roles)
class User(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr = Field(..., description="Unique, stored lowercased")
    phone: str
    password_hash: str = Field(..., description="BCrypt password hash")
    blood_type: BloodType
    date_of_birth: Optional[date] = None
    city: str = ""
    state: str = ""
    role: Role = Field("user", description="Role-based access")
    is_active: bool = True
    is_email_verified: bool = False
    last_login: Optional[datetime] = None


# Blood banks
class DayHours(BaseModel):
    is_open: bool = True
    open_time: str = Field("09:00", pattern=TIME_PATTERN)
    close_time: str = Field("17:00", pattern=TIME_PATTERN)


def _weekend() -> DayHours:
    return DayHours(is_open=False, open_time="09:00", close_time="13:00")


class OperatingHours(BaseModel):
    monday: DayHours = Field(default_factory=DayHours)
    tuesday: DayHours = Field(default_factory=DayHours)
    wednesday: DayHours = Field(default_factory=DayHours)
    thursday: DayHours = Field(default_factory=DayHours)
    friday: DayHours = Field(default_factory=DayHours)
    saturday: DayHours = Field(default_factory=_weekend)
    sunday: DayHours = Field(default_factory=_weekend)


class Address(BaseModel):
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "USA"


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., description="[longitude, latitude]")

    @field_validator("coordinates")
    @classmethod
    def check_coordinates(cls, value: List[float]) -> List[float]:
        if len(value) != 2:
            raise ValueError("coordinates must be [longitude, latitude]")
        lng, lat = value
        if not (-180 <= lng <= 180 and -90 <= lat <= 90):
            raise ValueError("coordinates out of range")
        return value


class BankContact(BaseModel):
    phone: str = ""
    alternate_phone: str = ""
    fax: str = ""
    website: str = ""
    emergency_contact: str = ""


class ContactPerson(BaseModel):
    name: str = ""
    designation: str = ""
    phone: str = ""
    email: str = ""


class BankCapacity(BaseModel):
    total_beds: int = Field(0, ge=0)
    storage_capacity: int = Field(0, ge=0, description="in units")
    daily_collection_capacity: int = Field(0, ge=0)


class Certification(BaseModel):
    name: str = ""
    issued_by: str = ""
    valid_until: Optional[datetime] = None
    certificate_number: str = ""


class BloodBank(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    license_number: str
    email: EmailStr
    password_hash: str
    address: Address = Field(default_factory=Address)
    location: Optional[GeoPoint] = None
    contact: BankContact = Field(default_factory=BankContact)
    operating_hours: OperatingHours = Field(default_factory=OperatingHours)
    operating_hours_display: str = ""
    blood_stock: Dict[str, int] = Field(default_factory=empty_stock)
    profile_image: str = ""
    services: List[BankService] = Field(default_factory=list)
    special_services: str = ""
    is_active: bool = True
    is_verified: bool = False
    is_open: bool = True
    rating: float = Field(0, ge=0, le=5)
    review_count: int = Field(0, ge=0)
    contact_person: ContactPerson = Field(default_factory=ContactPerson)
    capacity: BankCapacity = Field(default_factory=BankCapacity)
    certifications: List[Certification] = Field(default_factory=list)
    last_stock_update: Optional[datetime] = None
    created_by: Optional[str] = None

    @field_validator("blood_stock")
    @classmethod
    def check_stock(cls, value: Dict[str, int]) -> Dict[str, int]:
        unknown = set(value) - set(BLOOD_TYPES)
        if unknown:
            raise ValueError(f"unknown blood types: {', '.join(sorted(unknown))}")
        if any(units < 0 for units in value.values()):
            raise ValueError("stock values must be non-negative")
        stock = empty_stock()
        stock.update(value)
        return stock


# Events
class Registration(BaseModel):
    user_id: str
    registered_at: datetime
    status: RegistrationStatus = "confirmed"


class Event(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    start_date: datetime
    end_date: datetime
    location: str = Field(..., min_length=1)
    coordinates: GeoPoint = Field(default_factory=lambda: GeoPoint(coordinates=[0, 0]))
    organizer_id: str
    organizer_name: str
    max_capacity: int = Field(..., ge=1)
    registered_count: int = Field(0, ge=0)
    registrant_ids: List[str] = Field(default_factory=list)
    registrations: List[Registration] = Field(default_factory=list)
    image: str = ""
    contact_phone: str
    contact_email: EmailStr
    requirements: str = DEFAULT_REQUIREMENTS
    additional_info: str = ""
    status: EventStatus = "pending"
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    @model_validator(mode="after")
    def check_dates_and_capacity(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.registered_count > self.max_capacity:
            raise ValueError("registered_count exceeds max_capacity")
        return self


# Blood requests
class StatusChange(BaseModel):
    status: RequestStatus
    note: str = ""
    timestamp: datetime


class RequestNotification(BaseModel):
    type: str
    message: str
    blood_bank_id: str
    timestamp: datetime


class BloodRequest(BaseModel):
    requester_id: str
    requester_name: str
    requester_email: EmailStr
    blood_bank_id: str
    blood_type: BloodType
    units: int = Field(1, ge=1)
    urgency: Urgency = "medium"
    patient_name: str = Field(..., min_length=1)
    hospital: str = ""
    contact_phone: str = ""
    reason: str = ""
    required_by: Optional[datetime] = None
    status: RequestStatus = "pending"
    status_history: List[StatusChange] = Field(default_factory=list)
    notifications: List[RequestNotification] = Field(default_factory=list)


# Contact form submissions
class AdminNote(BaseModel):
    note: str
    added_by: str
    added_at: datetime


class ContactStatusChange(BaseModel):
    status: ContactStatus
    changed_by: str
    changed_at: datetime
    note: str = ""


class AdminResponse(BaseModel):
    message: str
    responded_by: str
    responded_at: datetime
    is_user_notified: bool = True


class ContactMessage(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: Optional[str] = None
    subject: str = Field(..., min_length=5, max_length=200)
    message: str = Field(..., min_length=10, max_length=2000)
    status: ContactStatus = "pending"
    priority: Priority = "medium"
    admin_notes: List[AdminNote] = Field(default_factory=list)
    status_history: List[ContactStatusChange] = Field(default_factory=list)
    admin_response: Optional[AdminResponse] = None
    is_read: bool = False
    read_by: Optional[str] = None
    read_at: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("phone")
    @classmethod
    def check_phone(cls, value: Optional[str]) -> Optional[str]:
        if value and not PHONE_PATTERN.match(value):
            raise ValueError("Valid phone number required")
        return value or None


# Donors
class Donor(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    blood_type: BloodType
    city: str = ""
    state: str = ""
    is_available: bool = True
    last_donation_date: Optional[date] = None
    notes: str = ""
    user_id: Optional[str] = None


# --- Request payloads ---

class Payload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class RegisterRequest(Payload):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8, max_length=128)
    blood_type: BloodType
    date_of_birth: date
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


class LoginRequest(Payload):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdate(Payload):
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    blood_type: Optional[str] = None
    date_of_birth: Optional[date] = None
    city: Optional[str] = None
    state: Optional[str] = None


class BloodBankCreate(Payload):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)


class BloodBankUpdate(Payload):
    """Admin-editable blood bank fields."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    license_number: Optional[str] = Field(None, min_length=1)
    address: Optional[Address] = None
    contact: Optional[BankContact] = None
    operating_hours: Optional[OperatingHours] = None
    services: Optional[List[BankService]] = None
    special_services: Optional[str] = None
    contact_person: Optional[ContactPerson] = None
    capacity: Optional[BankCapacity] = None
    certifications: Optional[List[Certification]] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None
    is_open: Optional[bool] = None
    coordinates: Optional[List[float]] = Field(None, description="[longitude, latitude]")


class BloodBankProfileUpdate(Payload):
    """Fields blood bank staff may edit on their own profile."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    license_number: Optional[str] = Field(None, min_length=1)
    address: Optional[Address] = None
    contact: Optional[BankContact] = None
    operating_hours: Optional[OperatingHours] = None
    services: Optional[List[BankService]] = None
    special_services: Optional[str] = None
    contact_person: Optional[ContactPerson] = None
    capacity: Optional[BankCapacity] = None
    profile_image: Optional[str] = None
    is_open: Optional[bool] = None
    coordinates: Optional[List[float]] = Field(None, description="[longitude, latitude]")


class StockUpdate(Payload):
    blood_type: str
    quantity: int
    operation: StockOperation = "set"


class EventCreate(Payload):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    start_date: datetime
    end_date: datetime
    location: str = Field(..., min_length=1)
    coordinates: Optional[List[float]] = None
    max_capacity: int = Field(..., ge=1)
    contact_phone: str = Field(..., min_length=1)
    contact_email: EmailStr
    image: str = ""
    requirements: Optional[str] = None
    additional_info: str = ""
    organizer_id: Optional[str] = Field(None, description="Blood bank id, admins only")


class EventUpdate(Payload):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=1000)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    location: Optional[str] = Field(None, min_length=1)
    coordinates: Optional[List[float]] = None
    max_capacity: Optional[int] = Field(None, ge=1)
    contact_phone: Optional[str] = Field(None, min_length=1)
    contact_email: Optional[EmailStr] = None
    image: Optional[str] = None
    requirements: Optional[str] = None
    additional_info: Optional[str] = None
    status: Optional[EventStatus] = None


class RejectRequest(Payload):
    reason: str = Field(..., min_length=1, max_length=500)


class BloodRequestCreate(Payload):
    blood_bank_id: str
    blood_type: BloodType
    units: int = Field(1, ge=1)
    urgency: Urgency = "medium"
    patient_name: str = Field(..., min_length=1)
    hospital: str = ""
    contact_phone: str = ""
    reason: str = ""
    required_by: Optional[datetime] = None


class BloodRequestUpdate(Payload):
    blood_type: Optional[BloodType] = None
    units: Optional[int] = Field(None, ge=1)
    urgency: Optional[Urgency] = None
    patient_name: Optional[str] = Field(None, min_length=1)
    hospital: Optional[str] = None
    contact_phone: Optional[str] = None
    reason: Optional[str] = None
    required_by: Optional[datetime] = None


class StatusUpdate(Payload):
    status: str
    note: str = ""


class ContactSubmission(Payload):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: Optional[str] = None
    subject: str = Field(..., min_length=5, max_length=200)
    message: str = Field(..., min_length=10, max_length=2000)
    priority: Priority = "medium"


class ContactUpdate(Payload):
    status: Optional[ContactStatus] = None
    priority: Optional[Priority] = None
    status_note: Optional[str] = None


class NoteRequest(Payload):
    note: str = Field(..., min_length=1, max_length=1000)


class ResponseRequest(Payload):
    message: str = Field(..., min_length=10, max_length=2000)


class DonorCreate(Payload):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    blood_type: BloodType
    city: str = ""
    state: str = ""
    is_available: bool = True
    last_donation_date: Optional[date] = None
    notes: str = ""


class DonorUpdate(Payload):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, min_length=1)
    blood_type: Optional[BloodType] = None
    city: Optional[str] = None
    state: Optional[str] = None
    is_available: Optional[bool] = None
    last_donation_date: Optional[date] = None
    notes: Optional[str] = None


# Authenticated caller, resolved from a bearer token
class Identity(BaseModel):
    kind: Literal["user", "bloodbank"]
    id: str
    email: str
    name: str = ""
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.kind == "user" and self.role == "admin"

    @property
    def is_bloodbank(self) -> bool:
        return self.kind == "bloodbank"
