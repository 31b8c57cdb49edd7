"""
Data Models for GuestPass Application

This module contains all data model classes that represent the core entities
in the GuestPass system. These classes use dataclasses for clean,
type-safe data representation. Rows arrive from the backend in snake_case
and are serialized for clients in camelCase.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Any


def to_iso(value: Optional[str]) -> Optional[str]:
    """Normalize a backend timestamp string to ISO-8601 in UTC"""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuthPhase(Enum):
    """Phases of the authentication gate"""
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    INCOMPLETE = "incomplete"
    READY = "ready"


class GateView(Enum):
    """The four views a protected page can render"""
    LOADING = "loading"
    LOGIN = "login"
    NAME_PROMPT = "name_prompt"
    MAIN = "main"


class CheckInStatus(Enum):
    OK = "ok"
    ALREADY = "already"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Session:
    """
    Data model for an authenticated principal

    Created by the session store on successful sign-in. The access
    token is opaque and is never included in serialized output.
    """
    user_id: str
    email: Optional[str] = None
    access_token: Optional[str] = field(default=None, repr=False)
    full_name: Optional[str] = None
    role: Optional[str] = None

    def to_dict(self) -> Dict:
        """
        Convert session to dictionary (excluding token for security)

        Returns:
            Dictionary with user id and email
        """
        return {"id": self.user_id, "email": self.email}


@dataclass(frozen=True)
class AuthState:
    """
    Immutable snapshot of the auth gate

    Exactly one phase holds at a time; ``loading`` and
    ``has_display_name`` are derived from it.
    """
    phase: AuthPhase = AuthPhase.LOADING
    session: Optional[Session] = None
    display_name: Optional[str] = None

    @property
    def loading(self) -> bool:
        return self.phase is AuthPhase.LOADING

    @property
    def has_display_name(self) -> bool:
        return self.phase is AuthPhase.READY

    def to_dict(self) -> Dict:
        return {
            "loading": self.loading,
            "session": self.session.to_dict() if self.session else None,
            "hasDisplayName": self.has_display_name,
            "displayName": self.display_name,
        }


@dataclass
class UserProfile:
    """
    Data model for an organizer's profile row

    The display name is the attribute the name prompt collects.
    """
    user_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    display_name: Optional[str] = None
    role: str = "admin"

    @classmethod
    def from_row(cls, row: Dict) -> 'UserProfile':
        return cls(
            user_id=row["id"],
            email=row.get("email"),
            full_name=row.get("full_name"),
            display_name=row.get("display_name"),
            role=row.get("role") or "admin",
        )

    def has_display_name(self) -> bool:
        """
        Check whether a display name has been recorded

        Returns:
            True if display_name is present and not blank
        """
        return bool(self.display_name and self.display_name.strip())


@dataclass
class Event:
    """
    Data model for an event

    Guest counts are not stored on the event row; they are filled in
    by the event service from the guests table.
    """
    id: str
    title: str
    starts_at: str
    owner_id: str
    status: str
    description: Optional[str] = None
    venue: Optional[str] = None
    created_at: Optional[str] = None
    total_guests: int = 0
    checked_in_guests: int = 0

    @classmethod
    def from_row(cls, row: Dict, total_guests: int = 0, checked_in_guests: int = 0) -> 'Event':
        """
        Create Event instance from a backend row

        Args:
            row: Dictionary with snake_case event columns
            total_guests: Number of guests on the event
            checked_in_guests: Number of guests already checked in

        Returns:
            Event instance
        """
        return cls(
            id=row["id"],
            title=row["title"],
            description=row.get("description"),
            starts_at=to_iso(row["starts_at"]),
            venue=row.get("venue"),
            owner_id=row["owner_id"],
            created_at=to_iso(row.get("created_at")),
            status=row["status"],
            total_guests=total_guests,
            checked_in_guests=checked_in_guests,
        )

    def to_dict(self) -> Dict:
        """
        Convert event to dictionary for JSON serialization

        Returns:
            Dictionary representation of the event
        """
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "startsAt": self.starts_at,
            "venue": self.venue,
            "ownerId": self.owner_id,
            "createdAt": self.created_at,
            "totalGuests": self.total_guests,
            "checkedInGuests": self.checked_in_guests,
            "status": self.status,
        }


# Client payload keys mapped to event columns
EVENT_FIELDS = {
    "title": "title",
    "description": "description",
    "startsAt": "starts_at",
    "venue": "venue",
    "ownerId": "owner_id",
    "status": "status",
}

GUEST_FIELDS = {
    "name": "name",
    "email": "email",
    "checkedInBy": "checked_in_by",
    "checkedIn": "checked_in",
    "checkedInAt": "checked_in_at",
}


@dataclass
class Guest:
    """
    Data model for a guest on an event's list

    The unique code is what the guest's QR code identifies at the door.
    """
    id: str
    event_id: str
    name: str
    unique_code: str
    email: Optional[str] = None
    checked_in: bool = False
    checked_in_at: Optional[str] = None
    checked_in_by: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict) -> 'Guest':
        return cls(
            id=row["id"],
            event_id=row["event_id"],
            name=row["name"],
            email=row.get("email"),
            unique_code=row["unique_code"],
            checked_in=bool(row.get("checked_in")),
            checked_in_at=row.get("checked_in_at"),
            checked_in_by=row.get("checked_in_by"),
            created_at=to_iso(row.get("created_at")),
        )

    def to_dict(self) -> Dict:
        data = {
            "id": self.id,
            "eventId": self.event_id,
            "name": self.name,
            "email": self.email,
            "uniqueCode": self.unique_code,
            "checkedIn": self.checked_in,
            "checkedInAt": self.checked_in_at,
            "checkedInBy": self.checked_in_by,
            "createdAt": self.created_at,
        }
        return {key: value for key, value in data.items() if value is not None}

    def qr_payload(self) -> Dict[str, Any]:
        """
        Data encoded in the guest's QR code

        Returns:
            Dictionary with guest id, event id and name
        """
        return {"guestId": self.id, "eventId": self.event_id, "name": self.name}


@dataclass
class CheckInResult:
    """Outcome of scanning a guest code at the door"""
    status: CheckInStatus
    guest: Optional[Guest] = None

    def to_dict(self) -> Dict:
        data = {"status": self.status.value}
        if self.guest:
            data["guest"] = self.guest.to_dict()
        return data
