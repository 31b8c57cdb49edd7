"""
Data Repository Classes for GuestPass Application

This module implements the Repository pattern for every external store the
application talks to: the session store (authentication), the profile store
(organizer display names) and the event / guest tables. Each store has a
Supabase-backed implementation for production and an in-memory one for
development and testing, so business logic never depends on the backend.
"""

import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from supabase import Client, create_client

from .exceptions import (
    AuthenticationFailedException,
    PersistenceException,
    SignOutException,
)
from .models import Session, UserProfile, utc_now

logger = logging.getLogger(__name__)

EVENT_COLUMNS = "id, title, description, starts_at, venue, owner_id, created_at, status"
GUEST_COLUMNS = (
    "id, event_id, name, email, unique_code, checked_in, "
    "checked_in_at, checked_in_by, created_at, updated_at"
)
PROFILE_COLUMNS = "id, email, full_name, display_name, role"


class SessionStore(ABC):
    """
    Abstract interface to the managed authentication service

    The store issues, validates and revokes sessions. The application
    only observes sessions through it.
    """

    @abstractmethod
    def get_current_user(self, access_token: Optional[str]) -> Optional[Session]:
        """
        Resolve the session behind an access token

        Args:
            access_token: Opaque token from the browser session, if any

        Returns:
            Session or None if there is no valid session

        Raises:
            AuthenticationFailedException: If the store rejects the check
        """
        pass

    @abstractmethod
    def sign_out(self, access_token: Optional[str]) -> None:
        """
        Revoke the session server-side

        Raises:
            SignOutException: If revocation could not be confirmed
        """
        pass

    @abstractmethod
    def sign_in_with_password(self, email: str, password: str) -> Session:
        pass

    @abstractmethod
    def sign_up(self, email: str, password: str) -> Optional[Session]:
        """
        Register a new account

        Returns:
            Session if the account is usable immediately, None when the
            store requires email confirmation first
        """
        pass

    @abstractmethod
    def send_magic_link(self, email: str, redirect_to: Optional[str] = None) -> None:
        pass


class ProfileStore(ABC):
    """Abstract interface to organizer profile rows keyed by user id"""

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        pass

    @abstractmethod
    def ensure_profile(self, session: Session, full_name: str, role: str) -> None:
        """
        Create or refresh the profile row for a signed-in user

        Must leave an existing display name untouched.
        """
        pass

    @abstractmethod
    def save_display_name(self, user_id: str, display_name: str) -> UserProfile:
        """
        Persist the display name for a user

        Raises:
            PersistenceException: If the write is rejected
        """
        pass


class EventRepository(ABC):
    """Abstract interface to the events table"""

    @abstractmethod
    def list_events(self, owner_id: Optional[str] = None, status: Optional[str] = None,
                    starts_after: Optional[str] = None) -> List[Dict]:
        pass

    @abstractmethod
    def get_event(self, event_id: str) -> Optional[Dict]:
        pass

    @abstractmethod
    def create_event(self, values: Dict) -> Dict:
        pass

    @abstractmethod
    def update_event(self, event_id: str, values: Dict) -> Optional[Dict]:
        pass

    @abstractmethod
    def delete_event(self, event_id: str) -> None:
        pass


class GuestRepository(ABC):
    """Abstract interface to the guests table"""

    @abstractmethod
    def list_by_event(self, event_id: str) -> List[Dict]:
        pass

    @abstractmethod
    def get_guest(self, guest_id: str) -> Optional[Dict]:
        pass

    @abstractmethod
    def guest_counts(self, event_ids: List[str]) -> Dict[str, Dict[str, int]]:
        """
        Count guests per event

        Returns:
            Mapping of event id to {"total": n, "checked_in": m}
        """
        pass

    @abstractmethod
    def create_guests(self, rows: List[Dict]) -> List[Dict]:
        pass

    @abstractmethod
    def update_guest(self, guest_id: str, values: Dict) -> Optional[Dict]:
        pass

    @abstractmethod
    def delete_guest(self, guest_id: str) -> None:
        pass

    @abstractmethod
    def mark_checked_in(self, event_id: str, unique_code: str, checked_in_by: str) -> Optional[Dict]:
        """
        Check a guest in if they are not already

        Returns:
            The updated row, or None if no unchecked guest matched
        """
        pass

    @abstractmethod
    def find_by_code(self, event_id: str, unique_code: str) -> Optional[Dict]:
        pass


def _execute(operation: str, query):
    """
    Run a PostgREST query, converting client errors

    Args:
        operation: Name of the operation for error reporting
        query: Query builder ready to execute

    Returns:
        List of rows returned by the backend

    Raises:
        PersistenceException: If the backend call fails
    """
    try:
        response = query.execute()
    except Exception as e:
        raise PersistenceException(operation, str(e))
    return response.data or []


def _session_from_user(user, access_token: Optional[str]) -> Session:
    user_metadata = getattr(user, "user_metadata", None) or {}
    app_metadata = getattr(user, "app_metadata", None) or {}
    return Session(
        user_id=str(user.id),
        email=user.email,
        access_token=access_token,
        full_name=user_metadata.get("full_name"),
        role=app_metadata.get("role"),
    )


class SupabaseSessionStore(SessionStore):
    """
    Session store backed by Supabase Auth

    Token validation and revocation go through the service-role client;
    sign-in flows go through a separate anon-key client so that a user
    sign-in never changes the credentials of the table client.
    """

    def __init__(self, admin_client: Client, auth_client: Client):
        self.admin_client = admin_client
        self.auth_client = auth_client

    def get_current_user(self, access_token: Optional[str]) -> Optional[Session]:
        if not access_token:
            return None
        try:
            response = self.admin_client.auth.get_user(access_token)
        except Exception as e:
            raise AuthenticationFailedException(str(e))
        if not response or not response.user:
            return None
        return _session_from_user(response.user, access_token)

    def sign_out(self, access_token: Optional[str]) -> None:
        if not access_token:
            return
        try:
            self.admin_client.auth.admin.sign_out(access_token)
        except Exception as e:
            raise SignOutException(str(e))

    def sign_in_with_password(self, email: str, password: str) -> Session:
        try:
            response = self.auth_client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except Exception as e:
            raise AuthenticationFailedException(str(e))
        if not response.session:
            raise AuthenticationFailedException("no session returned")
        return _session_from_user(response.user, response.session.access_token)

    def sign_up(self, email: str, password: str) -> Optional[Session]:
        try:
            response = self.auth_client.auth.sign_up({"email": email, "password": password})
        except Exception as e:
            raise AuthenticationFailedException(str(e))
        if not response.session:
            return None
        return _session_from_user(response.user, response.session.access_token)

    def send_magic_link(self, email: str, redirect_to: Optional[str] = None) -> None:
        credentials = {"email": email}
        if redirect_to:
            credentials["options"] = {"email_redirect_to": redirect_to}
        try:
            self.auth_client.auth.sign_in_with_otp(credentials)
        except Exception as e:
            raise AuthenticationFailedException(str(e))


class SupabaseProfileStore(ProfileStore):
    """Profile store backed by the Supabase ``users`` table"""

    def __init__(self, client: Client, table: str = "users"):
        self.client = client
        self.table = table

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        rows = _execute(
            "get_profile",
            self.client.table(self.table).select(PROFILE_COLUMNS).eq("id", user_id).limit(1),
        )
        return UserProfile.from_row(rows[0]) if rows else None

    def ensure_profile(self, session: Session, full_name: str, role: str) -> None:
        _execute(
            "ensure_profile",
            self.client.table(self.table).upsert(
                {"id": session.user_id, "email": session.email, "full_name": full_name, "role": role},
                on_conflict="id",
            ),
        )

    def save_display_name(self, user_id: str, display_name: str) -> UserProfile:
        rows = _execute(
            "save_display_name",
            self.client.table(self.table).update({"display_name": display_name}).eq("id", user_id),
        )
        if not rows:
            raise PersistenceException("save_display_name", f"no profile row for user '{user_id}'")
        return UserProfile.from_row(rows[0])


class SupabaseEventRepository(EventRepository):
    """Event repository backed by the Supabase ``events`` table"""

    def __init__(self, client: Client):
        self.client = client

    def list_events(self, owner_id=None, status=None, starts_after=None) -> List[Dict]:
        query = self.client.table("events").select(EVENT_COLUMNS).order("starts_at", desc=False)
        if owner_id:
            query = query.eq("owner_id", owner_id)
        if status:
            query = query.eq("status", status)
        if starts_after:
            query = query.gte("starts_at", starts_after)
        return _execute("list_events", query)

    def get_event(self, event_id: str) -> Optional[Dict]:
        rows = _execute(
            "get_event",
            self.client.table("events").select(EVENT_COLUMNS).eq("id", event_id).limit(1),
        )
        return rows[0] if rows else None

    def create_event(self, values: Dict) -> Dict:
        rows = _execute("create_event", self.client.table("events").insert(values))
        if not rows:
            raise PersistenceException("create_event", "backend returned no data")
        return rows[0]

    def update_event(self, event_id: str, values: Dict) -> Optional[Dict]:
        rows = _execute("update_event", self.client.table("events").update(values).eq("id", event_id))
        return rows[0] if rows else None

    def delete_event(self, event_id: str) -> None:
        # guest rows are removed by ON DELETE CASCADE
        _execute("delete_event", self.client.table("events").delete().eq("id", event_id))


class SupabaseGuestRepository(GuestRepository):
    """Guest repository backed by the Supabase ``guests`` table"""

    def __init__(self, client: Client):
        self.client = client

    def list_by_event(self, event_id: str) -> List[Dict]:
        return _execute(
            "list_guests",
            self.client.table("guests").select(GUEST_COLUMNS)
            .eq("event_id", event_id).order("created_at", desc=False),
        )

    def get_guest(self, guest_id: str) -> Optional[Dict]:
        rows = _execute(
            "get_guest",
            self.client.table("guests").select(GUEST_COLUMNS).eq("id", guest_id).limit(1),
        )
        return rows[0] if rows else None

    def guest_counts(self, event_ids: List[str]) -> Dict[str, Dict[str, int]]:
        if not event_ids:
            return {}
        rows = _execute(
            "guest_counts",
            self.client.table("guests").select("event_id, checked_in").in_("event_id", event_ids),
        )
        return _count_guests(rows)

    def create_guests(self, rows: List[Dict]) -> List[Dict]:
        if not rows:
            return []
        return _execute("create_guests", self.client.table("guests").insert(rows))

    def update_guest(self, guest_id: str, values: Dict) -> Optional[Dict]:
        rows = _execute("update_guest", self.client.table("guests").update(values).eq("id", guest_id))
        return rows[0] if rows else None

    def delete_guest(self, guest_id: str) -> None:
        _execute("delete_guest", self.client.table("guests").delete().eq("id", guest_id))

    def mark_checked_in(self, event_id: str, unique_code: str, checked_in_by: str) -> Optional[Dict]:
        rows = _execute(
            "check_in",
            self.client.table("guests")
            .update({"checked_in": True, "checked_in_at": utc_now(), "checked_in_by": checked_in_by})
            .eq("event_id", event_id)
            .eq("unique_code", unique_code)
            .eq("checked_in", False),
        )
        return rows[0] if rows else None

    def find_by_code(self, event_id: str, unique_code: str) -> Optional[Dict]:
        rows = _execute(
            "find_guest_by_code",
            self.client.table("guests").select(GUEST_COLUMNS)
            .eq("event_id", event_id).eq("unique_code", unique_code).limit(1),
        )
        return rows[0] if rows else None


def _count_guests(rows: List[Dict]) -> Dict[str, Dict[str, int]]:
    counts: Dict[str, Dict[str, int]] = {}
    for row in rows:
        entry = counts.setdefault(row["event_id"], {"total": 0, "checked_in": 0})
        entry["total"] += 1
        if row.get("checked_in"):
            entry["checked_in"] += 1
    return counts


class InMemorySessionStore(SessionStore):
    """
    In-memory session store for development and testing

    Accounts are kept as email -> (password, user id); issued tokens
    map back to the account that owns them.
    """

    def __init__(self, accounts: Optional[Dict[str, str]] = None):
        """
        Initialize in-memory session store

        Args:
            accounts: Optional mapping of email to password to seed
        """
        self._accounts: Dict[str, Dict] = {}
        self._tokens: Dict[str, str] = {}
        for email, password in (accounts or {}).items():
            self._create_account(email, password)

    def _create_account(self, email: str, password: str) -> Dict:
        account = {"id": str(uuid.uuid4()), "email": email, "password": password}
        self._accounts[email.lower()] = account
        return account

    def _issue(self, account: Dict) -> Session:
        token = secrets.token_urlsafe(24)
        self._tokens[token] = account["email"].lower()
        return Session(user_id=account["id"], email=account["email"], access_token=token)

    def get_current_user(self, access_token: Optional[str]) -> Optional[Session]:
        email = self._tokens.get(access_token) if access_token else None
        if not email:
            return None
        account = self._accounts[email]
        return Session(user_id=account["id"], email=account["email"], access_token=access_token)

    def sign_out(self, access_token: Optional[str]) -> None:
        if access_token:
            self._tokens.pop(access_token, None)

    def sign_in_with_password(self, email: str, password: str) -> Session:
        account = self._accounts.get(email.lower())
        if not account or account["password"] != password:
            raise AuthenticationFailedException("Invalid login credentials")
        return self._issue(account)

    def sign_up(self, email: str, password: str) -> Optional[Session]:
        if email.lower() in self._accounts:
            raise AuthenticationFailedException("User already registered")
        return self._issue(self._create_account(email, password))

    def send_magic_link(self, email: str, redirect_to: Optional[str] = None) -> None:
        logger.info(f"Magic link requested for {email} (in-memory store, nothing sent)")


class InMemoryProfileStore(ProfileStore):
    """In-memory profile store for development and testing"""

    def __init__(self, profiles: Optional[Dict[str, UserProfile]] = None):
        self._profiles: Dict[str, UserProfile] = dict(profiles or {})

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return self._profiles.get(user_id)

    def ensure_profile(self, session: Session, full_name: str, role: str) -> None:
        existing = self._profiles.get(session.user_id)
        display_name = existing.display_name if existing else None
        self._profiles[session.user_id] = UserProfile(
            user_id=session.user_id,
            email=session.email,
            full_name=full_name,
            display_name=display_name,
            role=role,
        )

    def save_display_name(self, user_id: str, display_name: str) -> UserProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise PersistenceException("save_display_name", f"no profile row for user '{user_id}'")
        profile.display_name = display_name
        return profile


class InMemoryEventRepository(EventRepository):
    """In-memory events table for development and testing"""

    def __init__(self, guests: Optional['InMemoryGuestRepository'] = None):
        self._events: Dict[str, Dict] = {}
        self._guests = guests

    def list_events(self, owner_id=None, status=None, starts_after=None) -> List[Dict]:
        rows = [
            row for row in self._events.values()
            if (not owner_id or row["owner_id"] == owner_id)
            and (not status or row["status"] == status)
            and (not starts_after or row["starts_at"] >= starts_after)
        ]
        return [dict(row) for row in sorted(rows, key=lambda row: row["starts_at"])]

    def get_event(self, event_id: str) -> Optional[Dict]:
        row = self._events.get(event_id)
        return dict(row) if row else None

    def create_event(self, values: Dict) -> Dict:
        row = {"description": None, "venue": None, **values,
               "id": str(uuid.uuid4()), "created_at": utc_now()}
        self._events[row["id"]] = row
        return dict(row)

    def update_event(self, event_id: str, values: Dict) -> Optional[Dict]:
        row = self._events.get(event_id)
        if row is None:
            return None
        row.update(values)
        return dict(row)

    def delete_event(self, event_id: str) -> None:
        self._events.pop(event_id, None)
        if self._guests is not None:
            self._guests.delete_for_event(event_id)


class InMemoryGuestRepository(GuestRepository):
    """In-memory guests table for development and testing"""

    def __init__(self):
        self._guests: Dict[str, Dict] = {}

    def list_by_event(self, event_id: str) -> List[Dict]:
        rows = [row for row in self._guests.values() if row["event_id"] == event_id]
        return [dict(row) for row in sorted(rows, key=lambda row: row["created_at"])]

    def get_guest(self, guest_id: str) -> Optional[Dict]:
        row = self._guests.get(guest_id)
        return dict(row) if row else None

    def guest_counts(self, event_ids: List[str]) -> Dict[str, Dict[str, int]]:
        return _count_guests([row for row in self._guests.values() if row["event_id"] in event_ids])

    def create_guests(self, rows: List[Dict]) -> List[Dict]:
        created = []
        for values in rows:
            row = {
                "email": None, "checked_in_by": None, **values,
                "id": str(uuid.uuid4()),
                "unique_code": secrets.token_hex(4).upper(),
                "checked_in": False,
                "checked_in_at": None,
                "created_at": utc_now(),
            }
            self._guests[row["id"]] = row
            created.append(dict(row))
        return created

    def update_guest(self, guest_id: str, values: Dict) -> Optional[Dict]:
        row = self._guests.get(guest_id)
        if row is None:
            return None
        row.update(values)
        return dict(row)

    def delete_guest(self, guest_id: str) -> None:
        self._guests.pop(guest_id, None)

    def delete_for_event(self, event_id: str) -> None:
        for guest_id in [gid for gid, row in self._guests.items() if row["event_id"] == event_id]:
            del self._guests[guest_id]

    def mark_checked_in(self, event_id: str, unique_code: str, checked_in_by: str) -> Optional[Dict]:
        for row in self._guests.values():
            if row["event_id"] == event_id and row["unique_code"] == unique_code and not row["checked_in"]:
                row.update(checked_in=True, checked_in_at=utc_now(), checked_in_by=checked_in_by)
                return dict(row)
        return None

    def find_by_code(self, event_id: str, unique_code: str) -> Optional[Dict]:
        for row in self._guests.values():
            if row["event_id"] == event_id and row["unique_code"] == unique_code:
                return dict(row)
        return None


class Repositories:
    """Bundle of the four stores an application instance needs"""

    def __init__(self, sessions: SessionStore, profiles: ProfileStore,
                 events: EventRepository, guests: GuestRepository):
        self.sessions = sessions
        self.profiles = profiles
        self.events = events
        self.guests = guests


class RepositoryFactory:
    """
    Factory class for creating repository instances

    This class provides a centralized way to create different
    types of repositories based on configuration.
    """

    @staticmethod
    def create_supabase_repositories(url: str, service_role_key: str, anon_key: Optional[str] = None) -> Repositories:
        """
        Create Supabase-backed repositories

        Args:
            url: Supabase project URL
            service_role_key: Service-role key used for table access
            anon_key: Anon key used for user sign-in flows

        Returns:
            Repositories bundle
        """
        admin_client = create_client(url, service_role_key)
        auth_client = create_client(url, anon_key) if anon_key else admin_client
        return Repositories(
            sessions=SupabaseSessionStore(admin_client, auth_client),
            profiles=SupabaseProfileStore(admin_client),
            events=SupabaseEventRepository(admin_client),
            guests=SupabaseGuestRepository(admin_client),
        )

    @staticmethod
    def create_memory_repositories(accounts: Optional[Dict[str, str]] = None) -> Repositories:
        """
        Create in-memory repositories

        Args:
            accounts: Optional mapping of email to password to seed

        Returns:
            Repositories bundle
        """
        guests = InMemoryGuestRepository()
        return Repositories(
            sessions=InMemorySessionStore(accounts),
            profiles=InMemoryProfileStore(),
            events=InMemoryEventRepository(guests),
            guests=guests,
        )

    @staticmethod
    def create_repositories(backend: str, **kwargs) -> Repositories:
        """
        Create repositories based on backend type

        Args:
            backend: Backend type ('supabase' or 'memory')
            **kwargs: Additional arguments for repository creation

        Returns:
            Repositories bundle

        Raises:
            ValueError: If backend type is not supported
        """
        if backend.lower() == 'supabase':
            if not kwargs.get('url') or not kwargs.get('service_role_key'):
                raise ValueError("url and service_role_key are required for Supabase repositories")
            return RepositoryFactory.create_supabase_repositories(
                kwargs['url'], kwargs['service_role_key'], kwargs.get('anon_key')
            )

        elif backend.lower() == 'memory':
            return RepositoryFactory.create_memory_repositories(kwargs.get('accounts'))

        else:
            raise ValueError(f"Unsupported backend type: {backend}")
