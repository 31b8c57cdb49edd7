"""
Business Logic Services for GuestPass Application

This module contains service classes that implement the core business logic
of the GuestPass system: the authentication gate that decides which view a
protected page shows, the one-shot display-name prompt, and the event, guest
and QR code services behind the JSON API.
"""

import asyncio
import functools
import io
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Dict, List, Optional

import qrcode
from PIL import Image

from .exceptions import (
    ConcurrentUpdateException,
    DataValidationException,
    EventNotFoundException,
    GuestNotFoundException,
    GuestPassException,
    InvalidAuthTransitionException,
    PersistenceException,
    QRCodeGenerationException,
    SignOutException,
)
from .models import (
    AuthPhase,
    AuthState,
    CheckInResult,
    CheckInStatus,
    EVENT_FIELDS,
    Event,
    GUEST_FIELDS,
    GateView,
    Guest,
    Session,
    to_iso,
)
from .repositories import EventRepository, GuestRepository, ProfileStore, SessionStore

logger = logging.getLogger(__name__)

AuthListener = Callable[[AuthState], None]

# Long-lived pool for blocking store calls. A request that stops waiting
# on a slow call returns at once; the worker finishes in the background.
STORE_EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix="guestpass-store")


async def run_blocking(func: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a blocking store call on the store executor"""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(STORE_EXECUTOR, functools.partial(func, *args, **kwargs))


class ViewScope:
    """
    Cancellation token tied to the lifetime of one rendered view

    Results of store calls that resolve after the scope is cancelled
    are discarded instead of being applied to a view that is gone.
    """

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AuthStateController:
    """
    Owns the authentication state of one browser session

    The controller starts in LOADING, resolves the session once, and then
    only moves on explicit calls: ``update_display_name`` (INCOMPLETE to
    READY), ``sign_out`` (any resolved phase to UNAUTHENTICATED) and
    ``refresh`` (full re-check). Every store call runs in a worker thread
    so the event loop is never blocked by the backend.
    """

    DEFAULT_ROLE = "admin"

    def __init__(self, session_store: SessionStore, profile_store: ProfileStore,
                 access_token: Optional[str] = None):
        """
        Initialize the controller in the LOADING phase

        Args:
            session_store: Store that validates and revokes sessions
            profile_store: Store holding the display name per user
            access_token: Token from the browser session, if any
        """
        self.session_store = session_store
        self.profile_store = profile_store
        self.access_token = access_token
        self._state = AuthState()
        self._generation = 0
        self._update_in_flight = False
        self._listeners: List[AuthListener] = []

    @property
    def state(self) -> AuthState:
        return self._state

    def get_state(self) -> AuthState:
        """
        Current read model of the gate

        Returns:
            AuthState snapshot (loading, session, has_display_name, display_name)
        """
        return self._state

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """
        Register a listener for state transitions

        Args:
            listener: Called with the new AuthState after each transition

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: AuthState) -> AuthState:
        previous = self._state.phase
        self._state = state
        if previous is not state.phase:
            logger.info(f"Auth state {previous.value} -> {state.phase.value}")
        for listener in list(self._listeners):
            listener(state)
        return state

    def _apply(self, generation: int, scope: Optional[ViewScope], state: AuthState) -> AuthState:
        if scope is not None and scope.cancelled:
            logger.debug("Discarding auth result for a cancelled view")
            return self._state
        if generation != self._generation:
            logger.debug("Discarding stale auth result")
            return self._state
        return self._set_state(state)

    async def load(self, scope: Optional[ViewScope] = None) -> AuthState:
        """
        Resolve the session and profile completeness

        Has no effect once the state has left LOADING; use ``refresh``
        for an explicit re-check.

        Args:
            scope: Optional cancellation token of the requesting view

        Returns:
            The resolved AuthState
        """
        if self._state.phase is not AuthPhase.LOADING:
            return self._state

        generation = self._generation
        try:
            session = await run_blocking(self.session_store.get_current_user, self.access_token)
        except Exception as e:
            logger.error(f"Session check failed: {str(e)}")
            session = None

        if session is None:
            return self._apply(generation, scope, AuthState(AuthPhase.UNAUTHENTICATED))

        display_name = await run_blocking(self._load_display_name, session)
        if display_name:
            state = AuthState(AuthPhase.READY, session=session, display_name=display_name)
        else:
            state = AuthState(AuthPhase.INCOMPLETE, session=session)
        return self._apply(generation, scope, state)

    def _ensure_profile(self, session: Session) -> None:
        if not session.email:
            logger.warning(f"Skipping profile upsert for {session.user_id}: missing email")
            return

        full_name = session.full_name.strip() if session.full_name and session.full_name.strip() else None
        try:
            self.profile_store.ensure_profile(
                session,
                full_name=full_name or session.email,
                role=session.role or self.DEFAULT_ROLE,
            )
        except GuestPassException as e:
            logger.warning(f"Could not ensure profile for {session.user_id}: {str(e)}")

    def _load_display_name(self, session: Session) -> Optional[str]:
        self._ensure_profile(session)

        try:
            profile = self.profile_store.get_profile(session.user_id)
        except GuestPassException as e:
            logger.warning(f"Could not read profile for {session.user_id}: {str(e)}")
            return None
        if profile is None or not profile.has_display_name():
            return None
        return profile.display_name.strip()

    async def update_display_name(self, name: str, scope: Optional[ViewScope] = None) -> AuthState:
        """
        Record the missing display name and complete the profile

        The store write, the completeness flag and the local display name
        change together or not at all.

        Args:
            name: Display name to record
            scope: Optional cancellation token of the requesting view

        Returns:
            The READY AuthState

        Raises:
            ConcurrentUpdateException: If another update is in flight
            InvalidAuthTransitionException: If the state is not INCOMPLETE
            DataValidationException: If the name is blank
            PersistenceException: If the store rejects the write
        """
        if self._update_in_flight:
            raise ConcurrentUpdateException("update_display_name")
        if self._state.phase is not AuthPhase.INCOMPLETE:
            raise InvalidAuthTransitionException("update display name", self._state.phase.value)

        cleaned = (name or "").strip()
        if not cleaned:
            raise DataValidationException("display_name", "must not be empty")

        session = self._state.session
        generation = self._generation
        self._update_in_flight = True
        try:
            await run_blocking(self.profile_store.save_display_name, session.user_id, cleaned)
        except PersistenceException as e:
            logger.warning(f"Display name not saved for {session.user_id}: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error saving display name for {session.user_id}: {str(e)}")
            raise PersistenceException("save_display_name", str(e))
        finally:
            self._update_in_flight = False

        return self._apply(
            generation, scope,
            AuthState(AuthPhase.READY, session=session, display_name=cleaned),
        )

    async def sign_out(self) -> AuthState:
        """
        Clear the local session and revoke it server-side

        The local state is cleared before the remote call, whatever its
        outcome.

        Returns:
            The UNAUTHENTICATED AuthState

        Raises:
            InvalidAuthTransitionException: If the state is still LOADING
            SignOutException: If the server could not confirm revocation
        """
        if self._state.phase is AuthPhase.LOADING:
            raise InvalidAuthTransitionException("sign out", self._state.phase.value)

        session = self._state.session
        token = self.access_token or (session.access_token if session else None)
        self._generation += 1
        self.access_token = None
        state = self._set_state(AuthState(AuthPhase.UNAUTHENTICATED))

        try:
            await run_blocking(self.session_store.sign_out, token)
        except SignOutException as e:
            logger.error(f"Sign out failed: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected sign out error: {str(e)}")
            raise SignOutException(str(e))
        return state

    async def refresh(self, scope: Optional[ViewScope] = None,
                      access_token: Optional[str] = None) -> AuthState:
        """
        Run a full re-check of the session

        Args:
            scope: Optional cancellation token of the requesting view
            access_token: Replacement token, e.g. after a new sign-in

        Returns:
            The resolved AuthState
        """
        if access_token is not None:
            self.access_token = access_token
        self._generation += 1
        self._set_state(AuthState(AuthPhase.LOADING))
        return await self.load(scope)


class DisplayNamePromptFlow:
    """
    One-shot prompt that collects a missing display name

    The prompt renders while the auth state is INCOMPLETE and closes for
    good after a successful submit. A failed submit keeps the prompt open
    with the typed name and an error message.
    """

    MIN_LENGTH = 2
    MAX_LENGTH = 100
    SAVE_FAILED = "Failed to save name, please try again"

    def __init__(self, email: Optional[str], submit: Callable[[str], Awaitable]):
        """
        Initialize the prompt

        Args:
            email: Email of the signed-in user, shown next to the input
            submit: Coroutine function bound to update_display_name
        """
        self.email = email
        self._submit = submit
        self.name = ""
        self.error: Optional[str] = None
        self.submitting = False
        self.closed = False

    def should_render(self, state: AuthState) -> bool:
        return state.phase is AuthPhase.INCOMPLETE and not self.closed

    def _validate(self, trimmed: str) -> Optional[str]:
        if not trimmed:
            return "Please enter your name"
        if len(trimmed) < self.MIN_LENGTH:
            return f"Name must be at least {self.MIN_LENGTH} characters"
        if len(trimmed) > self.MAX_LENGTH:
            return f"Name must be at most {self.MAX_LENGTH} characters"
        return None

    async def submit(self, name: str) -> bool:
        """
        Validate and submit the typed name

        Args:
            name: Name as typed by the user

        Returns:
            True if the name was saved and the prompt closed
        """
        if self.closed:
            return True
        if self.submitting:
            return False

        self.name = name or ""
        trimmed = self.name.strip()
        self.error = self._validate(trimmed)
        if self.error:
            return False

        self.submitting = True
        try:
            await self._submit(trimmed)
        except PersistenceException as e:
            logger.warning(f"Display name submit failed: {str(e)}")
            self.error = self.SAVE_FAILED
            return False
        except GuestPassException as e:
            self.error = e.message
            return False
        except Exception as e:
            logger.exception(f"Unexpected error submitting display name: {str(e)}")
            self.error = self.SAVE_FAILED
            return False
        finally:
            self.submitting = False

        self.closed = True
        return True


_VIEWS = {
    AuthPhase.LOADING: GateView.LOADING,
    AuthPhase.UNAUTHENTICATED: GateView.LOGIN,
    AuthPhase.INCOMPLETE: GateView.NAME_PROMPT,
    AuthPhase.READY: GateView.MAIN,
}


def select_view(state: AuthState) -> GateView:
    """Pick the single view a protected page renders for a state"""
    return _VIEWS[state.phase]


def _columns(payload: Dict, fields: Dict[str, str]) -> Dict:
    return {column: payload[key] for key, column in fields.items() if key in payload}


def _validate_timestamp(field_name: str, value: Any) -> str:
    """Return value if it parses as an ISO-8601 timestamp"""
    if not isinstance(value, str) or not value.strip():
        raise DataValidationException(field_name, "Expected an ISO-8601 timestamp")
    try:
        to_iso(value.strip())
    except ValueError:
        raise DataValidationException(field_name, f"Invalid ISO-8601 timestamp: {value}")
    return value.strip()


class EventService:
    """
    Handles event-related operations and business logic

    Events are returned with guest totals and check-in counts
    looked up from the guests table.
    """

    REQUIRED_FIELDS = ("title", "startsAt", "ownerId", "status")

    def __init__(self, event_repository: EventRepository, guest_repository: GuestRepository):
        """
        Initialize event service

        Args:
            event_repository: Repository for event rows
            guest_repository: Repository used for guest counts
        """
        self.event_repository = event_repository
        self.guest_repository = guest_repository

    def _with_counts(self, rows: List[Dict]) -> List[Event]:
        try:
            counts = self.guest_repository.guest_counts([row["id"] for row in rows])
        except PersistenceException as e:
            logger.error(f"Failed to fetch guest counts: {str(e)}")
            counts = {}

        events = []
        for row in rows:
            entry = counts.get(row["id"], {"total": 0, "checked_in": 0})
            events.append(Event.from_row(row, entry["total"], entry["checked_in"]))
        return events

    def list_events(self, owner_id: Optional[str] = None, status: Optional[str] = None,
                    starts_after: Optional[str] = None) -> List[Event]:
        """
        List events ordered by start time

        Args:
            owner_id: Only events owned by this user
            status: Only events with this status
            starts_after: Only events starting at or after this timestamp

        Returns:
            List of events with guest counts
        """
        rows = self.event_repository.list_events(owner_id, status, starts_after)
        return self._with_counts(rows)

    def get_event(self, event_id: str) -> Optional[Event]:
        row = self.event_repository.get_event(event_id)
        if row is None:
            return None
        return self._with_counts([row])[0]

    def get_event_or_raise(self, event_id: str) -> Event:
        """
        Get event by ID or raise exception if not found

        Raises:
            EventNotFoundException: If event not found
        """
        event = self.get_event(event_id)
        if not event:
            raise EventNotFoundException(event_id)
        return event

    def create_event(self, payload: Dict) -> Event:
        """
        Create a new event

        Args:
            payload: Client payload with camelCase keys

        Returns:
            The created event, with zero guests

        Raises:
            DataValidationException: If a required field is missing
        """
        for field_name in self.REQUIRED_FIELDS:
            if not payload.get(field_name):
                raise DataValidationException(field_name, f"Missing required field: {field_name}")

        values = _columns(payload, EVENT_FIELDS)
        values["starts_at"] = _validate_timestamp("startsAt", payload["startsAt"])
        values.setdefault("description", None)
        values.setdefault("venue", None)
        row = self.event_repository.create_event(values)
        logger.info(f"Created event {row['id']} for owner {row['owner_id']}")
        return Event.from_row(row)

    def update_event(self, event_id: str, payload: Dict) -> Event:
        """
        Apply a partial update to an event

        Raises:
            EventNotFoundException: If event not found
            DataValidationException: If startsAt is not a timestamp
        """
        values = _columns(payload, EVENT_FIELDS)
        if "starts_at" in values:
            values["starts_at"] = _validate_timestamp("startsAt", values["starts_at"])
        if not values:
            return self.get_event_or_raise(event_id)

        row = self.event_repository.update_event(event_id, values)
        if row is None:
            raise EventNotFoundException(event_id)
        return self._with_counts([row])[0]

    def delete_event(self, event_id: str) -> None:
        self.event_repository.delete_event(event_id)
        logger.info(f"Deleted event {event_id}")


class GuestService:
    """
    Handles guest list management and door check-in

    Guests are keyed by id for management and by (event, unique code)
    for scanning.
    """

    def __init__(self, guest_repository: GuestRepository, event_service: EventService):
        self.guest_repository = guest_repository
        self.event_service = event_service

    def list_guests(self, event_id: str) -> List[Guest]:
        return [Guest.from_row(row) for row in self.guest_repository.list_by_event(event_id)]

    def get_guest_or_raise(self, guest_id: str) -> Guest:
        """
        Get guest by ID or raise exception if not found

        Raises:
            DataValidationException: If the guest ID is blank
            GuestNotFoundException: If guest not found
        """
        if not guest_id or not guest_id.strip():
            raise DataValidationException("guestId", "Guest ID is required")
        row = self.guest_repository.get_guest(guest_id.strip())
        if row is None:
            raise GuestNotFoundException(guest_id)
        return Guest.from_row(row)

    def create_guests(self, event_id: str, payloads: List[Dict]) -> List[Guest]:
        """
        Add one or more guests to an event

        Args:
            event_id: Event the guests belong to
            payloads: Client payloads with at least a name

        Returns:
            The created guests with their unique codes

        Raises:
            EventNotFoundException: If the event does not exist
            DataValidationException: If a guest has no name
        """
        self.event_service.get_event_or_raise(event_id)

        rows = []
        for index, payload in enumerate(payloads):
            if not isinstance(payload, dict):
                raise DataValidationException(f"guests[{index}]", "Expected a JSON object")
            name = payload.get("name")
            name = name.strip() if isinstance(name, str) else ""
            if not name:
                raise DataValidationException(f"guests[{index}].name", "Guest name is required")
            values = _columns(payload, GUEST_FIELDS)
            values.pop("checked_in", None)
            values.pop("checked_in_at", None)
            values.update(event_id=event_id, name=name)
            rows.append(values)

        created = [Guest.from_row(row) for row in self.guest_repository.create_guests(rows)]
        logger.info(f"Added {len(created)} guest(s) to event {event_id}")
        return created

    def update_guest(self, guest_id: str, payload: Dict) -> Guest:
        values = _columns(payload, GUEST_FIELDS)
        if not values:
            return self.get_guest_or_raise(guest_id)
        row = self.guest_repository.update_guest(guest_id, values)
        if row is None:
            raise GuestNotFoundException(guest_id)
        return Guest.from_row(row)

    def delete_guest(self, guest_id: str) -> None:
        self.guest_repository.delete_guest(guest_id)

    def check_in(self, event_id: str, unique_code: str, checked_in_by: str) -> CheckInResult:
        """
        Check a guest in by the code from their QR

        Args:
            event_id: Event being scanned
            unique_code: Code read from the guest's QR
            checked_in_by: Organizer performing the scan

        Returns:
            CheckInResult with status ok, already or not_found
        """
        if not isinstance(unique_code, str) or not unique_code.strip():
            raise DataValidationException("uniqueCode", "Unique code is required")

        row = self.guest_repository.mark_checked_in(event_id, unique_code.strip(), checked_in_by)
        if row is not None:
            logger.info(f"Checked in guest {row['id']} at event {event_id}")
            return CheckInResult(CheckInStatus.OK, Guest.from_row(row))

        existing = self.guest_repository.find_by_code(event_id, unique_code.strip())
        if existing and existing.get("checked_in"):
            return CheckInResult(CheckInStatus.ALREADY, Guest.from_row(existing))
        return CheckInResult(CheckInStatus.NOT_FOUND)


class QRCodeService:
    """Renders the entry QR image for a guest"""

    def __init__(self, size: int = 512, border: int = 2):
        """
        Initialize QR code service

        Args:
            size: Width and height of the PNG in pixels
            border: Quiet zone width in modules
        """
        self.size = size
        self.border = border

    def render_png(self, guest: Guest) -> bytes:
        """
        Render the guest's QR code as PNG

        Args:
            guest: Guest whose id, event and name are encoded

        Returns:
            PNG image bytes

        Raises:
            QRCodeGenerationException: If rendering fails
        """
        try:
            qr = qrcode.QRCode(
                error_correction=qrcode.constants.ERROR_CORRECT_H,
                box_size=10,
                border=self.border,
            )
            qr.add_data(json.dumps(guest.qr_payload()))
            qr.make(fit=True)

            img = qr.make_image(fill_color="black", back_color="white").get_image()
            img = img.convert("RGB").resize((self.size, self.size), Image.Resampling.NEAREST)

            buffer = io.BytesIO()
            img.save(buffer, format='PNG')
            return buffer.getvalue()

        except Exception as e:
            logger.error(f"QR generation failed for guest {guest.id}: {str(e)}")
            raise QRCodeGenerationException(guest.id, str(e))
