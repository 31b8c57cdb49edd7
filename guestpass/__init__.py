"""
GuestPass Package

A guest check-in web application built with Flask. Organizers sign in,
manage events and guest lists, and guests are issued QR codes that are
scanned at the door.

Main Components:
- models: Data models for sessions, auth state, events and guests
- repositories: Session, profile, event and guest stores (Supabase or in-memory)
- services: Auth gate, display-name prompt, event, guest and QR code logic
- exceptions: Custom exception classes for error handling
- app: Main Flask application class

Usage:
    from guestpass import create_app

    app = create_app()
    app.run()
"""

__version__ = "1.0.0"

# Import main components for easy access
from .app import create_app, create_development_app, create_production_app
from .models import (
    AuthPhase,
    AuthState,
    CheckInResult,
    CheckInStatus,
    Event,
    GateView,
    Guest,
    Session,
    UserProfile,
)
from .services import (
    AuthStateController,
    DisplayNamePromptFlow,
    EventService,
    GuestService,
    QRCodeService,
    ViewScope,
    select_view,
)
from .repositories import RepositoryFactory, Repositories
from .exceptions import (
    GuestPassException,
    NotFoundException,
    EventNotFoundException,
    GuestNotFoundException,
    AuthenticationFailedException,
    DataValidationException,
    PersistenceException,
    SignOutException,
    InvalidAuthTransitionException,
    ConcurrentUpdateException,
    QRCodeGenerationException,
)

__all__ = [
    # App factory functions
    'create_app',
    'create_development_app',
    'create_production_app',

    # Data models
    'AuthPhase',
    'AuthState',
    'CheckInResult',
    'CheckInStatus',
    'Event',
    'GateView',
    'Guest',
    'Session',
    'UserProfile',

    # Services
    'AuthStateController',
    'DisplayNamePromptFlow',
    'EventService',
    'GuestService',
    'QRCodeService',
    'ViewScope',
    'select_view',

    # Repository factory
    'RepositoryFactory',
    'Repositories',

    # Exceptions
    'GuestPassException',
    'NotFoundException',
    'EventNotFoundException',
    'GuestNotFoundException',
    'AuthenticationFailedException',
    'DataValidationException',
    'PersistenceException',
    'SignOutException',
    'InvalidAuthTransitionException',
    'ConcurrentUpdateException',
    'QRCodeGenerationException',
]
