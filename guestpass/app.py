"""
Main Application Module for GuestPass

This module contains the main Flask application class that orchestrates
all services and handles HTTP requests. It serves the protected pages,
which render one of four views depending on the auth state, and the JSON
API used for events, guests, check-in and guest QR codes.
"""

import asyncio
import logging
from typing import Optional

from flask import (
    Flask,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.exceptions import HTTPException

from .config import DevelopmentConfig, ProductionConfig, TestingConfig, get_config
from .exceptions import (
    AuthenticationFailedException,
    DataValidationException,
    GuestPassException,
    SignOutException,
)
from .models import AuthPhase, AuthState, GateView
from .repositories import Repositories, RepositoryFactory
from .services import (
    AuthStateController,
    DisplayNamePromptFlow,
    EventService,
    GuestService,
    QRCodeService,
    ViewScope,
    run_blocking,
    select_view,
)

logger = logging.getLogger(__name__)

TOKEN_KEY = "access_token"


class GuestPassApp:
    """
    Main Flask application class for GuestPass

    This class orchestrates all services and handles the web interface
    and JSON API for the guest check-in system.
    """

    def __init__(self, config: Optional[dict] = None, config_class=None,
                 repositories: Optional[Repositories] = None):
        """
        Initialize the GuestPass application

        Args:
            config: Optional configuration dictionary overriding the defaults
            config_class: Optional configuration class, defaults to FLASK_ENV's
            repositories: Optional pre-built stores, used instead of the
                ones described by the configuration
        """
        # Initialize Flask app
        self.app = Flask(__name__)
        self._configure_app(config, config_class)
        self._configure_logging()

        # Initialize repositories
        self.repositories = repositories or RepositoryFactory.create_repositories(
            self.app.config['BACKEND'],
            url=self.app.config['SUPABASE_URL'],
            service_role_key=self.app.config['SUPABASE_SERVICE_ROLE_KEY'],
            anon_key=self.app.config['SUPABASE_ANON_KEY'],
            accounts=self.app.config['MEMORY_ACCOUNTS'],
        )

        # Initialize services
        self.event_service = EventService(self.repositories.events, self.repositories.guests)
        self.guest_service = GuestService(self.repositories.guests, self.event_service)
        self.qr_service = QRCodeService(
            size=self.app.config['QR_CODE_SIZE'],
            border=self.app.config['QR_CODE_BORDER'],
        )

        # Register routes
        self._register_routes()

        # Register error handlers
        self._register_error_handlers()

    def _configure_app(self, config: Optional[dict] = None, config_class=None) -> None:
        """
        Configure Flask application settings

        Args:
            config: Optional configuration dictionary
            config_class: Optional configuration class
        """
        self.app.config.from_object(config_class or get_config())

        # Update with provided config
        if config:
            self.app.config.update(config)

    def _configure_logging(self) -> None:
        logging.basicConfig(
            level=self.app.config['LOG_LEVEL'],
            format=self.app.config['LOG_FORMAT'],
        )

    def _register_routes(self) -> None:
        """Register all Flask routes"""
        # Pages
        self.app.add_url_rule("/", "home", self.home)
        self.app.add_url_rule("/login", "login", self.login, methods=["GET", "POST"])
        self.app.add_url_rule("/signup", "signup", self.signup, methods=["POST"])
        self.app.add_url_rule("/magic-link", "magic_link", self.magic_link, methods=["POST"])
        self.app.add_url_rule("/profile/display-name", "submit_display_name",
                              self.submit_display_name, methods=["POST"])
        self.app.add_url_rule("/logout", "logout", self.logout, methods=["POST"])

        # Auth API
        self.app.add_url_rule("/api/auth/me", "api_me", self.api_me)
        self.app.add_url_rule("/api/auth/state", "api_auth_state", self.api_auth_state)
        self.app.add_url_rule("/api/auth/sign-out", "api_sign_out", self.api_sign_out, methods=["POST"])
        self.app.add_url_rule("/api/profile/display-name", "api_display_name",
                              self.api_display_name, methods=["PUT"])

        # Events API
        self.app.add_url_rule("/api/events", "list_events", self.list_events)
        self.app.add_url_rule("/api/events", "create_event", self.create_event, methods=["POST"])
        self.app.add_url_rule("/api/events/<event_id>", "get_event", self.get_event)
        self.app.add_url_rule("/api/events/<event_id>", "update_event", self.update_event, methods=["PATCH"])
        self.app.add_url_rule("/api/events/<event_id>", "delete_event", self.delete_event, methods=["DELETE"])

        # Guests API
        self.app.add_url_rule("/api/events/<event_id>/guests", "list_guests", self.list_guests)
        self.app.add_url_rule("/api/events/<event_id>/guests", "create_guests",
                              self.create_guests, methods=["POST"])
        self.app.add_url_rule("/api/events/<event_id>/check-in", "check_in", self.check_in, methods=["POST"])
        self.app.add_url_rule("/api/guests/<guest_id>", "update_guest", self.update_guest, methods=["PATCH"])
        self.app.add_url_rule("/api/guests/<guest_id>", "delete_guest", self.delete_guest, methods=["DELETE"])
        self.app.add_url_rule("/api/guests/<guest_id>/qr-code", "guest_qr_code", self.guest_qr_code)

        self.app.add_url_rule("/health", "health", self.health)

    def _register_error_handlers(self) -> None:
        """Register error handlers for custom exceptions"""

        @self.app.errorhandler(GuestPassException)
        def handle_guestpass_exception(e):
            if e.status_code >= 500:
                logger.error(f"{request.method} {request.path} failed: {str(e)}")
            if self._wants_json():
                return jsonify({"error": e.message, "errorCode": e.error_code}), e.status_code
            return render_template('error.html',
                                   error_title="Application Error",
                                   error_message=e.message), e.status_code

        @self.app.errorhandler(Exception)
        def handle_unexpected(e):
            if isinstance(e, HTTPException):
                return e
            logger.exception(f"Unexpected error on {request.method} {request.path}")
            if self._wants_json():
                return jsonify({"error": "Internal server error"}), 500
            return render_template('error.html',
                                   error_title="Unexpected Error",
                                   error_message="Something went wrong. Please try again."), 500

    def _wants_json(self) -> bool:
        return request.path.startswith("/api/")

    # Auth context

    def _controller(self) -> AuthStateController:
        """
        Auth controller for the current browser session

        Built once per request from the session cookie's token and
        shared by everything that handles the request.
        """
        if "auth_controller" not in g:
            g.auth_controller = AuthStateController(
                self.repositories.sessions,
                self.repositories.profiles,
                access_token=session.get(TOKEN_KEY),
            )
        return g.auth_controller

    async def _resolve_auth(self) -> AuthState:
        """
        Run the session check under a scope bound to this request

        If the check takes longer than AUTH_CHECK_TIMEOUT the state is
        left in LOADING and any late result is discarded.
        """
        controller = self._controller()
        scope = ViewScope()
        try:
            state = await asyncio.wait_for(controller.load(scope), self.app.config['AUTH_CHECK_TIMEOUT'])
        except asyncio.TimeoutError:
            logger.warning("Session check timed out, rendering loading view")
            state = controller.get_state()
        finally:
            scope.cancel()

        if state.phase is AuthPhase.UNAUTHENTICATED:
            session.pop(TOKEN_KEY, None)
        return state

    async def _require_session(self):
        state = await self._resolve_auth()
        if state.session is None:
            raise AuthenticationFailedException("sign-in required")
        return state.session

    def _store_session(self, auth_session) -> None:
        session.permanent = True
        session[TOKEN_KEY] = auth_session.access_token

    # Pages

    def _render_gate(self, state: AuthState, prompt: Optional[DisplayNamePromptFlow] = None):
        view = select_view(state)
        if view is GateView.LOADING:
            return render_template("loading.html",
                                   refresh_seconds=self.app.config['LOADING_REFRESH_SECONDS'])
        if view is GateView.LOGIN:
            return render_template("login.html", error=None, message=None)

        if prompt is None and view is GateView.NAME_PROMPT:
            prompt = DisplayNamePromptFlow(state.session.email, self._controller().update_display_name)
        events = self.event_service.list_events(owner_id=state.session.user_id)
        return render_template(
            "home.html",
            state=state,
            prompt=prompt if prompt and prompt.should_render(state) else None,
            events=events,
        )

    async def home(self):
        """
        Home page route

        Returns:
            Loading, login, name prompt or main view for the auth state
        """
        state = await self._resolve_auth()
        return self._render_gate(state)

    async def login(self):
        """
        Login route for organizer password sign-in

        Returns:
            Rendered login template or redirect to home on success
        """
        if request.method == "GET":
            state = await self._resolve_auth()
            if state.session is not None:
                return redirect(url_for("home"))
            return render_template("login.html", error=None, message=None)

        email = request.form.get("email", "").strip()
        password = request.form.get("password", "")
        if not email or not password:
            return render_template("login.html", error="Email and password are required.", message=None), 400

        try:
            auth_session = await run_blocking(
                self.repositories.sessions.sign_in_with_password, email, password
            )
        except AuthenticationFailedException as e:
            logger.info(f"Password sign-in rejected for {email}: {e.reason}")
            return render_template("login.html", error="Invalid credentials. Please try again.", message=None), 401

        self._store_session(auth_session)
        return redirect(url_for("home"))

    async def signup(self):
        """Create an account with email and password"""
        email = request.form.get("email", "").strip()
        password = request.form.get("password", "")
        if not email or not password:
            return render_template("login.html", error="Email and password are required.", message=None), 400

        try:
            auth_session = await run_blocking(self.repositories.sessions.sign_up, email, password)
        except AuthenticationFailedException as e:
            return render_template("login.html", error=e.reason or e.message, message=None), 400

        if auth_session is None:
            return render_template("login.html", error=None,
                                   message="Check your email to confirm your account.")
        self._store_session(auth_session)
        return redirect(url_for("home"))

    async def magic_link(self):
        """Email a one-time sign-in link"""
        email = request.form.get("email", "").strip()
        if not email:
            return render_template("login.html", error="Email is required.", message=None), 400

        try:
            await run_blocking(
                self.repositories.sessions.send_magic_link, email, url_for("home", _external=True)
            )
        except AuthenticationFailedException as e:
            return render_template("login.html", error=e.reason or e.message, message=None), 400
        return render_template("login.html", error=None, message="Check your email for a sign-in link.")

    async def submit_display_name(self):
        """
        Name prompt submit route

        Returns:
            Redirect home once the name is saved, otherwise the page
            with the prompt still open and the typed name kept
        """
        state = await self._resolve_auth()
        if state.phase is not AuthPhase.INCOMPLETE:
            return redirect(url_for("home"))

        controller = self._controller()
        prompt = DisplayNamePromptFlow(state.session.email, controller.update_display_name)
        if await prompt.submit(request.form.get("name", "")):
            return redirect(url_for("home"))
        return self._render_gate(controller.get_state(), prompt)

    async def logout(self):
        """
        Logout route

        Returns:
            Redirect to login page
        """
        controller = self._controller()
        await self._resolve_auth()
        session.pop(TOKEN_KEY, None)
        try:
            if controller.get_state().phase is not AuthPhase.LOADING:
                await controller.sign_out()
        except SignOutException:
            flash("You have been signed out on this device, but the server could not confirm it.", "warning")
        return redirect(url_for("login"))

    # Auth API

    async def api_me(self):
        """Current user as reported by the session store"""
        try:
            auth_session = await run_blocking(
                self.repositories.sessions.get_current_user, session.get(TOKEN_KEY)
            )
        except AuthenticationFailedException as e:
            logger.error(f"Failed to fetch user: {str(e)}")
            return jsonify({"user": None}), 401
        return jsonify({"user": auth_session.to_dict() if auth_session else None})

    async def api_auth_state(self):
        state = await self._resolve_auth()
        return jsonify(state.to_dict())

    async def api_sign_out(self):
        controller = self._controller()
        await self._resolve_auth()
        session.pop(TOKEN_KEY, None)
        if controller.get_state().phase is not AuthPhase.LOADING:
            try:
                await controller.sign_out()
            except SignOutException as e:
                return jsonify({"error": e.details}), e.status_code
        return jsonify({"success": True})

    async def api_display_name(self):
        await self._require_session()
        payload = request.get_json(silent=True) or {}
        state = await self._controller().update_display_name(payload.get("name", ""))
        return jsonify({"displayName": state.display_name})

    # Events API

    def list_events(self):
        events = self.event_service.list_events(
            owner_id=request.args.get("ownerId") or None,
            status=request.args.get("status") or None,
            starts_after=request.args.get("startsAfter") or None,
        )
        return jsonify({"data": [event.to_dict() for event in events]})

    def create_event(self):
        event = self.event_service.create_event(self._json_body())
        return jsonify({"data": event.to_dict()}), 201

    def get_event(self, event_id: str):
        event = self.event_service.get_event_or_raise(event_id)
        return jsonify({"data": event.to_dict()})

    def update_event(self, event_id: str):
        event = self.event_service.update_event(event_id, self._json_body())
        return jsonify({"data": event.to_dict()})

    def delete_event(self, event_id: str):
        self.event_service.delete_event(event_id)
        return "", 204

    # Guests API

    def list_guests(self, event_id: str):
        guests = self.guest_service.list_guests(event_id)
        return jsonify({"data": [guest.to_dict() for guest in guests]})

    def create_guests(self, event_id: str):
        payload = request.get_json(silent=True)
        if isinstance(payload, list):
            guests = self.guest_service.create_guests(event_id, payload)
            return jsonify({"data": [guest.to_dict() for guest in guests]}), 201
        if not isinstance(payload, dict):
            raise DataValidationException("body", "Expected a JSON object or list")
        guest = self.guest_service.create_guests(event_id, [payload])[0]
        return jsonify({"data": guest.to_dict()}), 201

    async def check_in(self, event_id: str):
        organizer = await self._require_session()
        payload = self._json_body()
        state = self._controller().get_state()
        result = self.guest_service.check_in(
            event_id,
            payload.get("uniqueCode", ""),
            state.display_name or organizer.email or organizer.user_id,
        )
        return jsonify(result.to_dict())

    def update_guest(self, guest_id: str):
        guest = self.guest_service.update_guest(guest_id, self._json_body())
        return jsonify({"data": guest.to_dict()})

    def delete_guest(self, guest_id: str):
        self.guest_service.delete_guest(guest_id)
        return "", 204

    def guest_qr_code(self, guest_id: str):
        """
        Public QR image for a guest

        Returns:
            PNG response cached by clients indefinitely
        """
        guest = self.guest_service.get_guest_or_raise(guest_id)
        png = self.qr_service.render_png(guest)
        return png, 200, {
            "Content-Type": "image/png",
            "Cache-Control": self.app.config['QR_CODE_CACHE_CONTROL'],
            "Content-Disposition": f'inline; filename="qr-{guest.id}.png"',
        }

    def health(self):
        return jsonify({"service": "guestpass", "status": "healthy", "backend": self.app.config['BACKEND']})

    def _json_body(self) -> dict:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise DataValidationException("body", "Expected a JSON object")
        return payload

    def run(self, host: str = '127.0.0.1', port: int = 5000, debug: bool = None) -> None:
        """
        Run the Flask application

        Args:
            host: Host address to bind to
            port: Port number to listen on
            debug: Debug mode (overrides config if provided)
        """
        if debug is not None:
            self.app.config['DEBUG'] = debug

        self.app.run(host=host, port=port, debug=self.app.config['DEBUG'])


def create_app(config: Optional[dict] = None, repositories: Optional[Repositories] = None,
               config_class=None) -> GuestPassApp:
    """
    Factory function to create and configure the application

    Args:
        config: Optional configuration dictionary
        repositories: Optional pre-built stores
        config_class: Optional configuration class

    Returns:
        Configured GuestPassApp instance
    """
    return GuestPassApp(config, config_class=config_class, repositories=repositories)


def create_development_app() -> GuestPassApp:
    """
    Create application configured for development

    Returns:
        GuestPassApp configured for development
    """
    return create_app(config_class=DevelopmentConfig)


def create_production_app() -> GuestPassApp:
    """
    Create application configured for production

    Returns:
        GuestPassApp configured for production
    """
    return create_app(config_class=ProductionConfig)


def create_testing_app(repositories: Optional[Repositories] = None) -> GuestPassApp:
    return create_app(repositories=repositories, config_class=TestingConfig)


if __name__ == "__main__":
    # Create and run the application
    app = create_development_app()
    app.run(debug=True)
