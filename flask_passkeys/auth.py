from flask import Blueprint, session, redirect, request, current_app, jsonify
from datetime import datetime, timedelta, timezone
from functools import wraps

from .ceremony import CeremonyOrchestrator
from .errors import CeremonyError, InvalidInput, StoreError
from .gateway import WebAuthnGateway
from .storage import InMemoryChallengeStore, InMemoryUserStore


class Passkeys:
    """Passkey (WebAuthn) registration and login for Flask."""

    def __init__(self, app=None, user_store=None, challenge_store=None, gateway=None):
        self.app = app
        self.blueprint = Blueprint('passkeys', __name__)

        self.user_store = user_store
        self.challenge_store = challenge_store
        self.gateway = gateway or WebAuthnGateway()
        self.ceremony = None

        self._register_routes()

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        """Initialize the extension with Flask app."""
        app.config.setdefault('PASSKEYS_RP_ID', 'localhost')
        app.config.setdefault('PASSKEYS_RP_NAME', 'WebAuthn Demo')
        # None means https://<rp id>
        app.config.setdefault('PASSKEYS_ORIGIN', None)
        app.config.setdefault('PASSKEYS_CHALLENGE_TTL', 300)
        app.config.setdefault('PASSKEYS_SESSION_DURATION', 24 * 60 * 60)
        app.config.setdefault('PASSKEYS_LOGIN_URL', '/login')

        if self.user_store is None:
            self.user_store = InMemoryUserStore()
        if self.challenge_store is None:
            self.challenge_store = InMemoryChallengeStore(
                challenge_ttl_seconds=app.config['PASSKEYS_CHALLENGE_TTL']
            )

        self.ceremony = CeremonyOrchestrator(
            app.config['PASSKEYS_RP_ID'],
            app.config['PASSKEYS_RP_NAME'],
            self.user_store,
            self.challenge_store,
            self.gateway,
            origin=app.config['PASSKEYS_ORIGIN'],
        )

        app.extensions['passkeys'] = self
        app.register_blueprint(self.blueprint, url_prefix='/auth')

    # ==================== Session ====================

    def login(self, user_id):
        session['user_id'] = user_id
        session['logged_in_at'] = datetime.now(timezone.utc).isoformat()

    def logout(self):
        session.clear()

    def login_required(self, f):
        """Decorator to require login for a view."""
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not self.is_authenticated():
                return redirect(current_app.config.get('PASSKEYS_LOGIN_URL', '/login'))
            return f(*args, **kwargs)
        return decorated_function

    def is_authenticated(self):
        """Check if the current user is authenticated."""
        if not session.get('user_id'):
            return False

        logged_in_at = session.get('logged_in_at')
        if not logged_in_at:
            return False

        try:
            logged_in_dt = datetime.fromisoformat(logged_in_at)
        except (ValueError, TypeError):
            session.clear()
            return False

        session_duration = current_app.config.get('PASSKEYS_SESSION_DURATION', 24 * 60 * 60)
        if datetime.now(timezone.utc) - logged_in_dt > timedelta(seconds=session_duration):
            session.clear()
            return False

        return True

    def current_user(self):
        """Get the current authenticated user."""
        if not self.is_authenticated():
            return None
        return self.user_store.get(session.get('user_id'), by_user_id=True)

    # ==================== Routes ====================

    def _ceremony_error(self, step, error):
        """Same response for every ceremony failure; details go to the log only."""
        current_app.logger.warning(f"Passkey {step} failed: {type(error).__name__}")
        return jsonify({'error': CeremonyError.public_message}), 400

    def _register_routes(self):
        """Register ceremony routes on the blueprint."""

        def _payload():
            data = request.get_json(silent=True) or {}
            return data.get('username'), data.get('credential')

        @self.blueprint.route('/register-challenge', methods=['POST'])
        def register_challenge():
            """Generate WebAuthn registration options."""
            username, _ = _payload()
            try:
                options = self.ceremony.begin_registration(username)
            except InvalidInput as e:
                return jsonify({'error': str(e)}), 400
            except StoreError as e:
                current_app.logger.error(f"Error starting registration: {str(e)}")
                return jsonify({'error': 'Internal Server Error'}), 500
            return jsonify(options)

        @self.blueprint.route('/register-callback', methods=['POST'])
        def register_callback():
            """Verify a registration response and log the user in."""
            username, credential = _payload()
            try:
                user = self.ceremony.complete_registration(username, credential)
            except InvalidInput as e:
                return jsonify({'error': str(e)}), 400
            except CeremonyError as e:
                return self._ceremony_error('registration', e)

            self.login(user.user_id)
            return jsonify({'success': True})

        @self.blueprint.route('/login-challenge', methods=['POST'])
        def login_challenge():
            """Generate WebAuthn authentication options."""
            username, _ = _payload()
            try:
                options = self.ceremony.begin_authentication(username)
            except InvalidInput as e:
                return jsonify({'error': str(e)}), 400
            except CeremonyError as e:
                return self._ceremony_error('login', e)
            except StoreError as e:
                current_app.logger.error(f"Error starting login: {str(e)}")
                return jsonify({'error': 'Internal Server Error'}), 500
            return jsonify(options)

        @self.blueprint.route('/login-callback', methods=['POST'])
        def login_callback():
            """Verify an authentication response and log the user in."""
            username, credential = _payload()
            try:
                user = self.ceremony.complete_authentication(username, credential)
            except InvalidInput as e:
                return jsonify({'error': str(e)}), 400
            except CeremonyError as e:
                return self._ceremony_error('login', e)

            self.login(user.user_id)
            return jsonify({'success': True})

        @self.blueprint.route('/me')
        def me():
            """Return the logged-in user."""
            user = self.current_user()
            if user is None:
                return jsonify({'error': 'Unauthorized'}), 401
            return jsonify({'user': user.to_dict()})

        @self.blueprint.route('/logout')
        def logout():
            """Log the user out by clearing the session."""
            session.clear()
            return redirect(current_app.config.get('PASSKEYS_LOGIN_URL', '/login'))
