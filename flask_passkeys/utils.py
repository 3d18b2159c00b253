"""
Module-level session helpers for apps that don't hold a Passkeys reference.

Each helper finds the extension registered on current_app and degrades to
"not logged in" when none is registered.
"""

from flask import current_app, redirect, url_for, g
from functools import wraps


def _extension():
    return current_app.extensions.get('passkeys')


def login_required(f):
    """Guard a view behind a passkey session.

    Anonymous or expired sessions are sent to PASSKEYS_LOGIN_URL. Otherwise
    the stored User is placed on g.user before the view runs:

        @app.route('/passkeys')
        @login_required
        def list_passkeys():
            return {'passkeys': [c.id for c in g.user.credentials]}
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        passkeys = _extension()

        if not passkeys or not passkeys.is_authenticated():
            return redirect(current_app.config.get('PASSKEYS_LOGIN_URL', '/login'))

        g.user = passkeys.current_user()

        return f(*args, **kwargs)
    return decorated_function


def get_current_user():
    """The User behind the session, looked up by user id; None if logged out."""
    passkeys = _extension()

    if not passkeys or not passkeys.is_authenticated():
        return None

    return passkeys.current_user()


def is_authenticated():
    """True while the session holds a user id that has not outlived
    PASSKEYS_SESSION_DURATION."""
    passkeys = _extension()

    if not passkeys:
        return False

    return passkeys.is_authenticated()


def logout():
    """Redirect to the blueprint's /auth/logout, which clears the session.

    Without a registered extension there is no session to clear, so this
    falls back to '/'.
    """
    if not _extension():
        return redirect('/')

    return redirect(url_for('passkeys.logout'))
