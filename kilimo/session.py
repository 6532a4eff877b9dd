"""
Kilimo AI - Session Module
Keeps the Supabase auth session alive across page requests and exposes
helpers for resolving the signed-in user.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from functools import wraps

from flask import current_app, flash, g, jsonify, redirect, request, session, url_for
from supabase import AuthError

from config import db

logger = logging.getLogger(__name__)

ACCESS_COOKIE = 'sb-access-token'
REFRESH_COOKIE = 'sb-refresh-token'
SKIPPED_EXTENSIONS = ('.svg', '.png', '.jpg', '.jpeg', '.gif', '.webp', '.ico')

_refresh_pool = ThreadPoolExecutor(max_workers=16, thread_name_prefix='session-refresh')


def init_session(app):
    """Install the refresh middleware on the app"""
    app.before_request(refresh_session)
    app.after_request(write_session_cookies)
    logger.info("✅ Session middleware installed")


def _should_skip(path):
    if path.startswith('/static') or path.startswith('/api'):
        return True
    return path.lower().endswith(SKIPPED_EXTENSIONS) or path == '/favicon.ico'


def _validate_or_refresh(client, access_token, refresh_token):
    """Return (user, new_session). new_session is None when the token is still valid."""
    if access_token:
        try:
            response = client.auth.get_user(access_token)
            if response and response.user:
                return response.user, None
        except AuthError:
            pass
    response = client.auth.refresh_session(refresh_token)
    return response.user, response.session


def refresh_session():
    """Before-request hook: refresh the auth session for page requests"""
    if _should_skip(request.path):
        return None
    if not db.is_configured():
        return None

    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        return None

    access_token = request.cookies.get(ACCESS_COOKIE)
    timeout = current_app.config.get('SESSION_REFRESH_TIMEOUT', 5)

    try:
        client = db.get_anon_client()
        future = _refresh_pool.submit(_validate_or_refresh, client, access_token, refresh_token)
        user, new_session = future.result(timeout=timeout)
    except FutureTimeout:
        # a refresh still waiting in the queue never runs
        future.cancel()
        logger.warning(f"⚠️ Session refresh timed out after {timeout}s")
        return None
    except Exception as e:
        logger.warning(f"⚠️ Session refresh failed: {e}")
        return None

    g.kilimo_user = user
    if new_session is not None:
        g.refreshed_session = new_session
        logger.debug("🔄 Session refreshed")
    return None


def write_session_cookies(response):
    """After-request hook: propagate refreshed tokens to the browser"""
    new_session = g.pop('refreshed_session', None)
    if new_session is not None:
        set_session_cookies(response, new_session)
    return response


def set_session_cookies(response, auth_session):
    secure = current_app.config.get('SESSION_COOKIE_SECURE', False)
    max_age = 60 * 60 * 24 * 7
    response.set_cookie(ACCESS_COOKIE, auth_session.access_token, max_age=max_age,
                        httponly=True, secure=secure, samesite='Lax')
    response.set_cookie(REFRESH_COOKIE, auth_session.refresh_token, max_age=max_age,
                        httponly=True, secure=secure, samesite='Lax')
    return response


class FlaskSessionStorage:
    """Auth client storage kept in the signed Flask session cookie"""

    def get_item(self, key):
        return session.get(key)

    def set_item(self, key, value):
        session[key] = value

    def remove_item(self, key):
        session.pop(key, None)


def clear_session_cookies(response):
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)
    return response


def get_access_token():
    refreshed = g.get('refreshed_session')
    if refreshed is not None:
        return refreshed.access_token
    return request.cookies.get(ACCESS_COOKIE)


def current_user():
    """Resolve the signed-in user once per request. Returns None when signed out."""
    if 'kilimo_user' in g:
        return g.kilimo_user

    user = None
    token = get_access_token()
    if token and db.is_configured():
        try:
            response = db.get_anon_client().auth.get_user(token)
            user = response.user if response else None
        except AuthError as e:
            logger.debug(f"Access token rejected: {e}")
    g.kilimo_user = user
    return user


def get_supabase():
    """Supabase client scoped to the current user's JWT"""
    if 'kilimo_client' not in g:
        g.kilimo_client = db.get_user_client(get_access_token())
    return g.kilimo_client


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_user() is None:
            flash('Please login to access the dashboard', 'warning')
            return redirect(url_for('auth.login'))
        return view(*args, **kwargs)
    return wrapped


def api_login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_user() is None:
            return jsonify({'success': False, 'error': 'Unauthorized'}), 401
        return view(*args, **kwargs)
    return wrapped
