"""
Kilimo AI - Account Provisioning API
Demo sign-in, demo account creation, manual email confirmation and the
Supabase auth webhook that keeps the profiles table in sync.
"""

import hashlib
import hmac
import json
import logging

from flask import Blueprint, current_app, jsonify, request
from postgrest.exceptions import APIError
from supabase import AuthApiError, AuthError

from config import db
from kilimo.session import set_session_cookies

logger = logging.getLogger(__name__)

accounts_bp = Blueprint('accounts', __name__, url_prefix='/api')

HANDLED_EVENTS = ('user.created', 'auth.user.created')


def init_accounts(app):
    if app.config.get('ALLOW_DEMO') or app.config.get('APP_ENV') == 'development':
        logger.warning("⚠️ Demo accounts are enabled")
    logger.info("✅ Accounts module initialized!")


def demo_allowed():
    return bool(current_app.config.get('ALLOW_DEMO')) or current_app.config.get('APP_ENV') == 'development'


def auto_confirm_allowed():
    return bool(current_app.config.get('ALLOW_AUTO_CONFIRM')) or current_app.config.get('APP_ENV') == 'development'


def _server_configured():
    return bool(current_app.config.get('SUPABASE_URL') and current_app.config.get('SUPABASE_SERVICE_ROLE_KEY'))


def _error(message, status):
    return jsonify({'success': False, 'error': message}), status


def _lookup_profile(client, email):
    try:
        return db.find_profile_by_email(client, email)
    except APIError as e:
        logger.warning(f"⚠️ Profile lookup error: {e.message}")
        return None


def _find_user_by_email(client, email):
    users = client.auth.admin.list_users() or []
    for user in users:
        if (user.email or '').lower() == email.lower():
            return user
    return None


# ========================
# DEMO SIGN-IN
# ========================

@accounts_bp.route('/auth/demo', methods=['POST'])
def demo_sign_in():
    """Sign in with the configured demo credentials"""
    if not demo_allowed():
        return _error('Demo not allowed', 403)

    if not _server_configured():
        logger.error("❌ Missing Supabase URL or service role key; cannot perform demo sign-in")
        return _error('Server not configured', 500)

    email = current_app.config.get('DEMO_EMAIL')
    password = current_app.config.get('DEMO_PASSWORD')
    if not email or not password:
        logger.error("❌ Demo credentials not configured")
        return _error('Demo not configured', 500)

    try:
        response = db.get_service_client().auth.sign_in_with_password({
            'email': email,
            'password': password,
        })
    except AuthError as e:
        logger.error(f"❌ Demo sign-in failed: {e}")
        return _error(getattr(e, 'message', None) or str(e), 400)
    except Exception:
        logger.exception("Demo sign-in error")
        return _error('Demo sign-in error', 500)

    resp = jsonify({'success': True, 'ok': True})
    if response.session:
        set_session_cookies(resp, response.session)
    logger.info("🎭 Demo user signed in")
    return resp


@accounts_bp.route('/auth/create-demo', methods=['POST'])
def create_demo():
    """Create (or reuse) the demo account"""
    if not demo_allowed():
        return _error('Demo creation not allowed', 403)

    if not _server_configured():
        logger.error("❌ Missing Supabase URL or service role key; cannot create demo user")
        return _error('Server not configured', 500)

    body = request.get_json(silent=True) or {}
    email = body.get('email') or current_app.config.get('DEMO_EMAIL')
    password = body.get('password') or current_app.config.get('DEMO_PASSWORD')
    full_name = body.get('full_name') or 'Demo User'
    organization = body.get('organization') or 'Demo Organization'

    if not email or not password:
        return _error('Missing demo email or password', 400)

    try:
        service = db.get_service_client()

        existing = _lookup_profile(service, email)
        if existing and existing.get('id'):
            return jsonify({'success': True, 'ok': True, 'message': 'Demo account already exists'})

        try:
            created = service.auth.admin.create_user({
                'email': email,
                'password': password,
                'user_metadata': {'full_name': full_name, 'organization': organization},
            })
            user_id = created.user.id if created and created.user else None
            if not user_id:
                logger.error("❌ No user id returned after creating demo user")
                return _error('No user id', 500)
        except AuthApiError as e:
            if 'already been registered' not in (e.message or '') and getattr(e, 'code', None) != 'email_exists':
                logger.error(f"❌ Failed to create demo user: {e.message}")
                return _error('Failed to create demo user', 500)

            existing_user = _find_user_by_email(service, email)
            if existing_user is None:
                logger.error(f"❌ No user found with email {email}")
                return _error('No user id for existing user', 500)
            user_id = existing_user.id

        ok, message = db.create_profile(service, user_id, email, full_name=full_name,
                                        organization=organization, role='viewer')
        if not ok:
            logger.warning(f"⚠️ Profile insert error (may already exist): {message}")

        if auto_confirm_allowed():
            try:
                service.auth.admin.update_user_by_id(user_id, {'email_confirm': True})
            except AuthError as e:
                logger.warning(f"⚠️ Auto-confirm failed: {e}")

        logger.info(f"🎭 Demo account ready: {email}")
        return jsonify({'success': True, 'ok': True})

    except Exception:
        logger.exception("Create demo user error")
        return _error('Error', 500)


@accounts_bp.route('/auth/confirm-user', methods=['POST'])
def confirm_user():
    """Mark a user's email as confirmed (development and test environments only)"""
    body = request.get_json(silent=True) or {}
    email = body.get('email')

    if not email:
        return _error('Missing email', 400)

    if not _server_configured():
        logger.warning("⚠️ Missing Supabase URL or service role key; cannot confirm user")
        return _error('Missing server keys', 500)

    if not demo_allowed():
        return _error('Not allowed', 403)

    try:
        service = db.get_service_client()
        profile = _lookup_profile(service, email)
        if not profile:
            logger.warning(f"⚠️ Profile not found for email {email}")
            return _error('User not found', 404)

        admin = getattr(service.auth, 'admin', None)
        if admin is None:
            logger.error("❌ Admin API not available in this environment")
            return _error('Admin API not available', 500)

        try:
            admin.update_user_by_id(profile['id'], {'email_confirm': True})
        except AuthError as e:
            logger.error(f"❌ Failed to confirm user: {e}")
            return _error('Failed to confirm user', 500)

        return jsonify({'success': True, 'ok': True})

    except Exception:
        logger.exception("Confirm user error")
        return _error('Error', 500)


# ========================
# AUTH WEBHOOK
# ========================

def verify_signature(secret, body, signature):
    """Compare an HMAC-SHA256 hex digest of the raw body in constant time"""
    expected = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode('utf-8'), signature.encode('utf-8'))


@accounts_bp.route('/webhooks/supabase-auth', methods=['POST'])
def supabase_auth_webhook():
    """Upsert a profile when Supabase reports a new auth user"""
    body = request.get_data()
    signature = request.headers.get('x-supabase-signature') or request.headers.get('x-supabase-signature-256')
    secret = current_app.config.get('SUPABASE_WEBHOOK_SECRET')

    if secret:
        if not signature:
            return _error('Missing signature', 401)
        if not verify_signature(secret, body, signature):
            return _error('Invalid signature', 401)

    try:
        payload = json.loads(body or b'{}')
    except ValueError:
        return _error('Invalid JSON payload', 400)

    if not isinstance(payload, dict):
        return _error('Invalid JSON payload', 400)

    event = payload.get('type') or payload.get('event') or payload.get('trigger')
    if event not in HANDLED_EVENTS:
        return jsonify({'success': True, 'message': 'Event ignored'})

    user = payload.get('user') or payload.get('record') or payload.get('data') or payload.get('new') or payload
    user_id = user.get('id') if isinstance(user, dict) else None
    if not user_id:
        return _error('No user id', 400)

    if not db.is_configured() and not _server_configured():
        logger.warning("⚠️ Missing Supabase URL or keys; cannot upsert profile")
        return _error('Missing server keys', 500)

    metadata = user.get('user_metadata') or {}
    try:
        client = db.get_service_client() or db.get_anon_client()
        client.table('profiles').upsert({
            'id': user_id,
            'email': user.get('email'),
            'full_name': metadata.get('full_name') or user.get('full_name'),
            'organization': metadata.get('organization') or user.get('organization'),
            'role': 'user',
        }, on_conflict='id').execute()
    except APIError as e:
        logger.error(f"❌ Failed to upsert profile: {e.message}")
        return _error('Upsert failed', 500)

    logger.info(f"👤 Profile synced for new user {user_id}")
    return jsonify({'success': True, 'message': 'OK'})
