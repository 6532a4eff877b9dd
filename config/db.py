import logging
import os

from dotenv import load_dotenv
from flask import current_app, has_app_context
from postgrest.exceptions import APIError
from supabase import create_client, Client
from supabase.lib.client_options import ClientOptions

load_dotenv()

logger = logging.getLogger(__name__)


def _setting(name, default=None):
    """Read a setting from the Flask config, falling back to the environment"""
    if has_app_context() and current_app.config.get(name) is not None:
        return current_app.config.get(name)
    return os.getenv(name, default)


def is_configured():
    """True when the Supabase project URL and anon key are both set"""
    return bool(_setting('SUPABASE_URL') and _setting('SUPABASE_ANON_KEY'))


def get_anon_client() -> Client:
    """Create a client authenticated with the public anon key"""
    return create_client(_setting('SUPABASE_URL'), _setting('SUPABASE_ANON_KEY'))


def get_service_client():
    """
    Create a client with the service-role key.
    Returns None when the service key is not configured.
    """
    url = _setting('SUPABASE_URL')
    key = _setting('SUPABASE_SERVICE_ROLE_KEY')
    if not url or not key:
        return None
    return create_client(url, key, options=ClientOptions(
        auto_refresh_token=False,
        persist_session=False,
    ))


def get_user_client(access_token) -> Client:
    """Create a client that sends the user's JWT so row level security applies"""
    client = create_client(
        _setting('SUPABASE_URL'),
        _setting('SUPABASE_ANON_KEY'),
        options=ClientOptions(
            headers={'Authorization': f'Bearer {access_token}'},
            auto_refresh_token=False,
            persist_session=False,
        ),
    )
    client.postgrest.auth(access_token)
    return client


def get_oauth_client(storage) -> Client:
    """
    Create an anon client for the PKCE OAuth flow.
    The code verifier is kept in `storage` so it survives the provider redirect.
    """
    return create_client(_setting('SUPABASE_URL'), _setting('SUPABASE_ANON_KEY'), options=ClientOptions(
        flow_type='pkce',
        storage=storage,
        auto_refresh_token=False,
        persist_session=False,
    ))


def find_profile_by_email(client, email):
    """Return the profile row for an email or None"""
    result = client.table('profiles').select('id, email').eq('email', email).limit(1).execute()
    rows = result.data or []
    return rows[0] if rows else None


def create_profile(client, user_id, email, full_name=None, organization=None, role='user'):
    """
    Insert a profile row for an auth user
    Returns: (success: bool, message: str)
    """
    try:
        client.table('profiles').insert({
            'id': user_id,
            'email': email,
            'full_name': full_name,
            'organization': organization,
            'role': role,
        }).execute()
        return (True, 'Profile created successfully')
    except APIError as e:
        logger.error(f"❌ Error creating profile: {e.message}")
        return (False, e.message or 'Failed to create profile')
