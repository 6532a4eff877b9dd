import io
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

from supabase import AuthApiError

import kilimo.session as session_module
from tests.conftest import USER, auth_session


def _cookies(resp):
    return resp.headers.getlist('Set-Cookie')


def test_health_check(client):
    resp = client.get('/api/health')
    assert resp.status_code == 200
    assert resp.get_json() == {'status': 'ok'}


def test_unknown_route_returns_json_404(client):
    resp = client.get('/api/nope')
    assert resp.status_code == 404
    assert resp.get_json()['success'] is False


def test_api_requires_login(client):
    resp = client.get('/api/restoration-projects')
    assert resp.status_code == 401
    assert resp.get_json() == {'success': False, 'error': 'Unauthorized'}


def test_dashboard_redirects_anonymous_users(client):
    resp = client.get('/dashboard')
    assert resp.status_code == 302
    assert resp.headers['Location'].endswith('/auth/login')


def test_valid_access_token_is_kept(client, fake_db):
    fake_db.auth.get_user.return_value = SimpleNamespace(user=USER)
    client.set_cookie('sb-access-token', 'still-good')
    client.set_cookie('sb-refresh-token', 'refresh')

    resp = client.get('/auth/sign-up')

    assert resp.status_code == 200
    fake_db.auth.refresh_session.assert_not_called()
    assert not any(c.startswith('sb-access-token=') for c in _cookies(resp))


def test_expired_access_token_is_refreshed(client, fake_db):
    fake_db.auth.get_user.side_effect = AuthApiError('JWT expired', 401, None)
    fake_db.auth.refresh_session.return_value = SimpleNamespace(
        user=USER, session=auth_session('fresh-access', 'fresh-refresh'))
    client.set_cookie('sb-access-token', 'expired')
    client.set_cookie('sb-refresh-token', 'refresh')

    resp = client.get('/auth/sign-up')

    fake_db.auth.refresh_session.assert_called_once_with('refresh')
    assert any(c.startswith('sb-access-token=fresh-access') for c in _cookies(resp))
    assert any(c.startswith('sb-refresh-token=fresh-refresh') for c in _cookies(resp))
    access = next(c for c in _cookies(resp) if c.startswith('sb-access-token='))
    assert 'HttpOnly' in access
    assert 'SameSite=Lax' in access
    assert 'Secure' not in access


def test_refresh_failure_passes_request_through(client, fake_db):
    fake_db.auth.get_user.side_effect = AuthApiError('JWT expired', 401, None)
    fake_db.auth.refresh_session.side_effect = AuthApiError('Invalid Refresh Token', 400, None)
    client.set_cookie('sb-refresh-token', 'revoked')

    resp = client.get('/auth/sign-up')

    assert resp.status_code == 200


def test_slow_refresh_times_out(app, client, fake_db):
    app.config['SESSION_REFRESH_TIMEOUT'] = 0.05
    fake_db.auth.get_user.side_effect = AuthApiError('JWT expired', 401, None)
    fake_db.auth.refresh_session.side_effect = lambda token: time.sleep(0.5)
    client.set_cookie('sb-refresh-token', 'refresh')

    resp = client.get('/auth/sign-up')

    assert resp.status_code == 200
    assert not any(c.startswith('sb-access-token=') for c in _cookies(resp))


def test_api_paths_skip_refresh(client, fake_db):
    client.set_cookie('sb-refresh-token', 'refresh')
    client.get('/api/health')
    fake_db.auth.refresh_session.assert_not_called()
    fake_db.auth.get_user.assert_not_called()


def test_no_refresh_cookie_skips_refresh(client, fake_db):
    client.get('/auth/login')
    fake_db.auth.refresh_session.assert_not_called()


def test_refreshed_cookies_are_secure_when_configured(app, client, fake_db):
    app.config['SESSION_COOKIE_SECURE'] = True
    fake_db.auth.get_user.side_effect = AuthApiError('JWT expired', 401, None)
    fake_db.auth.refresh_session.return_value = SimpleNamespace(
        user=USER, session=auth_session('fresh-access', 'fresh-refresh'))
    client.set_cookie('sb-refresh-token', 'refresh')

    resp = client.get('/auth/sign-up')

    refreshed = [c for c in _cookies(resp) if c.startswith(('sb-access-token=', 'sb-refresh-token='))]
    assert len(refreshed) == 2
    for cookie in refreshed:
        assert 'Secure' in cookie
        assert 'HttpOnly' in cookie
        assert 'SameSite=Lax' in cookie


def test_queued_refresh_is_cancelled_after_timeout(app, client, fake_db, monkeypatch):
    pool = ThreadPoolExecutor(max_workers=1)
    release = threading.Event()
    pool.submit(release.wait)
    monkeypatch.setattr(session_module, '_refresh_pool', pool)
    app.config['SESSION_REFRESH_TIMEOUT'] = 0.05
    client.set_cookie('sb-refresh-token', 'refresh')

    resp = client.get('/auth/sign-up')
    release.set()
    pool.shutdown(wait=True)

    assert resp.status_code == 200
    fake_db.auth.refresh_session.assert_not_called()


def test_oversized_request_returns_json_413(app, auth_client):
    app.config['MAX_CONTENT_LENGTH'] = 64
    resp = auth_client.post('/api/upload', data={'file': (io.BytesIO(b'x' * 512), 'big.csv')},
                            content_type='multipart/form-data')
    assert resp.status_code == 413
    assert resp.get_json() == {'success': False, 'error': 'File is too large'}
