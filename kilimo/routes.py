import logging

from flask import Blueprint, current_app, flash, redirect, render_template, request, session, url_for
from supabase import AuthApiError, AuthError

from config import db
from kilimo.session import (ACCESS_COOKIE, FlaskSessionStorage, clear_session_cookies,
                            current_user, set_session_cookies)

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__)


def _redirect_url(path='/auth/confirm'):
    return f"{current_app.config.get('SITE_URL', '').rstrip('/')}{path}"


def _safe_next(next_url):
    if next_url and next_url.startswith('/') and not next_url.startswith('//'):
        return next_url
    return url_for('dashboard.dashboard')


@auth_bp.route('/')
def home():
    """Landing page"""
    if current_user() is not None:
        return redirect(url_for('dashboard.dashboard'))
    return render_template('index.html')


@auth_bp.route('/auth/login', methods=['GET', 'POST'])
def login():
    """Password sign-in"""
    if request.method == 'POST':
        email = request.form.get('email', '').strip().lower()
        password = request.form.get('password', '')

        if not email or not password:
            flash('Email and password are required', 'error')
            return render_template('login.html', email=email)

        if not db.is_configured():
            flash('Authentication is not configured on this server', 'error')
            return render_template('login.html', email=email)

        try:
            response = db.get_anon_client().auth.sign_in_with_password({
                'email': email,
                'password': password,
            })
        except AuthApiError as e:
            if 'confirm' in (e.message or '').lower():
                flash('Your email address has not been confirmed yet. Check your inbox, '
                      'or request a sign-in link below.', 'error')
                return render_template('login.html', email=email, show_magic_link=True)
            flash(e.message or 'Invalid email or password', 'error')
            return render_template('login.html', email=email)
        except AuthError as e:
            logger.error(f"❌ Login error: {e}")
            flash('An error occurred during login. Please try again.', 'error')
            return render_template('login.html', email=email)

        if not response.user or not response.session:
            flash('Sign in did not complete. Please check your inbox to confirm your account.', 'error')
            return render_template('login.html', email=email, show_magic_link=True)

        logger.info(f"🔐 User signed in: {email}")
        resp = redirect(url_for('dashboard.dashboard'))
        set_session_cookies(resp, response.session)
        return resp

    return render_template('login.html')


@auth_bp.route('/auth/magic-link', methods=['POST'])
def magic_link():
    """Send a one-time sign-in link"""
    email = request.form.get('email', '').strip().lower()
    if not email:
        flash('Email is required', 'error')
        return redirect(url_for('auth.login'))

    if not db.is_configured():
        flash('Authentication is not configured on this server', 'error')
        return redirect(url_for('auth.login'))

    try:
        db.get_anon_client().auth.sign_in_with_otp({
            'email': email,
            'options': {
                'email_redirect_to': _redirect_url(),
                'should_create_user': False,
            },
        })
        flash('A sign-in link has been sent to your email', 'success')
    except AuthError as e:
        logger.warning(f"⚠️ Sign-in link failed for {email}: {e}")
        flash(getattr(e, 'message', None) or 'Could not send a sign-in link', 'error')

    return redirect(url_for('auth.login'))


@auth_bp.route('/auth/confirm')
def confirm():
    """Verify an emailed token and start a session"""
    token_hash = request.args.get('token_hash')
    otp_type = request.args.get('type')
    next_url = request.args.get('next')

    if not token_hash or not otp_type:
        return redirect(url_for('auth.error', message='Missing confirmation token'))

    if not db.is_configured():
        return redirect(url_for('auth.error', message='Authentication is not configured on this server'))

    try:
        response = db.get_anon_client().auth.verify_otp({
            'token_hash': token_hash,
            'type': otp_type,
        })
    except AuthError as e:
        logger.warning(f"⚠️ Token verification failed: {e}")
        return redirect(url_for('auth.error', message=getattr(e, 'message', None) or 'Invalid or expired link'))

    if not response.session:
        return redirect(url_for('auth.error', message='Invalid or expired link'))

    resp = redirect(_safe_next(next_url))
    set_session_cookies(resp, response.session)
    return resp


@auth_bp.route('/auth/google')
def google():
    """Start the Google OAuth flow"""
    if not db.is_configured():
        flash('Authentication is not configured on this server', 'error')
        return redirect(url_for('auth.login'))

    session['oauth_next'] = _safe_next(request.args.get('next'))
    try:
        response = db.get_oauth_client(FlaskSessionStorage()).auth.sign_in_with_oauth({
            'provider': 'google',
            'options': {'redirect_to': _redirect_url('/auth/callback')},
        })
    except AuthError as e:
        logger.error(f"❌ Google sign-in failed: {e}")
        flash('Could not start Google sign-in. Please try again.', 'error')
        return redirect(url_for('auth.login'))

    return redirect(response.url)


@auth_bp.route('/auth/callback')
def oauth_callback():
    """Exchange the provider's authorization code for a session"""
    if request.args.get('error'):
        message = request.args.get('error_description') or request.args.get('error')
        return redirect(url_for('auth.error', message=message))

    code = request.args.get('code')
    if not code:
        return redirect(url_for('auth.error', message='Missing authorization code'))

    if not db.is_configured():
        return redirect(url_for('auth.error', message='Authentication is not configured on this server'))

    try:
        response = db.get_oauth_client(FlaskSessionStorage()).auth.exchange_code_for_session({
            'auth_code': code,
        })
    except AuthError as e:
        logger.warning(f"⚠️ OAuth code exchange failed: {e}")
        return redirect(url_for('auth.error', message=getattr(e, 'message', None) or 'Sign-in failed'))

    if not response.session:
        return redirect(url_for('auth.error', message='Sign-in failed'))

    logger.info(f"🔐 User signed in with Google: {getattr(response.user, 'email', None)}")
    resp = redirect(_safe_next(session.pop('oauth_next', None)))
    set_session_cookies(resp, response.session)
    return resp


@auth_bp.route('/auth/sign-up', methods=['GET', 'POST'])
def sign_up():
    """Account registration"""
    if request.method == 'POST':
        full_name = request.form.get('full_name', '').strip()
        organization = request.form.get('organization', '').strip()
        email = request.form.get('email', '').strip().lower()
        password = request.form.get('password', '')
        repeat_password = request.form.get('repeat_password', '')

        if not all([full_name, email, password, repeat_password]):
            flash('All fields are required', 'error')
            return render_template('sign_up.html', full_name=full_name,
                                   organization=organization, email=email)

        if password != repeat_password:
            flash('Passwords do not match', 'error')
            return render_template('sign_up.html', full_name=full_name,
                                   organization=organization, email=email)

        if not db.is_configured():
            flash('Authentication is not configured on this server', 'error')
            return render_template('sign_up.html', full_name=full_name,
                                   organization=organization, email=email)

        try:
            client = db.get_anon_client()
            response = client.auth.sign_up({
                'email': email,
                'password': password,
                'options': {
                    'email_redirect_to': _redirect_url(),
                    'data': {'full_name': full_name, 'organization': organization},
                },
            })
        except AuthError as e:
            flash(getattr(e, 'message', None) or 'An error occurred during registration', 'error')
            return render_template('sign_up.html', full_name=full_name,
                                   organization=organization, email=email)

        if response.user:
            ok, message = db.create_profile(db.get_service_client() or client, response.user.id, email,
                                            full_name=full_name, organization=organization or None)
            if not ok:
                logger.warning(f"⚠️ Profile creation failed for {email}: {message}")

        logger.info(f"📝 New sign-up: {email}")
        return redirect(url_for('auth.sign_up_success'))

    return render_template('sign_up.html')


@auth_bp.route('/auth/sign-up-success')
def sign_up_success():
    return render_template('sign_up_success.html')


@auth_bp.route('/auth/error')
def error():
    return render_template('auth_error.html', message=request.args.get('message'))


@auth_bp.route('/auth/logout')
def logout():
    token = request.cookies.get(ACCESS_COOKIE)
    if token and db.is_configured():
        try:
            db.get_anon_client().auth.admin.sign_out(token)
        except AuthError as e:
            logger.debug(f"Sign out: {e}")

    resp = redirect(url_for('auth.login'))
    clear_session_cookies(resp)
    flash('You have been logged out successfully', 'success')
    return resp
