"""
Kilimo AI - Dashboard Module
Handles dashboard pages and data aggregation
"""

import logging
from datetime import datetime, timezone

from flask import Blueprint, flash, jsonify, redirect, render_template, request, url_for
from postgrest.exceptions import APIError

from kilimo.export import EXPORT_FORMATS, EXPORT_PREFIXES
from kilimo.insights import PERIOD_LABELS, compute_analytics, load_analytics_source
from kilimo.monitoring import MAP_LAYERS, build_map_areas, fetch_map_rows
from kilimo.notifications import PREFERENCE_FIELDS, count_unread, get_user_preferences, update_preferences
from kilimo.session import api_login_required, current_user, get_supabase, login_required

logger = logging.getLogger(__name__)

# Create Blueprint
dashboard_bp = Blueprint('dashboard', __name__, url_prefix='/dashboard')

NOTIFICATION_TABS = ['all', 'unread', 'degradation', 'project']

DATA_SOURCES = [
    {'name': 'Satellite Imagery', 'description': 'Sentinel-2 derived vegetation indices'},
    {'name': 'Field Surveys', 'description': 'Soil samples and ground-truth measurements'},
    {'name': 'Manual Uploads', 'description': 'CSV and JSON measurement files'},
]


# ========================
# HELPER FUNCTIONS
# ========================

def get_dashboard_stats(env_rows, projects, notifications):
    """Overview figures for the dashboard landing page"""
    degraded = [row for row in env_rows if row.get('degradation_level') in ('high', 'severe')]

    if env_rows:
        total_area = sum(row.get('area_hectares') or 10 for row in env_rows) / 100
        avg_ndvi = sum(row.get('ndvi_value') or 0 for row in env_rows) / len(env_rows)
    else:
        total_area = 12450
        avg_ndvi = 0.65

    return {
        'total_area_monitored': round(total_area),
        'region_count': len(env_rows) or 8,
        'degraded_areas': len(degraded),
        'active_projects': sum(1 for p in projects if p.get('status') == 'active'),
        'planned_projects': sum(1 for p in projects if p.get('status') == 'planned'),
        'total_projects': len(projects),
        'avg_ndvi': round(avg_ndvi, 2),
        'alerts': notifications[:3],
        'degraded_regions': degraded[:3],
    }


def format_relative_time(timestamp):
    """Format timestamp to relative time string"""
    if not timestamp:
        return 'recently'
    try:
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
    except ValueError:
        return 'recently'
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    seconds = (datetime.now(timezone.utc) - timestamp).total_seconds()

    if seconds < 60:
        return 'just now'
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f'{minutes} minute{"s" if minutes > 1 else ""} ago'
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f'{hours} hour{"s" if hours > 1 else ""} ago'
    elif seconds < 604800:
        days = int(seconds / 86400)
        return f'{days} day{"s" if days > 1 else ""} ago'
    else:
        return timestamp.strftime('%b %d, %Y')


def filter_notifications(rows, tab):
    if tab == 'unread':
        return [row for row in rows if not row.get('is_read')]
    if tab in ('degradation', 'project'):
        return [row for row in rows if row.get('category') == tab]
    return rows


def load_dashboard_data(client, user_id):
    env = client.table('environmental_data') \
        .select('*') \
        .order('measurement_date', desc=True) \
        .limit(100) \
        .execute()
    projects = client.table('restoration_projects') \
        .select('*') \
        .order('created_at', desc=True) \
        .execute()
    notifications = client.table('notifications') \
        .select('*') \
        .eq('user_id', user_id) \
        .eq('is_read', False) \
        .order('created_at', desc=True) \
        .limit(5) \
        .execute()
    return env.data or [], projects.data or [], notifications.data or []


@dashboard_bp.app_template_filter('relative_time')
def relative_time_filter(value):
    return format_relative_time(value)


@dashboard_bp.app_context_processor
def inject_navbar():
    """Signed-in user and unread badge for the dashboard navbar"""
    if not request.path.startswith('/dashboard'):
        return {}
    user = current_user()
    if user is None:
        return {}
    try:
        unread = count_unread(get_supabase(), user.id)
    except APIError as e:
        logger.debug(f"Unread count unavailable: {e.message}")
        unread = 0
    return {'user': user, 'unread_count': unread}


# ========================
# ROUTES
# ========================

@dashboard_bp.route('')
@login_required
def dashboard():
    """Main dashboard page"""
    try:
        env_rows, projects, notifications = load_dashboard_data(get_supabase(), current_user().id)
    except APIError as e:
        logger.error(f"Error loading dashboard: {e.message}")
        flash('Some dashboard data could not be loaded', 'warning')
        env_rows, projects, notifications = [], [], []

    return render_template('dashboard.html', stats=get_dashboard_stats(env_rows, projects, notifications))


@dashboard_bp.route('/api/stats')
@api_login_required
def api_dashboard_stats():
    """API endpoint for dashboard statistics"""
    try:
        env_rows, projects, notifications = load_dashboard_data(get_supabase(), current_user().id)
        return jsonify({'success': True, 'stats': get_dashboard_stats(env_rows, projects, notifications)})
    except APIError as e:
        logger.error(f"Error fetching dashboard stats: {e.message}")
        return jsonify({'success': False, 'error': 'Failed to fetch statistics'}), 500


@dashboard_bp.route('/data')
@login_required
def data():
    """Uploads, exports and data sources"""
    files = []
    try:
        result = get_supabase().table('uploaded_files') \
            .select('*') \
            .eq('user_id', current_user().id) \
            .order('created_at', desc=True) \
            .execute()
        files = result.data or []
    except APIError as e:
        logger.error(f"Error loading uploads: {e.message}")
        flash('Could not load your uploaded files', 'warning')

    return render_template('data.html', files=files, export_types=list(EXPORT_PREFIXES),
                           export_formats=list(EXPORT_FORMATS), data_sources=DATA_SOURCES)


@dashboard_bp.route('/map')
@login_required
def map_view():
    rows = []
    try:
        rows = fetch_map_rows(get_supabase())
    except APIError as e:
        logger.error(f"Error loading map data: {e.message}")
    return render_template('map.html', areas=build_map_areas(rows), layers=MAP_LAYERS)


@dashboard_bp.route('/analytics')
@login_required
def analytics():
    region = request.args.get('region', 'all') or 'all'
    period = request.args.get('period', '12m')
    if period not in PERIOD_LABELS:
        period = '12m'

    try:
        env_rows, projects = load_analytics_source(get_supabase())
    except APIError as e:
        logger.error(f"Error loading analytics: {e.message}")
        env_rows, projects = [], []

    return render_template('analytics.html', analytics=compute_analytics(env_rows, projects, region, period),
                           periods=PERIOD_LABELS)


@dashboard_bp.route('/notifications')
@login_required
def notifications():
    tab = request.args.get('tab', 'all')
    if tab not in NOTIFICATION_TABS:
        tab = 'all'

    rows = []
    try:
        result = get_supabase().table('notifications') \
            .select('*') \
            .eq('user_id', current_user().id) \
            .order('created_at', desc=True) \
            .limit(50) \
            .execute()
        rows = result.data or []
    except APIError as e:
        logger.error(f"Error loading notifications: {e.message}")
        flash('Could not load notifications', 'warning')

    return render_template('notifications.html', notifications=filter_notifications(rows, tab),
                           tab=tab, tabs=NOTIFICATION_TABS)


@dashboard_bp.route('/settings')
@login_required
def settings():
    user = current_user()
    client = get_supabase()
    profile, prefs = {}, {}
    try:
        result = client.table('profiles').select('*').eq('id', user.id).limit(1).execute()
        profile = result.data[0] if result.data else {}
        prefs = get_user_preferences(client, user.id)
    except APIError as e:
        logger.error(f"Error loading settings: {e.message}")
        flash('Could not load your settings', 'warning')

    return render_template('settings.html', profile=profile, preferences=prefs)


@dashboard_bp.route('/settings/profile', methods=['POST'])
@login_required
def update_profile():
    full_name = request.form.get('full_name', '').strip()
    organization = request.form.get('organization', '').strip()

    if not full_name:
        flash('Full name is required', 'error')
        return redirect(url_for('dashboard.settings'))

    try:
        get_supabase().table('profiles') \
            .update({'full_name': full_name, 'organization': organization or None}) \
            .eq('id', current_user().id) \
            .execute()
        flash('Profile updated successfully', 'success')
    except APIError as e:
        logger.error(f"Error updating profile: {e.message}")
        flash('Failed to update profile', 'error')

    return redirect(url_for('dashboard.settings'))


@dashboard_bp.route('/settings/notifications', methods=['POST'])
@login_required
def update_notification_settings():
    # Unchecked boxes are absent from the form, so every switch is sent explicitly
    values = {field: request.form.get(field) == 'on' for field in PREFERENCE_FIELDS}
    try:
        update_preferences(get_supabase(), current_user().id, values)
        flash('Notification preferences saved', 'success')
    except APIError as e:
        logger.error(f"Error saving preferences: {e.message}")
        flash('Failed to save notification preferences', 'error')

    return redirect(url_for('dashboard.settings'))
