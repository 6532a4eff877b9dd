import logging
from datetime import datetime, timezone

from flask import Blueprint, current_app, has_request_context, jsonify, request
from flask_mail import Message
from postgrest.exceptions import APIError

from kilimo.session import api_login_required, current_user, get_supabase

logger = logging.getLogger(__name__)

# Create Blueprint
notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')

# Notification kinds and how they are stored
NOTIFICATION_TYPES = {
    'project_created': {
        'type': 'success',
        'category': 'project',
        'severity': 'low',
        'title': '🌿 Restoration Plan Created'
    },
    'status_changed': {
        'type': 'info',
        'category': 'project',
        'severity': 'medium',
        'title': 'Project Status Changed'
    },
    'project_completed': {
        'type': 'success',
        'category': 'project',
        'severity': 'high',
        'title': '🎉 Project Completed'
    },
    'data_uploaded': {
        'type': 'info',
        'category': 'data',
        'severity': 'low',
        'title': 'File Uploaded'
    },
    'data_processed': {
        'type': 'success',
        'category': 'data',
        'severity': 'low',
        'title': '📊 Environmental Data Processed'
    },
    'degradation_alert': {
        'type': 'alert',
        'category': 'degradation',
        'severity': 'high',
        'title': '⚠️ Land Degradation Alert'
    },
    'system': {
        'type': 'info',
        'category': 'system',
        'severity': 'low',
        'title': 'System Notification'
    }
}

# Which preference switch silences which category
CATEGORY_PREFERENCES = {
    'degradation': 'degradation_alerts',
    'project': 'project_updates',
    'data': 'data_changes',
    'system': 'system_notifications',
}

PREFERENCE_FIELDS = [
    'degradation_alerts', 'project_updates', 'data_changes',
    'system_notifications', 'email_notifications', 'push_notifications'
]

DEFAULT_PREFERENCES = {
    'degradation_alerts': True,
    'project_updates': True,
    'data_changes': True,
    'system_notifications': True,
    'email_notifications': False,
    'push_notifications': True,
}


def init_notifications(app):
    logger.info("✅ Notifications module initialized!")


# ========================
# HELPER FUNCTIONS
# ========================

def get_user_preferences(client, user_id):
    """Fetch preferences, creating the default row on first read"""
    result = client.table('notification_preferences').select('*').eq('user_id', user_id).limit(1).execute()
    if result.data:
        return result.data[0]

    prefs = {'user_id': user_id, **DEFAULT_PREFERENCES}
    inserted = client.table('notification_preferences').insert(prefs).execute()
    return inserted.data[0] if inserted.data else prefs


def _send_email(recipient, title, message, link=None):
    if not current_app.config.get('MAIL_USERNAME') and not current_app.config.get('MAIL_SUPPRESS_SEND'):
        return
    from kilimo import mail

    body = f"{message}\n"
    if link:
        body += f"\nView it here: {current_app.config.get('SITE_URL', '')}{link}\n"
    body += "\nKilimo AI - Land Restoration Platform\n"

    msg = Message(title, recipients=[recipient],
                  sender=current_app.config.get('MAIL_DEFAULT_SENDER') or ('Kilimo AI', 'noreply@kilimo.ai'))
    msg.body = body
    mail.send(msg)


def create_notification(user_id, kind, message, link=None, client=None, email=None):
    """
    Create a notification for a user.

    Args:
        user_id: Recipient profile id
        kind: Key of NOTIFICATION_TYPES
        message: Body text
        link: Optional in-app link
        client: Supabase client, defaults to the request user's client
        email: Recipient address for email delivery

    Returns the inserted row, or None when skipped or on failure.
    """
    try:
        config = NOTIFICATION_TYPES.get(kind, NOTIFICATION_TYPES['system'])
        client = client or get_supabase()

        prefs = get_user_preferences(client, user_id)
        switch = CATEGORY_PREFERENCES.get(config['category'])
        if switch and prefs.get(switch) is False:
            logger.debug(f"🔕 {kind} muted for user {user_id}")
            return None

        result = client.table('notifications').insert({
            'user_id': user_id,
            'type': config['type'],
            'category': config['category'],
            'severity': config['severity'],
            'title': config['title'],
            'message': message,
            'link': link,
            'is_read': False,
        }).execute()
        row = result.data[0] if result.data else None

        if email is None and has_request_context():
            user = current_user()
            if user is not None and str(user.id) == str(user_id):
                email = user.email

        if prefs.get('email_notifications') and email:
            try:
                _send_email(email, config['title'], message, link)
            except Exception as mail_error:
                logger.warning(f"⚠️ Notification email failed: {mail_error}")

        logger.info(f"✅ Notification created: {kind} for user {user_id}")
        return row

    except Exception as e:
        logger.error(f"❌ Error creating notification: {e}")
        return None


def notify_project_created(user_id, project):
    return create_notification(
        user_id, 'project_created',
        f"Restoration plan \"{project.get('project_name')}\" was created for {project.get('region_name') or 'your area'}.",
        link='/dashboard'
    )


def notify_status_changed(user_id, project, old_status, new_status):
    if new_status == 'completed':
        return create_notification(
            user_id, 'project_completed',
            f"\"{project.get('project_name')}\" has been completed. Great work restoring the land!",
            link='/dashboard'
        )
    return create_notification(
        user_id, 'status_changed',
        f"\"{project.get('project_name')}\" moved from {old_status} to {new_status}.",
        link='/dashboard'
    )


def notify_degradation(user_id, region_name, level, ndvi):
    return create_notification(
        user_id, 'degradation_alert',
        f"{region_name} shows {level} degradation (NDVI {ndvi:.2f}). Consider planning a restoration project.",
        link='/dashboard/map'
    )


# ========================
# API ROUTES
# ========================

@notifications_bp.route('', methods=['GET'])
@api_login_required
def api_list_notifications():
    """List the current user's notifications, newest first"""
    try:
        user = current_user()
        query = get_supabase().table('notifications').select('*').eq('user_id', user.id)
        if request.args.get('unreadOnly') == 'true':
            query = query.eq('is_read', False)

        result = query.order('created_at', desc=True).limit(50).execute()
        return jsonify({'success': True, 'data': result.data or []})

    except APIError as e:
        logger.error(f"Error listing notifications: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500
    except Exception:
        logger.exception("Error listing notifications")
        return jsonify({'success': False, 'error': 'Internal server error'}), 500


@notifications_bp.route('', methods=['PATCH'])
@api_login_required
def api_update_notification():
    """Mark one notification read or unread"""
    try:
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return jsonify({'success': False, 'error': 'Invalid request body'}), 400
        notification_id = data.get('notificationId')
        if not notification_id:
            return jsonify({'success': False, 'error': 'notificationId is required'}), 400

        is_read = data.get('isRead', True)
        if not isinstance(is_read, bool):
            return jsonify({'success': False, 'error': 'isRead must be a boolean'}), 400

        user = current_user()
        result = get_supabase().table('notifications') \
            .update({'is_read': is_read}) \
            .eq('id', notification_id) \
            .eq('user_id', user.id) \
            .execute()

        if not result.data:
            return jsonify({'success': False, 'error': 'Notification not found'}), 404
        return jsonify({'success': True, 'data': result.data[0]})

    except APIError as e:
        logger.error(f"Error updating notification: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500
    except Exception:
        logger.exception("Error updating notification")
        return jsonify({'success': False, 'error': 'Internal server error'}), 500


@notifications_bp.route('/mark-all-read', methods=['POST'])
@api_login_required
def api_mark_all_read():
    try:
        user = current_user()
        result = get_supabase().table('notifications') \
            .update({'is_read': True}) \
            .eq('user_id', user.id) \
            .eq('is_read', False) \
            .execute()
        return jsonify({'success': True, 'updated': len(result.data or [])})

    except APIError as e:
        logger.error(f"Error marking notifications read: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500


@notifications_bp.route('/<notification_id>', methods=['DELETE'])
@api_login_required
def api_delete_notification(notification_id):
    try:
        user = current_user()
        result = get_supabase().table('notifications') \
            .delete() \
            .eq('id', notification_id) \
            .eq('user_id', user.id) \
            .execute()

        if not result.data:
            return jsonify({'success': False, 'error': 'Notification not found'}), 404
        return jsonify({'success': True, 'message': 'Notification deleted'})

    except APIError as e:
        logger.error(f"Error deleting notification: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500


def count_unread(client, user_id):
    result = client.table('notifications') \
        .select('id', count='exact', head=True) \
        .eq('user_id', user_id) \
        .eq('is_read', False) \
        .execute()
    return result.count or 0


@notifications_bp.route('/unread-count')
@api_login_required
def api_unread_count():
    try:
        return jsonify({'success': True, 'count': count_unread(get_supabase(), current_user().id)})
    except APIError as e:
        logger.error(f"Error counting notifications: {e.message}")
        return jsonify({'success': False, 'error': e.message, 'count': 0}), 500


@notifications_bp.route('/preferences', methods=['GET'])
@api_login_required
def api_get_preferences():
    try:
        prefs = get_user_preferences(get_supabase(), current_user().id)
        return jsonify({'success': True, 'preferences': prefs})
    except APIError as e:
        logger.error(f"Error getting preferences: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500


def update_preferences(client, user_id, data):
    """Apply whitelisted boolean preference fields. Returns the updated row or None if nothing to update."""
    updates = {field: data[field] for field in PREFERENCE_FIELDS if field in data}
    if not updates:
        return None

    get_user_preferences(client, user_id)
    updates['updated_at'] = datetime.now(timezone.utc).isoformat()
    result = client.table('notification_preferences').update(updates).eq('user_id', user_id).execute()
    return result.data[0] if result.data else updates


@notifications_bp.route('/preferences', methods=['PUT'])
@api_login_required
def api_update_preferences():
    try:
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return jsonify({'success': False, 'error': 'Invalid request body'}), 400
        invalid = [field for field in PREFERENCE_FIELDS if field in data and not isinstance(data[field], bool)]
        if invalid:
            return jsonify({'success': False, 'error': f"{invalid[0]} must be a boolean"}), 400

        prefs = update_preferences(get_supabase(), current_user().id, data)
        if prefs is None:
            return jsonify({'success': False, 'error': 'No valid fields to update'}), 400
        return jsonify({'success': True, 'preferences': prefs})

    except APIError as e:
        logger.error(f"Error updating preferences: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500
