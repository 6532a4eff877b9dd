import csv
import json
import logging
from datetime import date

import pandas as pd
from flask import Blueprint, Response, jsonify, request
from postgrest.exceptions import APIError

from kilimo.session import api_login_required, current_user, get_supabase

logger = logging.getLogger(__name__)

export_bp = Blueprint('export', __name__, url_prefix='/api')

EXPORT_PREFIXES = {
    'environmental': 'environmental_data',
    'projects': 'restoration_projects',
    'notifications': 'notifications',
}

EXPORT_FORMATS = {
    'csv': 'text/csv',
    'json': 'application/json',
}


def rows_to_csv(rows):
    """Header from the first record's keys; strings quoted, numbers bare"""
    if not rows:
        return ''
    frame = pd.DataFrame(rows, columns=list(rows[0].keys()))
    return frame.to_csv(index=False, quoting=csv.QUOTE_NONNUMERIC, lineterminator='\n').rstrip('\n')


def rows_to_json(rows):
    return json.dumps(rows, indent=2, default=str)


def fetch_export_rows(client, export_type, user_id):
    if export_type == 'environmental':
        query = client.table('environmental_data').select('*') \
            .order('measurement_date', desc=True).limit(1000)
    elif export_type == 'projects':
        query = client.table('restoration_projects').select('*').order('created_at', desc=True)
    else:
        query = client.table('notifications').select('*') \
            .eq('user_id', user_id).order('created_at', desc=True)
    return query.execute().data or []


def attachment(body, filename, mimetype):
    return Response(body, mimetype=mimetype, headers={
        'Content-Disposition': f'attachment; filename="{filename}"'
    })


@export_bp.route('/export')
@api_login_required
def api_export():
    """Download environmental data, projects or notifications as CSV or JSON"""
    export_type = request.args.get('type', 'environmental')
    export_format = request.args.get('format', 'csv')

    if export_type not in EXPORT_PREFIXES:
        return jsonify({'success': False, 'error': 'Invalid type'}), 400
    if export_format not in EXPORT_FORMATS:
        return jsonify({'success': False, 'error': 'Invalid format'}), 400

    try:
        rows = fetch_export_rows(get_supabase(), export_type, current_user().id)
    except APIError as e:
        logger.error(f"❌ Export error: {e.message}")
        return jsonify({'success': False, 'error': 'Failed to export data'}), 500

    filename = f"{EXPORT_PREFIXES[export_type]}_{date.today().isoformat()}.{export_format}"
    body = rows_to_csv(rows) if export_format == 'csv' else rows_to_json(rows)

    logger.info(f"📤 Exported {len(rows)} {export_type} rows as {export_format}")
    return attachment(body, filename, EXPORT_FORMATS[export_format])
