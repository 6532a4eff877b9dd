import io
import json
import logging
import random
import uuid
from datetime import datetime, timezone

import pandas as pd
from flask import Blueprint, current_app, jsonify, request
from postgrest.exceptions import APIError
from werkzeug.utils import secure_filename

from kilimo.api_integrations import FetchError, fetch_file
from kilimo.monitoring import degradation_level_from_ndvi, erosion_risk_from_soil, region_id_now
from kilimo.notifications import create_notification, notify_degradation
from kilimo.session import api_login_required, current_user, get_supabase

logger = logging.getLogger(__name__)

# Create Blueprint
uploads_bp = Blueprint('uploads', __name__, url_prefix='/api')

NDVI_COLUMNS = ['ndvi_value', 'ndvi', 'vegetation_index']
SOIL_COLUMNS = ['soil_health_score', 'soil_health', 'soil_score']


def init_uploads(app):
    logger.info(f"✅ Uploads module initialized (bucket: {app.config.get('UPLOAD_BUCKET')})")


# ========================
# FILE PARSING
# ========================

def _load_frame(content, file_name):
    """Read a CSV or JSON upload into a DataFrame, or None for other formats"""
    name = (file_name or '').lower()
    if name.endswith('.csv'):
        return pd.read_csv(io.BytesIO(content))
    if name.endswith('.json'):
        payload = json.loads(content.decode('utf-8'))
        if isinstance(payload, dict):
            payload = payload.get('data', [payload])
        if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
            return None
        return pd.json_normalize(payload)
    return None


def _column_mean(frame, candidates):
    columns = {str(col).strip().lower(): col for col in frame.columns}
    for candidate in candidates:
        if candidate in columns:
            values = pd.to_numeric(frame[columns[candidate]], errors='coerce').dropna()
            if not values.empty:
                return float(values.mean())
    return None


def extract_measurements(content, file_name):
    """
    Mean NDVI and soil health from a tabular upload.
    Returns (ndvi, soil_health); either may be None when the column is absent.
    """
    try:
        frame = _load_frame(content, file_name)
    except (ValueError, UnicodeDecodeError, pd.errors.ParserError) as e:
        logger.warning(f"⚠️ Could not parse {file_name}: {e}")
        return None, None

    if frame is None or frame.empty:
        return None, None
    return _column_mean(frame, NDVI_COLUMNS), _column_mean(frame, SOIL_COLUMNS)


def build_environmental_record(region_name, latitude, longitude, ndvi=None, soil_health=None):
    """Environmental row for a processed upload, estimating whatever the file did not provide"""
    if ndvi is None:
        ndvi = random.random() * 0.5 + 0.2
    if soil_health is None:
        soil_health = random.random() * 50 + 30

    ndvi = max(-1.0, min(1.0, ndvi))
    soil_health = max(0.0, min(100.0, soil_health))

    return {
        'region_id': region_id_now(),
        'region_name': region_name,
        'latitude': latitude,
        'longitude': longitude,
        'ndvi_value': round(ndvi, 3),
        'soil_health_score': round(soil_health, 1),
        'erosion_risk_level': erosion_risk_from_soil(soil_health),
        'land_use_type': 'Agricultural',
        'degradation_level': degradation_level_from_ndvi(ndvi),
        'data_source': 'upload',
        'measurement_date': datetime.now(timezone.utc).isoformat(),
    }


# ========================
# API ROUTES
# ========================

@uploads_bp.route('/upload', methods=['POST'])
@api_login_required
def api_upload():
    """Store a file in the uploads bucket and record its metadata"""
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        return jsonify({'success': False, 'error': 'No file provided'}), 400

    user = current_user()
    client = get_supabase()
    file_name = secure_filename(upload.filename) or 'upload'
    content = upload.read()
    content_type = upload.mimetype or 'application/octet-stream'
    path = f"{user.id}/{uuid.uuid4().hex[:8]}-{file_name}"
    bucket = current_app.config.get('UPLOAD_BUCKET', 'uploads')

    try:
        storage = client.storage.from_(bucket)
        storage.upload(path, content, {'content-type': content_type})
        url = storage.get_public_url(path)
    except Exception:
        logger.exception("Upload error")
        return jsonify({'success': False, 'error': 'Failed to upload file'}), 500

    try:
        result = client.table('uploaded_files').insert({
            'user_id': user.id,
            'file_name': upload.filename,
            'file_url': url,
            'storage_path': path,
            'file_size': len(content),
            'file_type': content_type,
            'category': request.form.get('category') or 'general',
            'description': request.form.get('description') or None,
        }).execute()
    except APIError as e:
        logger.error(f"❌ Database error saving upload: {e.message}")
        return jsonify({'success': False, 'error': 'Failed to save file metadata'}), 500

    row = result.data[0] if result.data else None
    logger.info(f"📁 Uploaded {file_name} ({len(content)} bytes) for user {user.id}")
    create_notification(user.id, 'data_uploaded', f"{upload.filename} was uploaded successfully.",
                        link='/dashboard/data', client=client)
    return jsonify({'success': True, 'file': row, 'url': url})


@uploads_bp.route('/upload', methods=['GET'])
@api_login_required
def api_list_uploads():
    try:
        result = get_supabase().table('uploaded_files') \
            .select('*') \
            .eq('user_id', current_user().id) \
            .order('created_at', desc=True) \
            .execute()
        return jsonify({'success': True, 'files': result.data or []})

    except APIError as e:
        logger.error(f"Error fetching files: {e.message}")
        return jsonify({'success': False, 'error': 'Failed to fetch files'}), 500


@uploads_bp.route('/process-upload', methods=['POST'])
@api_login_required
def api_process_upload():
    """Turn an uploaded file into an environmental data row"""
    body = request.get_json(silent=True) or {}
    file_id = body.get('fileId')
    region_name = body.get('regionName')
    latitude = body.get('latitude')
    longitude = body.get('longitude')

    if not file_id or not region_name or latitude in (None, '') or longitude in (None, ''):
        return jsonify({'success': False, 'error': 'Missing required fields'}), 400

    try:
        latitude = float(latitude)
        longitude = float(longitude)
    except (TypeError, ValueError):
        return jsonify({'success': False, 'error': 'latitude and longitude must be numbers'}), 400

    user = current_user()
    client = get_supabase()

    try:
        found = client.table('uploaded_files') \
            .select('*') \
            .eq('id', file_id) \
            .eq('user_id', user.id) \
            .limit(1) \
            .execute()
        if not found.data:
            return jsonify({'success': False, 'error': 'File not found'}), 404
        file_row = found.data[0]

        ndvi, soil_health = None, None
        if file_row.get('file_url'):
            try:
                content = fetch_file(file_row['file_url'])
                ndvi, soil_health = extract_measurements(content, file_row.get('file_name'))
            except FetchError as e:
                logger.warning(f"⚠️ {e}; using estimated values")

        record = build_environmental_record(region_name, latitude, longitude, ndvi, soil_health)
        result = client.table('environmental_data').insert(record).execute()
        row = result.data[0] if result.data else record

        logger.info(f"📊 Processed upload {file_id} into region {record['region_id']}")
        create_notification(user.id, 'data_processed',
                            f"Environmental data for {region_name} is ready.",
                            link='/dashboard', client=client)
        if record['degradation_level'] in ('high', 'severe'):
            notify_degradation(user.id, region_name, record['degradation_level'], record['ndvi_value'])

        return jsonify({'success': True, 'data': row}), 201

    except APIError as e:
        logger.error(f"Error creating environmental data: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500
    except Exception:
        logger.exception("Error processing upload")
        return jsonify({'success': False, 'error': 'Internal server error'}), 500
