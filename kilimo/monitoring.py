import logging
import re
import time
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from flask import Blueprint, jsonify, request
from postgrest.exceptions import APIError

from kilimo.projects import ProfileError, add_months, save_restoration_plan
from kilimo.session import api_login_required, current_user, get_supabase

logger = logging.getLogger(__name__)

# Create Blueprint
monitoring_bp = Blueprint('monitoring', __name__, url_prefix='/api')

RISK_LEVELS = ['low', 'moderate', 'high', 'severe']

ENVIRONMENTAL_FIELDS = [
    'region_id', 'region_name', 'latitude', 'longitude', 'ndvi_value',
    'soil_health_score', 'erosion_risk_level', 'land_use_type',
    'degradation_level', 'area_hectares', 'data_source', 'measurement_date'
]

# ========================
# STATIC FALLBACK DATA
# ========================

SAMPLE_MAP_AREAS = [
    {
        'name': 'Northern Plains - Sector 12',
        'coordinates': '34.5°N, 45.2°E',
        'ndvi': 0.35,
        'erosionRisk': 'High',
        'landUse': 'Agricultural',
        'soilHealth': 42,
        'position': {'top': '20%', 'left': '30%'},
    },
    {
        'name': 'Eastern Valley - Sector 8',
        'coordinates': '32.1°N, 48.7°E',
        'ndvi': 0.52,
        'erosionRisk': 'Medium',
        'landUse': 'Mixed Forest',
        'soilHealth': 68,
        'position': {'top': '45%', 'left': '65%'},
    },
    {
        'name': 'Southern Hills - Sector 5',
        'coordinates': '29.8°N, 43.9°E',
        'ndvi': 0.28,
        'erosionRisk': 'High',
        'landUse': 'Degraded Land',
        'soilHealth': 35,
        'position': {'top': '70%', 'left': '40%'},
    },
]

MAP_LAYERS = [
    {'id': 'ndvi', 'name': 'Vegetation Index (NDVI)'},
    {'id': 'soil', 'name': 'Soil Health'},
    {'id': 'erosion', 'name': 'Erosion Risk'},
    {'id': 'projects', 'name': 'Restoration Projects'},
]


def init_monitoring(app):
    logger.info("✅ Monitoring module initialized!")


# ========================
# DERIVED LEVELS
# ========================

def degradation_level_from_ndvi(ndvi: float) -> str:
    if ndvi < 0.2:
        return 'severe'
    if ndvi < 0.35:
        return 'high'
    if ndvi < 0.5:
        return 'moderate'
    return 'low'


def erosion_risk_from_soil(soil_health: float) -> str:
    if soil_health < 40:
        return 'high'
    if soil_health < 60:
        return 'moderate'
    return 'low'


def region_id_now() -> str:
    return f"region-{int(time.time() * 1000)}"


# ========================
# VALIDATION
# ========================

def validate_environmental_record(data: Dict) -> Dict:
    """
    Keep whitelisted columns and check ranges.
    Raises ValueError with a readable message on invalid input.
    """
    record = {field: data[field] for field in ENVIRONMENTAL_FIELDS if data.get(field) is not None}

    missing = [field for field in ('region_name', 'latitude', 'longitude', 'ndvi_value') if field not in record]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")

    try:
        for field in ('latitude', 'longitude', 'ndvi_value', 'soil_health_score', 'area_hectares'):
            if field in record:
                record[field] = float(record[field])
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a number")

    if not -90 <= record['latitude'] <= 90 or not -180 <= record['longitude'] <= 180:
        raise ValueError('Coordinates are out of range')
    if not -1 <= record['ndvi_value'] <= 1:
        raise ValueError('ndvi_value must be between -1 and 1')
    if 'soil_health_score' in record and not 0 <= record['soil_health_score'] <= 100:
        raise ValueError('soil_health_score must be between 0 and 100')

    for field in ('erosion_risk_level', 'degradation_level'):
        if field in record and record[field] not in RISK_LEVELS:
            raise ValueError(f"{field} must be one of {', '.join(RISK_LEVELS)}")

    record.setdefault('region_id', region_id_now())
    record.setdefault('data_source', 'manual')
    record.setdefault('measurement_date', datetime.now(timezone.utc).isoformat())
    return record


# ========================
# MAP VIEW MODEL
# ========================

def format_coordinates(latitude, longitude) -> str:
    return f"{float(latitude):.1f}°N, {float(longitude):.1f}°E"


def to_map_area(row: Dict, index: int = 0, position: Optional[Dict] = None) -> Dict:
    level = row.get('erosion_risk_level')
    return {
        'name': row.get('region_name'),
        'regionId': row.get('region_id'),
        'coordinates': format_coordinates(row.get('latitude') or 0, row.get('longitude') or 0),
        'ndvi': row.get('ndvi_value') or 0.35,
        'erosionRisk': 'High' if level in ('high', 'severe') else 'Medium',
        'landUse': row.get('land_use_type') or 'Mixed',
        'soilHealth': row.get('soil_health_score') or 50,
        'position': position or {
            'top': f"{20 + index * 8}%",
            'left': f"{30 + (index % 3) * 20}%",
        },
    }


def build_map_areas(rows: List[Dict]) -> List[Dict]:
    """Turn the latest environmental rows into map markers (first 10)"""
    if not rows:
        return [dict(area) for area in SAMPLE_MAP_AREAS]
    return [to_map_area(row, index) for index, row in enumerate(rows[:10])]


def search_map_areas(rows: List[Dict], query: str) -> Optional[Dict]:
    """Find the first row whose name contains the query (case-insensitive) or whose region id contains it"""
    needle = query.strip()
    for row in rows:
        name = (row.get('region_name') or '').lower()
        region_id = row.get('region_id') or ''
        if needle.lower() in name or needle in region_id:
            return to_map_area(row, position={'top': '20%', 'left': '30%'})
    return None


def fetch_map_rows(client) -> List[Dict]:
    result = client.table('environmental_data') \
        .select('*') \
        .order('measurement_date', desc=True) \
        .limit(50) \
        .execute()
    return result.data or []


def area_hectares_for_land_use(land_use: str) -> int:
    if land_use == 'Agricultural':
        return 450
    if land_use == 'Mixed Forest':
        return 280
    return 320


def success_estimate_for_ndvi(ndvi: float) -> int:
    if ndvi < 0.3:
        return 75
    if ndvi < 0.4:
        return 82
    return 88


def region_id_from_coordinates(coordinates: str) -> str:
    return re.sub(r'[°\s]', '-', coordinates)


def build_map_plan(area: Dict, project_name: str, budget: float, duration: int, today: date) -> Dict:
    """Project record for a plan created straight from a map area"""
    return {
        'project_name': project_name,
        'region_name': area['name'],
        'region_id': region_id_from_coordinates(area['coordinates']),
        'area_hectares': area_hectares_for_land_use(area.get('landUse')),
        'budget_allocated': float(budget),
        'budget_spent': 0,
        'start_date': today.isoformat(),
        'estimated_completion_date': add_months(today, duration).isoformat(),
        'status': 'planned',
        'success_rate_estimate': success_estimate_for_ndvi(float(area.get('ndvi') or 0.35)),
    }


# ========================
# API ROUTES
# ========================

@monitoring_bp.route('/environmental-data', methods=['GET'])
@api_login_required
def api_list_environmental_data():
    """Latest measurements, optionally for one region"""
    try:
        query = get_supabase().table('environmental_data').select('*')
        region_id = request.args.get('regionId')
        if region_id:
            query = query.eq('region_id', region_id)

        result = query.order('measurement_date', desc=True).limit(100).execute()
        return jsonify({'success': True, 'data': result.data or []})

    except APIError as e:
        logger.error(f"Error fetching environmental data: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500
    except Exception:
        logger.exception("Error fetching environmental data")
        return jsonify({'success': False, 'error': 'Internal server error'}), 500


@monitoring_bp.route('/environmental-data', methods=['POST'])
@api_login_required
def api_create_environmental_data():
    """Record a new measurement"""
    try:
        data = request.get_json(silent=True) or {}
        try:
            record = validate_environmental_record(data)
        except ValueError as e:
            return jsonify({'success': False, 'error': str(e)}), 400

        result = get_supabase().table('environmental_data').insert(record).execute()
        row = result.data[0] if result.data else record
        logger.info(f"📊 Environmental data recorded for {record['region_name']}")
        return jsonify({'success': True, 'data': row}), 201

    except APIError as e:
        logger.error(f"Error inserting environmental data: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500
    except Exception:
        logger.exception("Error inserting environmental data")
        return jsonify({'success': False, 'error': 'Internal server error'}), 500


@monitoring_bp.route('/map/areas')
@api_login_required
def api_map_areas():
    try:
        rows = fetch_map_rows(get_supabase())
        return jsonify({'success': True, 'areas': build_map_areas(rows), 'layers': MAP_LAYERS})
    except APIError as e:
        logger.error(f"Error loading map areas: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500


@monitoring_bp.route('/map/search')
@api_login_required
def api_map_search():
    query = request.args.get('q', '').strip()
    if not query:
        return jsonify({'success': False, 'error': 'Search query is required'}), 400

    try:
        area = search_map_areas(fetch_map_rows(get_supabase()), query)
    except APIError as e:
        logger.error(f"Error searching map: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500

    if area is None:
        return jsonify({'success': False, 'error': 'Try searching by region name or coordinates'}), 404
    return jsonify({'success': True, 'area': area})


@monitoring_bp.route('/map/plans', methods=['POST'])
@api_login_required
def api_map_create_plan():
    """Create a restoration plan for a map area"""
    data = request.get_json(silent=True) or {}
    area = data.get('area') or {}

    if not area.get('name') or not area.get('coordinates'):
        return jsonify({'success': False, 'error': 'A map area is required'}), 400

    project_name = (data.get('projectName') or '').strip() or f"{area['name']} Restoration Project"
    try:
        budget = float(data.get('budget', 500000))
        duration = int(data.get('duration', 24))
    except (TypeError, ValueError):
        return jsonify({'success': False, 'error': 'Budget and duration must be numbers'}), 400
    if budget <= 0 or not 1 <= duration <= 120:
        return jsonify({'success': False, 'error': 'Budget must be positive and duration 1-120 months'}), 400

    try:
        record = build_map_plan(area, project_name, budget, duration, date.today())
        project = save_restoration_plan(get_supabase(), current_user(), record)
        return jsonify({'success': True, 'data': project}), 201

    except ProfileError as e:
        return jsonify({'success': False, 'error': str(e)}), 500
    except APIError as e:
        logger.error(f"Error saving map plan: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500
