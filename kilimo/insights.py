import csv
import io
import logging
from collections import defaultdict
from datetime import date, datetime, timezone

import numpy as np
from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta
from flask import Blueprint, Response, jsonify, request
from postgrest.exceptions import APIError

from kilimo.session import api_login_required, get_supabase

logger = logging.getLogger(__name__)

# Create Blueprint
insights_bp = Blueprint('insights', __name__, url_prefix='/api/analytics')

PERIOD_MONTHS = {'1m': 1, '3m': 3, '6m': 6, '12m': 12}
PERIOD_LABELS = {'1m': 'Last month', '3m': 'Last 3 months', '6m': 'Last 6 months', '12m': 'Last year'}

EXPORT_HEADER = ['Region', 'NDVI', 'Soil Health', 'Erosion Risk', 'Degradation Level', 'Date']


# ========================
# HELPER FUNCTIONS
# ========================

def parse_timestamp(value):
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.isoparse(str(value))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def filter_rows(rows, region='all', period='12m', now=None):
    """Rows for one region (or all) measured within the last N calendar months"""
    now = now or datetime.now(timezone.utc)
    cutoff = now - relativedelta(months=PERIOD_MONTHS.get(period, 12))

    filtered = []
    for row in rows:
        if region != 'all' and row.get('region_name') != region:
            continue
        measured = parse_timestamp(row.get('measurement_date'))
        if measured is not None and measured >= cutoff:
            filtered.append(row)
    return filtered


def calculate_trend(values):
    """Calculate trend direction from array of values"""
    if not values or len(values) < 2:
        return 'stable'

    x = np.arange(len(values), dtype=float)
    y = np.asarray(values, dtype=float)

    denominator = np.sum((x - x.mean()) ** 2)
    if denominator == 0:
        return 'stable'

    slope = np.sum((x - x.mean()) * (y - y.mean())) / denominator

    if slope > 0.01:
        return 'improving'
    elif slope < -0.01:
        return 'declining'
    else:
        return 'stable'


def region_options(rows):
    """First 10 unique region names, in order of appearance"""
    seen = []
    for row in rows:
        name = row.get('region_name')
        if name and name not in seen:
            seen.append(name)
    return seen[:10]


def regional_comparison(rows):
    groups = defaultdict(list)
    for row in rows:
        groups[row.get('region_name') or 'Region'].append(row.get('ndvi_value') or 0)
    return [{'name': name, 'value': round(float(np.mean(values)), 3)} for name, values in groups.items()]


def monthly_ndvi(rows):
    """Average NDVI per calendar month, oldest first"""
    groups = defaultdict(list)
    for row in rows:
        measured = parse_timestamp(row.get('measurement_date'))
        if measured is not None:
            groups[measured.strftime('%Y-%m')].append(row.get('ndvi_value') or 0)
    return [{'month': month, 'ndvi': round(float(np.mean(groups[month])), 3)} for month in sorted(groups)]


def compute_analytics(env_rows, projects, region='all', period='12m', now=None):
    """Aggregate metrics behind the analytics dashboard"""
    filtered = filter_rows(env_rows, region, period, now)
    count = len(filtered)

    ndvi_values = [row.get('ndvi_value') or 0 for row in filtered]
    avg_ndvi = float(np.mean(ndvi_values)) if count else 0.48

    high_risk = sum(1 for row in filtered if row.get('erosion_risk_level') in ('high', 'severe'))
    water_stress = sum(1 for row in filtered
                       if row.get('ndvi_value') is not None and row['ndvi_value'] < 0.3)
    water_stress_pct = round(water_stress / count * 100) if count else 38

    successful = sum(1 for p in projects
                     if p.get('status') == 'completed' and (p.get('success_rate_estimate') or 0) > 70)
    success_rate = round(successful / len(projects) * 100) if projects else 76

    chronological = sorted(filtered, key=lambda r: parse_timestamp(r.get('measurement_date')))
    trend = calculate_trend([row.get('ndvi_value') or 0 for row in chronological])

    return {
        'region': region,
        'period': period,
        'periodLabel': PERIOD_LABELS.get(period, PERIOD_LABELS['12m']),
        'measurements': count,
        'avgNDVI': round(avg_ndvi, 2),
        'ndviTrend': trend,
        'highRiskAreas': high_risk,
        'waterStressAreas': water_stress,
        'waterStressPercent': water_stress_pct,
        'successfulProjects': successful,
        'totalProjects': len(projects),
        'successRate': success_rate,
        'regions': region_options(env_rows),
        'regionalComparison': regional_comparison(filtered),
        'monthlyNDVI': monthly_ndvi(filtered),
    }


def analytics_csv(rows):
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')
    writer.writerow(EXPORT_HEADER)
    for row in rows:
        writer.writerow([
            row.get('region_name'),
            row.get('ndvi_value'),
            row.get('soil_health_score'),
            row.get('erosion_risk_level'),
            row.get('degradation_level'),
            row.get('measurement_date'),
        ])
    return buffer.getvalue().rstrip('\n')


def load_analytics_source(client):
    env = client.table('environmental_data') \
        .select('*') \
        .order('measurement_date', desc=True) \
        .limit(100) \
        .execute()
    projects = client.table('restoration_projects') \
        .select('id, status, success_rate_estimate') \
        .execute()
    return env.data or [], projects.data or []


def _filters():
    region = request.args.get('region', 'all') or 'all'
    period = request.args.get('period', '12m')
    if period not in PERIOD_MONTHS:
        period = '12m'
    return region, period


# ========================
# API ROUTES
# ========================

@insights_bp.route('')
@api_login_required
def api_analytics():
    try:
        region, period = _filters()
        env_rows, projects = load_analytics_source(get_supabase())
        return jsonify({'success': True, 'analytics': compute_analytics(env_rows, projects, region, period)})

    except APIError as e:
        logger.error(f"Error getting analytics: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500


@insights_bp.route('/export')
@api_login_required
def api_analytics_export():
    try:
        region, period = _filters()
        env_rows, _ = load_analytics_source(get_supabase())
    except APIError as e:
        logger.error(f"Error exporting analytics: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500

    filename = f"analytics-export-{region}-{period}-{date.today().isoformat()}.csv"
    return Response(analytics_csv(filter_rows(env_rows, region, period)), mimetype='text/csv', headers={
        'Content-Disposition': f'attachment; filename="{filename}"'
    })
