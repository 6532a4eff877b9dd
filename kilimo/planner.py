"""
Kilimo AI - Restoration Planner
A five-step wizard (select -> analyze -> recommend -> plan -> review) whose
state lives in the Flask session between requests.
"""

import logging
import time
from datetime import date

from flask import Blueprint, flash, redirect, render_template, request, session, url_for
from postgrest.exceptions import APIError

from kilimo.projects import ProfileError, add_months, save_restoration_plan
from kilimo.recommendations import generate_restoration_recommendations
from kilimo.session import current_user, get_supabase, login_required

logger = logging.getLogger(__name__)

planner_bp = Blueprint('planner', __name__, url_prefix='/dashboard/planner')

SESSION_KEY = 'planner'

STEPS = ['select', 'analyze', 'recommend', 'plan', 'review']
STEP_LABELS = {
    'select': 'Select Area',
    'analyze': 'Analyze',
    'recommend': 'Recommendations',
    'plan': 'Plan Resources',
    'review': 'Review & Save',
}

DEFAULT_BUDGET = 500000
DEFAULT_DURATION = 24
PLAN_AREA_HECTARES = 450

BUDGET_SHARES = [
    ('Plant Materials & Seeds', 30),
    ('Labor & Implementation', 35),
    ('Equipment & Tools', 15),
    ('Monitoring & Maintenance', 15),
    ('Contingency', 5),
]

SAMPLE_PRIORITY_AREAS = [
    {'name': 'Northern Plains - Sector 12', 'regionId': 'sector-12-north', 'area': '450 km²',
     'ndvi': 0.28, 'risk': 'Critical', 'priority': 1, 'data': None},
    {'name': 'Southern Hills - Sector 5', 'regionId': 'sector-5-south', 'area': '320 km²',
     'ndvi': 0.32, 'risk': 'High', 'priority': 2, 'data': None},
    {'name': 'Eastern Valley - Sector 8', 'regionId': 'sector-8-east', 'area': '280 km²',
     'ndvi': 0.35, 'risk': 'High', 'priority': 3, 'data': None},
]

# Keep the cookie-backed session small
MAX_TEXT = 200
MAX_ITEMS = {'plantSpecies': 5, 'soilTechniques': 4, 'waterManagement': 3}


class PlannerStepError(ValueError):
    """Raised when a wizard action is attempted from the wrong step"""


def _area_data(row):
    """The subset of an environmental row the wizard carries between steps"""
    if not row:
        return None
    return {
        'ndvi_value': row.get('ndvi_value'),
        'soil_health_score': row.get('soil_health_score'),
        'erosion_risk_level': row.get('erosion_risk_level'),
        'degradation_level': row.get('degradation_level'),
        'latitude': row.get('latitude'),
        'longitude': row.get('longitude'),
    }


def build_priority_areas(rows):
    """Top three degraded areas, or the sample sectors when there is no data"""
    if not rows:
        return [dict(area) for area in SAMPLE_PRIORITY_AREAS]
    return [{
        'name': row.get('region_name'),
        'regionId': row.get('region_id'),
        'area': '450 km²',
        'ndvi': row.get('ndvi_value') or 0.28,
        'risk': 'Critical' if row.get('degradation_level') == 'severe' else 'High',
        'priority': index + 1,
        'data': _area_data(row),
    } for index, row in enumerate(rows[:3])]


def fetch_priority_areas(client):
    result = client.table('environmental_data') \
        .select('*') \
        .in_('degradation_level', ['high', 'severe']) \
        .order('ndvi_value') \
        .limit(10) \
        .execute()
    return build_priority_areas(result.data or [])


def _compact(recommendations):
    compact = {}
    for key, limit in MAX_ITEMS.items():
        items = []
        for item in (recommendations.get(key) or [])[:limit]:
            item = dict(item)
            if isinstance(item.get('description'), str):
                item['description'] = item['description'][:MAX_TEXT]
            items.append(item)
        compact[key] = items
    compact['successEstimate'] = recommendations.get('successEstimate')
    compact['reasoning'] = (recommendations.get('reasoning') or '')[:MAX_TEXT * 2]
    return compact


class PlannerWizard:
    """Restoration planning state machine"""

    def __init__(self, state=None):
        self.state = self.defaults()
        if state:
            self.state.update(state)

    @staticmethod
    def defaults():
        return {
            'step': 'select',
            'area': None,
            'recommendations': None,
            'budget': DEFAULT_BUDGET,
            'duration': DEFAULT_DURATION,
            'project_name': '',
            'notes': '',
        }

    @classmethod
    def from_session(cls, store):
        return cls(store.get(SESSION_KEY))

    def save(self, store):
        store[SESSION_KEY] = self.state

    @property
    def step(self):
        return self.state['step']

    @property
    def step_index(self):
        return STEPS.index(self.step)

    @property
    def area(self):
        return self.state['area']

    def _require(self, step):
        if self.step != step:
            raise PlannerStepError(f"Cannot do that from the '{self.step}' step (expected '{step}')")

    # --- transitions ---

    def select_area(self, area):
        self._require('select')
        self.state['area'] = {
            'name': area['name'],
            'regionId': area.get('regionId'),
            'ndvi': area.get('ndvi'),
            'risk': area.get('risk'),
            'data': area.get('data'),
        }
        self.state['step'] = 'analyze'

    def select_custom(self, name=None):
        self._require('select')
        self.state['area'] = {
            'name': (name or '').strip() or 'Custom Location',
            'regionId': f"custom-{int(time.time() * 1000)}",
            'ndvi': None,
            'risk': None,
            'data': None,
        }
        self.state['step'] = 'analyze'

    def analysis_input(self):
        """Region description handed to the recommendation engine"""
        area = self.area or {}
        data = area.get('data') or {}
        ndvi = data.get('ndvi_value') if data.get('ndvi_value') is not None else (area.get('ndvi') or 0.28)
        return {
            'regionName': area.get('name'),
            'ndviValue': ndvi,
            'soilHealthScore': data.get('soil_health_score') or 50,
            'erosionRiskLevel': data.get('erosion_risk_level') or 'high',
            'degradationLevel': data.get('degradation_level') or ('severe' if area.get('risk') == 'Critical' else 'high'),
            'areaHectares': PLAN_AREA_HECTARES,
            'climate': None,
        }

    def generate_recommendations(self, generator=generate_restoration_recommendations):
        self._require('analyze')
        self.state['recommendations'] = _compact(generator(self.analysis_input()))
        self.state['step'] = 'recommend'

    def continue_to_plan(self):
        self._require('recommend')
        self.state['step'] = 'plan'

    def set_resources(self, budget, duration, project_name=None, notes=None):
        self._require('plan')
        try:
            budget = float(budget)
            duration = int(duration)
        except (TypeError, ValueError):
            raise PlannerStepError('Budget and duration must be numbers')
        if budget <= 0:
            raise PlannerStepError('Budget must be greater than zero')
        if not 1 <= duration <= 120:
            raise PlannerStepError('Duration must be between 1 and 120 months')

        self.state['budget'] = budget
        self.state['duration'] = duration
        if project_name is not None:
            self.state['project_name'] = project_name.strip()
        if notes is not None:
            self.state['notes'] = notes.strip()
        self.state['step'] = 'review'

    def back(self):
        if self.step_index > 0:
            self.state['step'] = STEPS[self.step_index - 1]

    def reset(self):
        self.state = self.defaults()

    # --- derived values ---

    @property
    def success_estimate(self):
        data = (self.area or {}).get('data')
        if data:
            return round((data.get('ndvi_value') or 0.3) * 100 + 20)
        return 82

    def budget_breakdown(self):
        budget = float(self.state['budget'])
        return [{'category': category, 'percentage': share, 'amount': round(budget * share / 100, 2)}
                for category, share in BUDGET_SHARES]

    def phases(self):
        return [
            {'phase': 'Phase 1: Site Preparation', 'duration': 'Months 1-3', 'status': 'planned'},
            {'phase': 'Phase 2: Initial Planting', 'duration': 'Months 4-8', 'status': 'planned'},
            {'phase': 'Phase 3: Soil Conservation', 'duration': 'Months 6-12', 'status': 'planned'},
            {'phase': 'Phase 4: Monitoring & Maintenance',
             'duration': f"Months 12-{self.state['duration']}", 'status': 'planned'},
        ]

    def build_project_record(self, user_id, today=None):
        self._require('review')
        today = today or date.today()
        area = self.area or {}
        name = area.get('name') or 'Custom Location'
        return {
            'project_name': self.state.get('project_name') or f"{name} Restoration",
            'region_id': area.get('regionId') or f"region-{int(time.time() * 1000)}",
            'region_name': name,
            'area_hectares': PLAN_AREA_HECTARES,
            'budget_allocated': float(self.state['budget']),
            'budget_spent': 0,
            'start_date': today.isoformat(),
            'estimated_completion_date': add_months(today, self.state['duration']).isoformat(),
            'status': 'planned',
            'success_rate_estimate': self.success_estimate,
            'notes': self.state.get('notes') or None,
            'created_by': user_id,
        }


# ========================
# ROUTES
# ========================

def _back_to_planner(wizard):
    wizard.save(session)
    return redirect(url_for('planner.planner'))


@planner_bp.route('')
@login_required
def planner():
    wizard = PlannerWizard.from_session(session)
    priority_areas = []
    if wizard.step == 'select':
        try:
            priority_areas = fetch_priority_areas(get_supabase())
        except APIError as e:
            logger.warning(f"⚠️ Could not load degraded areas: {e.message}")
            priority_areas = build_priority_areas([])

    return render_template('planner.html',
                           wizard=wizard,
                           steps=[(step, STEP_LABELS[step]) for step in STEPS],
                           priority_areas=priority_areas)


@planner_bp.route('/select', methods=['POST'])
@login_required
def select():
    wizard = PlannerWizard.from_session(session)
    try:
        if request.form.get('custom'):
            wizard.select_custom(request.form.get('location_name'))
        else:
            region_id = request.form.get('region_id')
            areas = fetch_priority_areas(get_supabase())
            area = next((a for a in areas if a['regionId'] == region_id), None)
            if area is None:
                flash('Please choose one of the listed areas', 'error')
                return _back_to_planner(wizard)
            wizard.select_area(area)
    except PlannerStepError as e:
        flash(str(e), 'error')
    except APIError as e:
        logger.error(f"Error loading degraded areas: {e.message}")
        flash('Could not load degraded areas. Please try again.', 'error')
    return _back_to_planner(wizard)


@planner_bp.route('/analyze', methods=['POST'])
@login_required
def analyze():
    wizard = PlannerWizard.from_session(session)
    try:
        wizard.generate_recommendations()
    except PlannerStepError as e:
        flash(str(e), 'error')
    return _back_to_planner(wizard)


@planner_bp.route('/plan', methods=['POST'])
@login_required
def plan():
    wizard = PlannerWizard.from_session(session)
    try:
        wizard.continue_to_plan()
    except PlannerStepError as e:
        flash(str(e), 'error')
    return _back_to_planner(wizard)


@planner_bp.route('/resources', methods=['POST'])
@login_required
def resources():
    wizard = PlannerWizard.from_session(session)
    try:
        wizard.set_resources(
            request.form.get('budget', DEFAULT_BUDGET),
            request.form.get('duration', DEFAULT_DURATION),
            project_name=request.form.get('project_name'),
            notes=request.form.get('notes'),
        )
    except PlannerStepError as e:
        flash(str(e), 'error')
    return _back_to_planner(wizard)


@planner_bp.route('/back', methods=['POST'])
@login_required
def back():
    wizard = PlannerWizard.from_session(session)
    wizard.back()
    return _back_to_planner(wizard)


@planner_bp.route('/reset', methods=['POST'])
@login_required
def reset():
    wizard = PlannerWizard.from_session(session)
    wizard.reset()
    return _back_to_planner(wizard)


@planner_bp.route('/save', methods=['POST'])
@login_required
def save():
    wizard = PlannerWizard.from_session(session)
    user = current_user()
    try:
        if request.form.get('notes') is not None:
            wizard.state['notes'] = request.form.get('notes', '').strip()
        record = wizard.build_project_record(user.id)
        project = save_restoration_plan(get_supabase(), user, record, wizard.state.get('recommendations'))
    except PlannerStepError as e:
        flash(str(e), 'error')
        return _back_to_planner(wizard)
    except ProfileError:
        flash('Failed to create user profile. Please try again.', 'error')
        return _back_to_planner(wizard)
    except APIError as e:
        logger.error(f"❌ Error saving restoration plan: {e.message}")
        flash('Failed to save restoration plan. Please try again.', 'error')
        return _back_to_planner(wizard)

    wizard.reset()
    wizard.save(session)
    flash(f"Restoration plan \"{project.get('project_name')}\" saved successfully", 'success')
    return redirect(url_for('dashboard.dashboard'))
