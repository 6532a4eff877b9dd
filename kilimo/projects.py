import logging

from dateutil.relativedelta import relativedelta
from flask import Blueprint, jsonify, request
from postgrest.exceptions import APIError

from kilimo.notifications import notify_project_created, notify_status_changed
from kilimo.session import api_login_required, current_user, get_supabase

logger = logging.getLogger(__name__)

# Create Blueprint
projects_bp = Blueprint('projects', __name__, url_prefix='/api/restoration-projects')

VALID_STATUSES = ['planned', 'active', 'paused', 'completed']

PROJECT_FIELDS = [
    'project_name', 'region_id', 'region_name', 'area_hectares',
    'budget_allocated', 'budget_spent', 'start_date',
    'estimated_completion_date', 'status', 'success_rate_estimate', 'notes'
]


class ProfileError(Exception):
    """Raised when a profile row cannot be provisioned for a user"""


def init_projects(app):
    logger.info("✅ Projects module initialized!")


# ========================
# HELPER FUNCTIONS
# ========================

def add_months(start, months):
    """Calendar month arithmetic, clamped to the end of the target month"""
    return start + relativedelta(months=int(months))


def ensure_profile(client, user):
    """Make sure a profiles row exists for the auth user before writing projects"""
    existing = client.table('profiles').select('id').eq('id', user.id).limit(1).execute()
    if existing.data:
        return existing.data[0]

    metadata = getattr(user, 'user_metadata', None) or {}
    email = user.email or ''
    profile = {
        'id': user.id,
        'email': email,
        'full_name': metadata.get('full_name') or (email.split('@')[0] if email else '') or 'User',
        'role': 'viewer',
    }
    try:
        result = client.table('profiles').insert(profile).execute()
    except APIError as e:
        logger.error(f"❌ Error creating profile: {e.message}")
        raise ProfileError('Failed to create user profile') from e

    logger.info(f"👤 Created profile for {email}")
    return result.data[0] if result.data else profile


def _species_rows(project_id, recommendations):
    return [{
        'project_id': project_id,
        'name': species.get('name'),
        'scientific_name': species.get('scientificName'),
        'description': species.get('description'),
        'survival_rate': species.get('survivalRate'),
        'cost_per_unit': species.get('costPerUnit'),
        'planting_season': species.get('plantingSeason'),
    } for species in recommendations.get('plantSpecies') or []]


def _technique_rows(project_id, recommendations):
    rows = [{
        'project_id': project_id,
        'name': technique.get('name'),
        'description': technique.get('description'),
        'category': 'soil',
        'estimated_cost': technique.get('estimatedCost'),
        'priority': technique.get('priority'),
    } for technique in recommendations.get('soilTechniques') or []]

    rows.extend({
        'project_id': project_id,
        'name': technique.get('name'),
        'description': technique.get('description'),
        'category': 'water',
        'estimated_cost': technique.get('estimatedCost'),
        'priority': None,
    } for technique in recommendations.get('waterManagement') or [])
    return rows


def save_restoration_plan(client, user, record, recommendations=None):
    """
    Persist a restoration plan for a user.

    Provisions the profile, inserts the project and links any recommended
    species and techniques to it. Returns the inserted project row.
    """
    ensure_profile(client, user)

    record = {**record, 'created_by': user.id}
    result = client.table('restoration_projects').insert(record).execute()
    project = result.data[0] if result.data else record

    if recommendations and project.get('id'):
        species = _species_rows(project['id'], recommendations)
        techniques = _technique_rows(project['id'], recommendations)
        try:
            if species:
                client.table('plant_species').insert(species).execute()
            if techniques:
                client.table('restoration_techniques').insert(techniques).execute()
        except APIError as e:
            logger.warning(f"⚠️ Could not save recommendations for project {project['id']}: {e.message}")

    logger.info(f"✅ Restoration plan saved: {project.get('project_name')}")
    notify_project_created(user.id, project)
    return project


# ========================
# API ROUTES
# ========================

@projects_bp.route('', methods=['GET'])
@api_login_required
def api_list_projects():
    """List restoration projects with their techniques and species"""
    try:
        query = get_supabase().table('restoration_projects') \
            .select('*, restoration_techniques(*), plant_species(*)')

        status = request.args.get('status')
        if status:
            query = query.eq('status', status)

        result = query.order('created_at', desc=True).execute()
        return jsonify({'success': True, 'data': result.data or []})

    except APIError as e:
        logger.error(f"Error listing projects: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500
    except Exception:
        logger.exception("Error listing projects")
        return jsonify({'success': False, 'error': 'Internal server error'}), 500


@projects_bp.route('', methods=['POST'])
@api_login_required
def api_create_project():
    """Create a restoration project owned by the current user"""
    try:
        data = request.get_json(silent=True) or {}
        record = {field: data[field] for field in PROJECT_FIELDS if field in data}

        if not record.get('project_name') or not record.get('region_name'):
            return jsonify({'success': False, 'error': 'project_name and region_name are required'}), 400

        record.setdefault('status', 'planned')
        if record['status'] not in VALID_STATUSES:
            return jsonify({'success': False, 'error': 'Invalid status'}), 400

        user = current_user()
        record['created_by'] = user.id
        result = get_supabase().table('restoration_projects').insert(record).execute()
        project = result.data[0] if result.data else record

        logger.info(f"✅ Project created: {project.get('project_name')}")
        notify_project_created(user.id, project)
        return jsonify({'success': True, 'data': project}), 201

    except APIError as e:
        logger.error(f"Error creating project: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500
    except Exception:
        logger.exception("Error creating project")
        return jsonify({'success': False, 'error': 'Internal server error'}), 500


@projects_bp.route('/<project_id>', methods=['PATCH'])
@api_login_required
def api_update_project(project_id):
    """Update project status and/or spending"""
    try:
        data = request.get_json(silent=True) or {}
        user = current_user()
        client = get_supabase()

        updates = {}
        if 'status' in data:
            if data['status'] not in VALID_STATUSES:
                return jsonify({'success': False, 'error': 'Invalid status'}), 400
            updates['status'] = data['status']

        if 'budget_spent' in data:
            try:
                spent = float(data['budget_spent'])
            except (TypeError, ValueError):
                return jsonify({'success': False, 'error': 'budget_spent must be a number'}), 400
            if spent < 0:
                return jsonify({'success': False, 'error': 'budget_spent cannot be negative'}), 400
            updates['budget_spent'] = spent

        if not updates:
            return jsonify({'success': False, 'error': 'No valid fields to update'}), 400

        current = client.table('restoration_projects') \
            .select('id, project_name, status') \
            .eq('id', project_id) \
            .eq('created_by', user.id) \
            .limit(1) \
            .execute()
        if not current.data:
            return jsonify({'success': False, 'error': 'Project not found'}), 404

        project = current.data[0]
        old_status = project.get('status')

        result = client.table('restoration_projects') \
            .update(updates) \
            .eq('id', project_id) \
            .eq('created_by', user.id) \
            .execute()
        updated = result.data[0] if result.data else {**project, **updates}

        new_status = updates.get('status')
        if new_status and new_status != old_status:
            notify_status_changed(user.id, project, old_status, new_status)

        return jsonify({'success': True, 'data': updated})

    except APIError as e:
        logger.error(f"Error updating project: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 500
    except Exception:
        logger.exception("Error updating project")
        return jsonify({'success': False, 'error': 'Internal server error'}), 500
