from datetime import date

import pytest

from kilimo.planner import (PlannerStepError, PlannerWizard, build_priority_areas)
from kilimo.recommendations import fallback_recommendations

DEGRADED = [
    {'region_id': 'ke-kitui-07', 'region_name': 'Kitui South', 'ndvi_value': 0.18,
     'soil_health_score': 31, 'erosion_risk_level': 'severe', 'degradation_level': 'severe',
     'latitude': -1.37, 'longitude': 38.01},
    {'region_id': 'ke-makueni-02', 'region_name': 'Makueni', 'ndvi_value': 0.31,
     'soil_health_score': 44, 'erosion_risk_level': 'high', 'degradation_level': 'high'},
]


def _at_review(area=None):
    wizard = PlannerWizard()
    wizard.select_area(area or build_priority_areas(DEGRADED)[0])
    wizard.generate_recommendations(generator=lambda region: fallback_recommendations())
    wizard.continue_to_plan()
    wizard.set_resources(200000, 18, project_name='Kitui Regreening', notes='  terraces first ')
    return wizard


def test_priority_areas_from_rows():
    areas = build_priority_areas(DEGRADED)
    assert [a['risk'] for a in areas] == ['Critical', 'High']
    assert areas[0]['priority'] == 1
    assert areas[0]['data']['soil_health_score'] == 31


def test_priority_areas_fall_back_to_samples():
    areas = build_priority_areas([])
    assert [a['regionId'] for a in areas] == ['sector-12-north', 'sector-5-south', 'sector-8-east']


def test_wizard_walks_through_every_step():
    wizard = _at_review()
    assert wizard.step == 'review'
    assert wizard.state['notes'] == 'terraces first'
    assert len(wizard.state['recommendations']['plantSpecies']) == 2


def test_analysis_input_uses_area_data():
    wizard = PlannerWizard()
    wizard.select_area(build_priority_areas(DEGRADED)[0])
    region = wizard.analysis_input()
    assert region['ndviValue'] == 0.18
    assert region['soilHealthScore'] == 31
    assert region['areaHectares'] == 450


def test_custom_location_defaults():
    wizard = PlannerWizard()
    wizard.select_custom('  ')
    assert wizard.area['name'] == 'Custom Location'
    assert wizard.area['regionId'].startswith('custom-')
    region = wizard.analysis_input()
    assert region['ndviValue'] == 0.28
    assert region['degradationLevel'] == 'high'
    assert wizard.success_estimate == 82


def test_actions_out_of_order_are_rejected():
    wizard = PlannerWizard()
    with pytest.raises(PlannerStepError):
        wizard.continue_to_plan()
    with pytest.raises(PlannerStepError):
        wizard.build_project_record('user-1')


@pytest.mark.parametrize('budget,duration', [(0, 12), (1000, 0), (1000, 121), ('lots', 12)])
def test_set_resources_validation(budget, duration):
    wizard = PlannerWizard({'step': 'plan'})
    with pytest.raises(PlannerStepError):
        wizard.set_resources(budget, duration)
    assert wizard.step == 'plan'


def test_back_and_reset():
    wizard = _at_review()
    wizard.back()
    assert wizard.step == 'plan'
    wizard.reset()
    assert wizard.state == PlannerWizard.defaults()
    wizard.back()
    assert wizard.step == 'select'


def test_budget_breakdown_and_phases():
    wizard = _at_review()
    breakdown = wizard.budget_breakdown()
    assert [item['amount'] for item in breakdown] == [60000, 70000, 30000, 30000, 10000]
    assert sum(item['percentage'] for item in breakdown) == 100
    assert wizard.phases()[-1]['duration'] == 'Months 12-18'


def test_project_record():
    record = _at_review().build_project_record('user-1', today=date(2026, 8, 31))
    assert record['project_name'] == 'Kitui Regreening'
    assert record['region_id'] == 'ke-kitui-07'
    assert record['success_rate_estimate'] == 38
    assert record['estimated_completion_date'] == '2028-02-29'
    assert record['status'] == 'planned'
    assert record['budget_spent'] == 0


def test_session_round_trip():
    store = {}
    _at_review().save(store)
    restored = PlannerWizard.from_session(store)
    assert restored.step == 'review'
    assert restored.area['name'] == 'Kitui South'


# ----- routes -----

def test_planner_page_lists_priority_areas(auth_client, fake_db):
    fake_db.tables['environmental_data'] = [dict(row) for row in DEGRADED]
    resp = auth_client.get('/dashboard/planner')
    assert resp.status_code == 200
    assert b'Kitui South' in resp.data


def test_planner_flow_saves_project(auth_client, fake_db):
    fake_db.tables['environmental_data'] = [dict(row) for row in DEGRADED]

    auth_client.post('/dashboard/planner/select', data={'region_id': 'ke-makueni-02'})
    auth_client.post('/dashboard/planner/analyze')
    page = auth_client.get('/dashboard/planner')
    assert b'Acacia' in page.data

    auth_client.post('/dashboard/planner/plan')
    auth_client.post('/dashboard/planner/resources', data={'budget': '300000', 'duration': '24'})
    resp = auth_client.post('/dashboard/planner/save', data={'notes': 'Fence first'})

    assert resp.status_code == 302
    assert resp.headers['Location'].endswith('/dashboard')
    project = fake_db.rows('restoration_projects')[0]
    assert project['project_name'] == 'Makueni Restoration'
    assert project['notes'] == 'Fence first'
    assert project['created_by'] == 'user-1'
    assert len(fake_db.rows('plant_species')) == 2

    with auth_client.session_transaction() as sess:
        assert sess['planner']['step'] == 'select'


def test_planner_rejects_unknown_area(auth_client, fake_db):
    auth_client.post('/dashboard/planner/select', data={'region_id': 'nowhere'})
    with auth_client.session_transaction() as sess:
        assert sess['planner']['step'] == 'select'


def test_planner_save_out_of_order_keeps_state(auth_client, fake_db):
    resp = auth_client.post('/dashboard/planner/save')
    assert resp.headers['Location'].endswith('/dashboard/planner')
    assert fake_db.rows('restoration_projects') == []
