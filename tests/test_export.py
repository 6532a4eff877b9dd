import json
from datetime import date

from kilimo.export import rows_to_csv
from tests.conftest import api_error


def test_rows_to_csv_quotes_strings_only():
    csv_text = rows_to_csv([
        {'region_name': 'Kitui "South"', 'ndvi_value': 0.18, 'notes': None},
        {'region_name': 'Nyeri', 'ndvi_value': 0.61, 'notes': 'terraced'},
    ])
    assert csv_text.splitlines() == [
        '"region_name","ndvi_value","notes"',
        '"Kitui ""South""",0.18,""',
        '"Nyeri",0.61,"terraced"',
    ]


def test_rows_to_csv_empty():
    assert rows_to_csv([]) == ''


def test_export_environmental_csv(auth_client, fake_db):
    fake_db.tables['environmental_data'] = [
        {'region_name': 'Kitui', 'ndvi_value': 0.18, 'measurement_date': '2026-10-01'}]

    resp = auth_client.get('/api/export?type=environmental&format=csv')

    assert resp.status_code == 200
    assert resp.mimetype == 'text/csv'
    expected = f'attachment; filename="environmental_data_{date.today().isoformat()}.csv"'
    assert resp.headers['Content-Disposition'] == expected
    assert resp.data.decode().splitlines()[1] == '"Kitui",0.18,"2026-10-01"'


def test_export_notifications_json_is_user_scoped(auth_client, fake_db):
    fake_db.tables['notifications'] = [
        {'id': 'n1', 'user_id': 'user-1', 'created_at': '2026-10-01'},
        {'id': 'n2', 'user_id': 'user-2', 'created_at': '2026-10-02'},
    ]
    resp = auth_client.get('/api/export?type=notifications&format=json')
    assert resp.mimetype == 'application/json'
    assert [row['id'] for row in json.loads(resp.data)] == ['n1']
    assert '.json' in resp.headers['Content-Disposition']


def test_export_rejects_unknown_type_and_format(auth_client):
    assert auth_client.get('/api/export?type=users').status_code == 400
    assert auth_client.get('/api/export?type=projects&format=xlsx').status_code == 400


def test_export_database_error(auth_client, fake_db):
    fake_db.errors['restoration_projects'] = api_error()
    resp = auth_client.get('/api/export?type=projects')
    assert resp.status_code == 500
    assert resp.get_json()['error'] == 'Failed to export data'
