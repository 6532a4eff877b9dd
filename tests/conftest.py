import itertools
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from config import db
from kilimo import create_app


def api_error(message='database error'):
    return APIError({'message': message, 'code': '500', 'hint': None, 'details': None})


class FakeQuery:
    """Chainable stand-in for a postgrest request builder backed by a list of dicts"""

    def __init__(self, fake, name):
        self.fake = fake
        self.name = name
        self.action = 'select'
        self.payload = None
        self.filters = []
        self.ordering = None
        self.row_limit = None
        self.count_mode = None
        self.head = False

    # --- builders ---

    def select(self, *columns, count=None, head=False):
        self.action = 'select'
        self.count_mode = count
        self.head = head
        return self

    def insert(self, payload):
        self.action = 'insert'
        self.payload = payload
        return self

    def update(self, payload):
        self.action = 'update'
        self.payload = payload
        return self

    def upsert(self, payload, on_conflict=None):
        self.action = 'upsert'
        self.payload = payload
        return self

    def delete(self):
        self.action = 'delete'
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc=False):
        self.ordering = (column, desc)
        return self

    def limit(self, size):
        self.row_limit = size
        return self

    # --- execution ---

    def _matches(self, row):
        return all(check(row) for check in self.filters)

    def execute(self):
        self.fake.calls.append((self.name, self.action, self.payload))
        error = self.fake.errors.get((self.name, self.action)) or self.fake.errors.get(self.name)
        if error is not None:
            raise error

        rows = self.fake.tables.setdefault(self.name, [])

        if self.action == 'insert':
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for item in payload:
                row = {'id': item.get('id') or f"{self.name}-{next(self.fake.ids)}", **item}
                rows.append(row)
                inserted.append(dict(row))
            return SimpleNamespace(data=inserted, count=None)

        if self.action == 'upsert':
            existing = next((row for row in rows if row.get('id') == self.payload.get('id')), None)
            if existing is None:
                rows.append(dict(self.payload))
            else:
                existing.update(self.payload)
            return SimpleNamespace(data=[dict(self.payload)], count=None)

        matched = [row for row in rows if self._matches(row)]

        if self.action == 'update':
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=[dict(row) for row in matched], count=None)

        if self.action == 'delete':
            self.fake.tables[self.name] = [row for row in rows if not self._matches(row)]
            return SimpleNamespace(data=[dict(row) for row in matched], count=None)

        if self.ordering:
            column, desc = self.ordering
            matched = sorted(matched, key=lambda row: (row.get(column) is None, row.get(column)), reverse=desc)
        count = len(matched) if self.count_mode else None
        if self.row_limit is not None:
            matched = matched[:self.row_limit]
        data = [] if self.head else [dict(row) for row in matched]
        return SimpleNamespace(data=data, count=count)


class FakeSupabase:
    """In-memory Supabase client: tables are lists of dicts, auth and storage are mocks"""

    def __init__(self):
        self.tables = {}
        self.errors = {}
        self.calls = []
        self.ids = itertools.count(1)
        self.auth = MagicMock()
        self.storage = MagicMock()

    def table(self, name):
        return FakeQuery(self, name)

    def rows(self, name):
        return self.tables.get(name, [])

    def inserted(self, name):
        return [payload for table, action, payload in self.calls if table == name and action == 'insert']


USER = SimpleNamespace(
    id='user-1',
    email='wanjiku@example.com',
    user_metadata={'full_name': 'Wanjiku Njeri', 'organization': 'Green Belt'},
)


def auth_session(access='access-token', refresh='refresh-token'):
    return SimpleNamespace(access_token=access, refresh_token=refresh)


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def app(monkeypatch, fake_db):
    monkeypatch.setattr(db, 'get_anon_client', lambda: fake_db)
    monkeypatch.setattr(db, 'get_service_client', lambda: fake_db)
    monkeypatch.setattr(db, 'get_user_client', lambda token: fake_db)
    monkeypatch.setattr(db, 'get_oauth_client', lambda storage: fake_db)

    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'APP_ENV': 'test',
        'SITE_URL': 'http://localhost:5000',
        'SUPABASE_URL': 'http://supabase.test',
        'SUPABASE_ANON_KEY': 'anon-key',
        'SUPABASE_SERVICE_ROLE_KEY': 'service-key',
        'SUPABASE_WEBHOOK_SECRET': None,
        'ALLOW_DEMO': False,
        'ALLOW_AUTO_CONFIRM': False,
        'DEMO_EMAIL': None,
        'DEMO_PASSWORD': None,
        'AI_API_KEY': None,
        'MAIL_USERNAME': None,
        'MAIL_SUPPRESS_SEND': True,
    })
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client, fake_db):
    """Test client carrying a valid access token for USER"""
    fake_db.auth.get_user.return_value = SimpleNamespace(user=USER)
    client.set_cookie('sb-access-token', 'access-token')
    return client
