"""
Pytest configuration and fixtures for registrar tests.
"""
import os
import sys
from datetime import timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from registrar.app import create_app
from registrar.identity import Principal
from registrar.models import db, User, Tournament, Competitor, utcnow

STRONG_PASSWORD = 'Str0ng!Pass'


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app('testing')
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Empty tables and shared counters before each test."""
    with app.app_context():
        db.session.remove()

        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

    app.store.clear()
    yield db.session


@pytest.fixture
def make_user(app, db_session):
    """Factory creating a user row; returns its id."""
    def _make(email='user@example.com', role='USER', status='APPROVED',
              password=STRONG_PASSWORD, name='Test User', provider='EMAIL'):
        with app.app_context():
            user = User(email=email, name=name, role=role, status=status, provider=provider)
            if password:
                user.set_password(password)
            db.session.add(user)
            db.session.commit()
            return user.id
    return _make


@pytest.fixture
def admin_id(make_user):
    return make_user(email='admin@example.com', role='ADMIN', name='Admin')


@pytest.fixture
def super_admin_id(make_user):
    return make_user(email='root@example.com', role='SUPER_ADMIN', name='Root')


@pytest.fixture
def user_id(make_user):
    return make_user(email='player@example.com', role='USER', name='Player')


def principal_for(app, user_id) -> Principal:
    with app.app_context():
        return Principal.from_user(db.session.get(User, user_id))


@pytest.fixture
def admin(app, admin_id):
    return principal_for(app, admin_id)


@pytest.fixture
def super_admin(app, super_admin_id):
    return principal_for(app, super_admin_id)


@pytest.fixture
def regular_user(app, user_id):
    return principal_for(app, user_id)


@pytest.fixture
def auth_headers(app):
    """Build a Bearer header for a user id."""
    def _headers(user_id):
        with app.app_context():
            token = app.tokens.issue(db.session.get(User, user_id))
        return {'Authorization': f'Bearer {token}'}
    return _headers


@pytest.fixture
def admin_headers(auth_headers, admin_id):
    return auth_headers(admin_id)


@pytest.fixture
def user_headers(auth_headers, user_id):
    return auth_headers(user_id)


def build_tournament_payload(name='Spring Open', **overrides):
    now = utcnow()
    payload = {
        'name': name,
        'status': 'OPEN',
        'registration_start': (now - timedelta(days=1)).isoformat(),
        'registration_end': (now + timedelta(days=1)).isoformat(),
        'tournament_start': (now + timedelta(days=2)).isoformat(),
        'tournament_end': (now + timedelta(days=3)).isoformat(),
        'categories': ['Open', 'U18'],
        'has_teams': False,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def tournament_payload():
    """Valid create payload with an open registration window."""
    return build_tournament_payload


@pytest.fixture
def make_tournament(app, db_session):
    """Factory inserting a tournament directly; returns its id."""
    def _make(name='Spring Open', status='OPEN', categories=('Open', 'U18'), has_teams=False,
              registration_opens=timedelta(days=-1), registration_closes=timedelta(days=1),
              deleted=False):
        with app.app_context():
            now = utcnow()
            tournament = Tournament(
                name=name,
                status=status,
                registration_start=now + registration_opens,
                registration_end=now + registration_closes,
                tournament_start=now + registration_closes + timedelta(days=1),
                tournament_end=now + registration_closes + timedelta(days=2),
                has_teams=has_teams,
                created_by=None,
                deleted_at=now if deleted else None,
            )
            tournament.categories = list(categories)
            db.session.add(tournament)
            db.session.commit()
            return tournament.id
    return _make


@pytest.fixture
def open_tournament_id(make_tournament):
    return make_tournament()


@pytest.fixture
def make_competitor(app, db_session):
    """Factory inserting a competitor directly; returns its id."""
    def _make(tournament_id, first_name='Ana', last_name='Popescu', category='U18',
              gender='FEMALE', personal_number=None, status='PENDING', deleted=False):
        with app.app_context():
            if personal_number is None:
                personal_number = Competitor.query.filter_by(tournament_id=tournament_id).count() + 1
            competitor = Competitor(
                tournament_id=tournament_id,
                personal_number=personal_number,
                first_name=first_name,
                last_name=last_name,
                gender=gender,
                category=category,
                player_acceptance_status=status,
                deleted_at=utcnow() if deleted else None,
            )
            db.session.add(competitor)
            db.session.commit()
            return competitor.id
    return _make


@pytest.fixture
def mock_notifier(app, mocker):
    """Capture dispatched notification events."""
    return mocker.patch.object(app.notifier, 'dispatch', return_value=True)
