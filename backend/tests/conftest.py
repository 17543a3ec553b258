import os
import sys
import json
import pytest
from flask import g

# Ensure the backend root (containing the `fairway` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from fairway import create_app, db, socketio


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    BCRYPT_LOG_ROUNDS = 4
    STALE_THRESHOLD_SEC = 12 * 60 * 60
    ORPHAN_GRACE_SEC = 10 * 60
    PURGE_THRESHOLD_SEC = 24 * 60 * 60
    WRITE_BATCH_SIZE = 500
    TRANSFER_REQUEST_TTL_SEC = 300
    NOTIFICATION_TTL_DAYS = 30
    MIN_ROSTER_SIZE = 2


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)

    # Requests reuse the fixture's app context, so drop the cached user from g
    # and let each test client's session cookie decide who is signed in.
    @application.before_request
    def _reset_cached_user():
        g.pop('_login_user', None)

    with application.app_context():
        # Ensure models are imported so tables are created
        import fairway.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


class RecordingDispatcher:
    """Collects dispatched notifications; raises for recipients in fail_for."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def dispatch(self, type, recipient_id, payload):
        if recipient_id in self.fail_for:
            raise RuntimeError('push service unavailable')
        self.sent.append((type, recipient_id, payload))
        return True

    def recipients(self, type=None):
        return [r for t, r, _ in self.sent if type is None or t == type]


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


def make_tee(hole_count=18):
    return {
        'tee_name': 'Blue',
        'holes': [
            {'par': 3 + (i % 3), 'yardage': 150 + 25 * i, 'handicap': i + 1}
            for i in range(hole_count)
        ],
    }


def make_player(player_id, name, is_ghost=False, tee=None):
    return {
        'player_id': player_id,
        'display_name': name,
        'avatar': None,
        'is_ghost': is_ghost,
        'handicap_index': 12.4,
        'course_handicap': 13,
        'tee': tee or make_tee(),
        'tee_name': 'Blue',
        'slope_rating': 128,
        'course_rating': 71.2,
        'is_group_marker': False,
    }


@pytest.fixture()
def launch_payload():
    """Builds a launch request: 4 players in 2 groups of 2 unless told otherwise."""
    def _build(roster=None, groups=None, **overrides):
        if roster is None:
            roster = [
                make_player('1', 'Alice'),
                make_player('2', 'Bob'),
                make_player('3', 'Cara'),
                make_player('4', 'Dev'),
            ]
        if groups is None:
            groups = [
                {'group_id': 'g1', 'name': 'Group 1', 'player_ids': ['1', '2'], 'marker_id': '1', 'starting_hole': 1},
                {'group_id': 'g2', 'name': 'Group 2', 'player_ids': ['3', '4'], 'marker_id': '3', 'starting_hole': 10},
            ]
        payload = {
            'parent_type': 'casual',
            'parent_id': None,
            'course_id': 101,
            'course_name': 'Maple Hill',
            'hole_count': 18,
            'format_id': 'stroke_play',
            'group_size': 2,
            'roster': roster,
            'groups': groups,
        }
        payload.update(overrides)
        return payload
    return _build


@pytest.fixture()
def make_round(flask_app):
    """Inserts a round directly; players default to Alice (marker), Bob and Cara."""
    from fairway.models import Round, utcnow

    def _make(players=None, marker_id='p1', status='live', started_at=None, **fields):
        if players is None:
            players = [
                {'player_id': 'p1', 'display_name': 'Alice', 'is_ghost': False},
                {'player_id': 'p2', 'display_name': 'Bob', 'is_ghost': False},
                {'player_id': 'p3', 'display_name': 'Cara', 'is_ghost': False},
            ]
        for p in players:
            p['is_marker'] = p['player_id'] == marker_id
        rnd = Round(
            marker_id=marker_id,
            status=status,
            course_id=101,
            course_name='Maple Hill',
            hole_count=18,
            players=json.dumps(players),
            started_at=started_at or utcnow(),
            **fields
        )
        db.session.add(rnd)
        db.session.commit()
        return rnd
    return _make


def register(client, username):
    res = client.post('/register', json={'username': username, 'password': 'password', 'display_name': username.title()})
    assert res.status_code == 201
    return res.get_json()['user']
