from datetime import timedelta

import pytest
from sqlalchemy.orm.exc import StaleDataError

import fairway.api.rounds as rounds_api
from fairway import db
from fairway.models import Notification, Round, utcnow
from fairway.services.rounds.errors import InvalidArgument
from fairway.services.rounds.reconciler import resolve_orphaned_transfers, ReconcileWindows
from fairway.services.rounds.transfers import request_marker_transfer
from conftest import register


def _players():
    return [
        {'player_id': '1', 'display_name': 'Alice', 'is_ghost': False},
        {'player_id': '2', 'display_name': 'Bob', 'is_ghost': False},
        {'player_id': '3', 'display_name': 'Cara', 'is_ghost': False},
        {'player_id': 'ghost-1', 'display_name': 'Guest', 'is_ghost': True},
    ]


@pytest.fixture()
def clients(flask_app):
    """Signed-in clients for Alice (id 1), Bob (id 2) and Cara (id 3)."""
    signed_in = {}
    for name in ('alice', 'bob', 'cara'):
        c = flask_app.test_client()
        register(c, name)
        signed_in[name] = c
    return signed_in


@pytest.fixture()
def live_round(make_round):
    return make_round(players=_players(), marker_id='1')


def test_request_then_approve_moves_marker(clients, live_round):
    res = clients['bob'].post(f'/api/rounds/{live_round.id}/transfer')
    assert res.status_code == 201
    pending = res.get_json()
    assert pending['marker_transfer_request']['requested_by'] == '2'
    assert pending['marker_transfer_request']['status'] == 'pending'

    # The marker was told about the request
    note = Notification.query.filter_by(user_id='1', type='marker_transfer_request').one()
    assert note.actor_name == 'Bob'

    res = clients['alice'].post(f'/api/rounds/{live_round.id}/transfer/respond',
                                json={'approve': True, 'version': pending['version']})
    assert res.status_code == 200
    body = res.get_json()
    assert body['marker_id'] == '2'
    assert body['previous_marker_id'] == '1'
    assert body['marker_transfer_request'] is None
    assert [p['player_id'] for p in body['players'] if p['is_marker']] == ['2']

    outcome = Notification.query.filter_by(user_id='2', type='marker_transfer').one()
    assert outcome.to_dict()['payload']['status'] == 'approved'


def test_decline_keeps_marker_and_clears_request(clients, live_round):
    clients['bob'].post(f'/api/rounds/{live_round.id}/transfer')
    res = clients['alice'].post(f'/api/rounds/{live_round.id}/transfer/respond', json={'approve': False})
    body = res.get_json()
    assert res.status_code == 200
    assert body['marker_id'] == '1'
    assert body['marker_transfer_request'] is None
    assert body['previous_marker_id'] is None


def test_only_marker_can_respond(clients, live_round):
    clients['bob'].post(f'/api/rounds/{live_round.id}/transfer')
    res = clients['cara'].post(f'/api/rounds/{live_round.id}/transfer/respond', json={'approve': True})
    assert res.status_code == 403
    assert res.get_json()['code'] == 'permission-denied'
    assert db.session.get(Round, live_round.id).transfer_status == 'pending'


def test_second_pending_request_is_rejected(clients, live_round):
    assert clients['bob'].post(f'/api/rounds/{live_round.id}/transfer').status_code == 201
    res = clients['cara'].post(f'/api/rounds/{live_round.id}/transfer')
    assert res.status_code == 400
    assert res.get_json()['code'] == 'invalid-argument'
    assert db.session.get(Round, live_round.id).transfer_requested_by == '2'


def test_stale_version_is_a_conflict(clients, live_round):
    pending = clients['bob'].post(f'/api/rounds/{live_round.id}/transfer').get_json()
    res = clients['alice'].post(f'/api/rounds/{live_round.id}/transfer/respond',
                                json={'approve': True, 'version': pending['version'] - 1})
    assert res.status_code == 409
    assert res.get_json()['code'] == 'aborted'
    assert db.session.get(Round, live_round.id).marker_id == '1'


def test_marker_cannot_request_from_themselves(clients, live_round):
    res = clients['alice'].post(f'/api/rounds/{live_round.id}/transfer')
    assert res.status_code == 400


def test_non_player_cannot_request(flask_app, make_round):
    rnd = make_round()  # players p1..p3
    outsider = flask_app.test_client()
    register(outsider, 'dana')
    res = outsider.post(f'/api/rounds/{rnd.id}/transfer')
    assert res.status_code == 403


def test_unknown_round_is_not_found(clients):
    res = clients['bob'].post('/api/rounds/9999/transfer')
    assert res.status_code == 404
    assert res.get_json()['code'] == 'not-found'


def test_ghost_cannot_request(flask_app, live_round, dispatcher):
    with pytest.raises(InvalidArgument):
        request_marker_transfer(live_round, 'ghost-1', utcnow(), 300, dispatcher=dispatcher)
    assert live_round.marker_transfer_request is None
    assert dispatcher.sent == []


def test_abandoned_round_rejects_requests(flask_app, make_round, dispatcher):
    rnd = make_round(players=_players(), marker_id='1', status='abandoned', abandoned_at=utcnow())
    with pytest.raises(InvalidArgument):
        request_marker_transfer(rnd, '2', utcnow(), 300, dispatcher=dispatcher)


def test_expired_request_can_be_replaced(flask_app, live_round, dispatcher):
    start = utcnow()
    request_marker_transfer(live_round, '2', start, 300, dispatcher=dispatcher)
    later = start + timedelta(minutes=6)
    request_marker_transfer(live_round, '3', later, 300, dispatcher=dispatcher)
    assert live_round.transfer_requested_by == '3'
    assert live_round.transfer_expires_at == later + timedelta(seconds=300)
    assert dispatcher.recipients('marker_transfer_request') == ['1', '1']


def test_client_approval_wins_over_reconciler(clients, live_round):
    clients['bob'].post(f'/api/rounds/{live_round.id}/transfer')
    res = clients['alice'].post(f'/api/rounds/{live_round.id}/transfer/respond', json={'approve': True})
    assert res.status_code == 200

    # Long after the request would have expired, nothing is left to resolve
    assert resolve_orphaned_transfers(utcnow() + timedelta(hours=1), ReconcileWindows()) == 0
    rnd = db.session.get(Round, live_round.id)
    assert rnd.marker_id == '2'
    assert rnd.previous_marker_id == '1'


def test_marker_hands_off_scoring_directly(clients, live_round):
    res = clients['alice'].post(f'/api/rounds/{live_round.id}/transfer/handoff', json={'player_id': '3'})
    assert res.status_code == 200
    body = res.get_json()
    assert body['marker_id'] == '3'
    assert body['previous_marker_id'] == '1'
    assert [p['player_id'] for p in body['players'] if p['is_marker']] == ['3']

    note = Notification.query.filter_by(user_id='3', type='marker_transfer').one()
    assert note.to_dict()['payload']['status'] == 'handoff'


def test_handoff_drops_pending_request(clients, live_round):
    clients['bob'].post(f'/api/rounds/{live_round.id}/transfer')
    res = clients['alice'].post(f'/api/rounds/{live_round.id}/transfer/handoff', json={'player_id': '3'})
    assert res.get_json()['marker_transfer_request'] is None
    assert resolve_orphaned_transfers(utcnow() + timedelta(hours=1), ReconcileWindows()) == 0
    assert db.session.get(Round, live_round.id).marker_id == '3'


@pytest.mark.parametrize('target, status', [
    ('ghost-1', 400),
    ('99', 400),
    (None, 400),
    ('1', 400),
])
def test_handoff_rejects_ineligible_targets(clients, live_round, target, status):
    res = clients['alice'].post(f'/api/rounds/{live_round.id}/transfer/handoff', json={'player_id': target})
    assert res.status_code == status
    assert res.get_json()['code'] == 'invalid-argument'
    assert db.session.get(Round, live_round.id).marker_id == '1'


def test_only_marker_can_hand_off(clients, live_round):
    res = clients['bob'].post(f'/api/rounds/{live_round.id}/transfer/handoff', json={'player_id': '2'})
    assert res.status_code == 403
    assert db.session.get(Round, live_round.id).marker_id == '1'


def test_handoff_with_stale_version_is_a_conflict(clients, live_round):
    version = live_round.version
    res = clients['alice'].post(f'/api/rounds/{live_round.id}/transfer/handoff',
                                json={'player_id': '2', 'version': version + 1})
    assert res.status_code == 409
    assert res.get_json()['code'] == 'aborted'


@pytest.mark.parametrize('route, body', [
    ('transfer/respond', {'approve': True, 'version': 'latest'}),
    ('transfer/handoff', {'player_id': '2', 'version': 'latest'}),
    ('transfer/handoff', {'player_id': '2', 'version': [1]}),
])
def test_non_numeric_version_is_invalid(clients, live_round, route, body):
    clients['bob'].post(f'/api/rounds/{live_round.id}/transfer')
    res = clients['alice'].post(f'/api/rounds/{live_round.id}/{route}', json=body)
    assert res.status_code == 400
    assert res.get_json()['code'] == 'invalid-argument'
    assert db.session.get(Round, live_round.id).marker_id == '1'


def test_request_racing_another_writer_is_a_conflict(clients, live_round, monkeypatch):
    def racing_request(*args, **kwargs):
        raise StaleDataError("UPDATE statement on table 'round' expected to update 1 row(s); 0 were matched.")

    monkeypatch.setattr(rounds_api, 'request_marker_transfer', racing_request)
    res = clients['bob'].post(f'/api/rounds/{live_round.id}/transfer')
    assert res.status_code == 409
    assert res.get_json()['code'] == 'aborted'
