from datetime import datetime, timedelta
from typing import Optional

from flask import current_app

from fairway import db, socketio
from fairway.models import Round
from fairway.services.notifications import NotificationDispatcher
from .errors import Conflict, InvalidArgument, PermissionDenied


def apply_marker_transfer(rnd: Round, new_marker_id: str, now: datetime) -> None:
    """Make ``new_marker_id`` the only marker and clear the pending request.

    Caller commits. The round's version column turns the commit into a
    compare-and-swap against whatever version was loaded.
    """
    players = rnd.player_list()
    for p in players:
        p['is_marker'] = p.get('player_id') == new_marker_id
    rnd.set_players(players)
    if rnd.marker_id != new_marker_id:
        rnd.previous_marker_id = rnd.marker_id
        rnd.marker_id = new_marker_id
        rnd.marker_transferred_at = now
    rnd.clear_transfer_request()


def _check_version(rnd: Round, expected_version: Optional[int]) -> None:
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise InvalidArgument("version must be an integer.")
    if expected != rnd.version:
        raise Conflict(f"Round {rnd.id} changed since it was read (version {rnd.version}).")


def request_marker_transfer(rnd: Round, requester_id: str, now: datetime, ttl_sec: int,
                            dispatcher: Optional[NotificationDispatcher] = None) -> Round:
    if rnd.status != 'live':
        raise InvalidArgument("Only live rounds accept scorer transfer requests.")
    requester = rnd.find_player(requester_id)
    if requester is None:
        raise PermissionDenied("You are not a player in this round.")
    if requester.get('is_ghost'):
        raise InvalidArgument("Guest players cannot keep score.")
    if requester_id == rnd.marker_id:
        raise InvalidArgument("You are already the scorer for this round.")
    if rnd.transfer_status == 'pending' and rnd.transfer_expires_at and rnd.transfer_expires_at > now:
        raise InvalidArgument("A scorer transfer request is already pending.")

    rnd.transfer_requested_by = requester_id
    rnd.transfer_requested_by_name = requester.get('display_name')
    rnd.transfer_requested_at = now
    rnd.transfer_status = 'pending'
    rnd.transfer_expires_at = now + timedelta(seconds=ttl_sec)
    db.session.commit()
    current_app.logger.info(f"[transfer-request] round={rnd.id} requester={requester_id} marker={rnd.marker_id}")

    socketio.emit('round_update', {'round_id': rnd.id, 'status': rnd.status}, to=f"round:{rnd.id}", namespace='/ws')
    (dispatcher or NotificationDispatcher()).dispatch('marker_transfer_request', rnd.marker_id, {
        'round_id': rnd.id,
        'course_name': rnd.course_name,
        'actor_id': requester_id,
        'actor_name': requester.get('display_name'),
        'message': f"{requester.get('display_name')} wants to take over scoring at {rnd.course_name}",
    })
    return rnd


def respond_to_marker_transfer(rnd: Round, responder_id: str, approve: bool, now: datetime,
                               expected_version: Optional[int] = None,
                               dispatcher: Optional[NotificationDispatcher] = None) -> Round:
    if responder_id != rnd.marker_id:
        raise PermissionDenied("Only the current scorer can answer a transfer request.")
    if rnd.transfer_status != 'pending':
        raise InvalidArgument("There is no pending scorer transfer request.")
    _check_version(rnd, expected_version)

    requester_id = rnd.transfer_requested_by
    if approve and rnd.find_player(requester_id) is not None:
        apply_marker_transfer(rnd, requester_id, now)
        outcome = 'approved'
    else:
        rnd.clear_transfer_request()
        outcome = 'declined'
    db.session.commit()
    current_app.logger.info(f"[transfer-{outcome}] round={rnd.id} requester={requester_id}")

    socketio.emit('round_update', {'round_id': rnd.id, 'status': rnd.status}, to=f"round:{rnd.id}", namespace='/ws')
    (dispatcher or NotificationDispatcher()).dispatch('marker_transfer', requester_id, {
        'round_id': rnd.id,
        'course_name': rnd.course_name,
        'actor_id': responder_id,
        'status': outcome,
        'message': (f"You're now keeping score at {rnd.course_name}" if outcome == 'approved'
                    else f"Your request to keep score at {rnd.course_name} was declined"),
    })
    return rnd


def hand_off_marker(rnd: Round, marker_id: str, new_marker_id: str, now: datetime,
                    expected_version: Optional[int] = None,
                    dispatcher: Optional[NotificationDispatcher] = None) -> Round:
    """The current marker passes scoring straight to another on-platform player.

    Any pending transfer request is dropped along the way.
    """
    if rnd.status != 'live':
        raise InvalidArgument("Only live rounds can change scorer.")
    if marker_id != rnd.marker_id:
        raise PermissionDenied("Only the current scorer can hand off scoring.")
    target = rnd.find_player(new_marker_id)
    if target is None:
        raise InvalidArgument(f"Player {new_marker_id} is not in this round.")
    if target.get('is_ghost'):
        raise InvalidArgument("Guest players cannot keep score.")
    if new_marker_id == marker_id:
        raise InvalidArgument("You are already the scorer for this round.")
    _check_version(rnd, expected_version)

    apply_marker_transfer(rnd, new_marker_id, now)
    db.session.commit()
    current_app.logger.info(f"[transfer-handoff] round={rnd.id} from={marker_id} to={new_marker_id}")

    socketio.emit('round_update', {'round_id': rnd.id, 'status': rnd.status}, to=f"round:{rnd.id}", namespace='/ws')
    (dispatcher or NotificationDispatcher()).dispatch('marker_transfer', new_marker_id, {
        'round_id': rnd.id,
        'course_name': rnd.course_name,
        'actor_id': marker_id,
        'status': 'handoff',
        'message': f"You're now keeping score at {rnd.course_name}",
    })
    return rnd
