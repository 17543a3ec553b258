from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from sqlalchemy.orm.exc import StaleDataError

from fairway import db, socketio
from fairway.models import Round, RoundMessage, MessageReaction, utcnow
from fairway.services.rounds.errors import Conflict, InvalidArgument, NotFound, PermissionDenied
from fairway.services.rounds.transfers import (
    hand_off_marker,
    request_marker_transfer,
    respond_to_marker_transfer,
)


rounds = Blueprint('rounds', __name__)


def _get_round(round_id: int) -> Round:
    rnd = db.session.get(Round, round_id)
    if rnd is None:
        raise NotFound('round', round_id)
    return rnd


def _require_player(rnd: Round) -> dict:
    player = rnd.find_player(current_user.player_id)
    if player is None:
        raise PermissionDenied("You are not a player in this round.")
    return player


@rounds.route('/<int:round_id>', methods=['GET'])
@login_required
def get_round(round_id):
    return jsonify(_get_round(round_id).to_dict())


@rounds.route('/<int:round_id>/transfer', methods=['POST'])
@login_required
def request_transfer(round_id):
    """A non-marker player asks to take over scoring."""
    rnd = _get_round(round_id)
    ttl = int(current_app.config.get('TRANSFER_REQUEST_TTL_SEC', 300))
    try:
        request_marker_transfer(rnd, current_user.player_id, utcnow(), ttl)
    except StaleDataError:
        db.session.rollback()
        raise Conflict(f"Round {round_id} changed while requesting the transfer.")
    return jsonify(rnd.to_dict()), 201


@rounds.route('/<int:round_id>/transfer/respond', methods=['POST'])
@login_required
def respond_transfer(round_id):
    """The current marker approves or declines the pending request."""
    data = request.get_json(silent=True) or {}
    rnd = _get_round(round_id)
    try:
        respond_to_marker_transfer(
            rnd,
            current_user.player_id,
            bool(data.get('approve')),
            utcnow(),
            expected_version=data.get('version'),
        )
    except StaleDataError:
        db.session.rollback()
        raise Conflict(f"Round {round_id} changed while answering the transfer request.")
    return jsonify(rnd.to_dict())


@rounds.route('/<int:round_id>/transfer/handoff', methods=['POST'])
@login_required
def handoff_transfer(round_id):
    """The current marker hands scoring straight to another player."""
    data = request.get_json(silent=True) or {}
    rnd = _get_round(round_id)
    try:
        hand_off_marker(
            rnd,
            current_user.player_id,
            data.get('player_id'),
            utcnow(),
            expected_version=data.get('version'),
        )
    except StaleDataError:
        db.session.rollback()
        raise Conflict(f"Round {round_id} changed while handing off scoring.")
    return jsonify(rnd.to_dict())


@rounds.route('/<int:round_id>/messages', methods=['GET'])
@login_required
def list_messages(round_id):
    rnd = _get_round(round_id)
    _require_player(rnd)
    messages = rnd.messages.order_by(RoundMessage.created_at, RoundMessage.id).all()
    return jsonify([m.to_dict() for m in messages])


@rounds.route('/<int:round_id>/messages', methods=['POST'])
@login_required
def post_message(round_id):
    data = request.get_json(silent=True) or {}
    body = (data.get('body') or '').strip()
    if not body:
        raise InvalidArgument("Message body is required.")
    rnd = _get_round(round_id)
    player = _require_player(rnd)
    if rnd.status != 'live':
        raise InvalidArgument("Chat is closed for this round.")

    message = RoundMessage(
        round_id=rnd.id,
        sender_id=current_user.player_id,
        sender_name=player.get('display_name'),
        body=body,
    )
    db.session.add(message)
    db.session.commit()
    socketio.emit('round_message', message.to_dict(), to=f"round:{rnd.id}", namespace='/ws')
    return jsonify(message.to_dict()), 201


@rounds.route('/<int:round_id>/messages/<int:message_id>/reactions', methods=['POST'])
@login_required
def react_to_message(round_id, message_id):
    data = request.get_json(silent=True) or {}
    emoji = (data.get('emoji') or '').strip()
    if not emoji:
        raise InvalidArgument("Reaction emoji is required.")
    rnd = _get_round(round_id)
    _require_player(rnd)
    message = RoundMessage.query.filter_by(id=message_id, round_id=rnd.id).first()
    if message is None:
        raise NotFound('message', message_id)

    reaction = MessageReaction(message_id=message.id, user_id=current_user.player_id, emoji=emoji)
    db.session.add(reaction)
    db.session.commit()
    return jsonify(message.to_dict()), 201
