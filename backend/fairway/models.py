from fairway import db, bcrypt
from flask_login import UserMixin
from datetime import datetime, timezone
import json


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _load_json(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except Exception:
        return default


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(128), nullable=True)
    password_hash = db.Column(db.String(256), nullable=False)

    @property
    def player_id(self) -> str:
        return str(self.id)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'player_id': self.player_id,
            'username': self.username,
            'display_name': self.display_name or self.username,
        }


class Outing(db.Model):
    __tablename__ = 'outing'
    id = db.Column(db.Integer, primary_key=True)
    organizer_id = db.Column(db.String(64), nullable=False, index=True)
    organizer_name = db.Column(db.String(128), nullable=True)
    status = db.Column(db.String(32), default='live', nullable=False)  # live, complete
    parent_type = db.Column(db.String(32), nullable=False, default='casual')
    parent_id = db.Column(db.String(64), nullable=True)
    course_id = db.Column(db.Integer, nullable=False)
    course_name = db.Column(db.String(128), nullable=False)
    hole_count = db.Column(db.Integer, nullable=False)
    nine_hole_side = db.Column(db.String(8), nullable=True)
    format_id = db.Column(db.String(64), nullable=True)
    group_size = db.Column(db.Integer, nullable=True)
    region_key = db.Column(db.String(64), nullable=True)
    location = db.Column(db.Text, nullable=True)  # JSON object
    roster = db.Column(db.Text, nullable=False, default='[]')  # JSON-encoded list of players
    groups = db.Column(db.Text, nullable=False, default='[]')  # JSON-encoded list of groups
    round_ids = db.Column(db.Text, nullable=False, default='[]')  # JSON-encoded list of round ids
    groups_complete = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    launched_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    def roster_list(self):
        return _load_json(self.roster, [])

    def group_list(self):
        return _load_json(self.groups, [])

    def set_groups(self, groups):
        self.groups = json.dumps(groups)

    def round_id_list(self):
        return _load_json(self.round_ids, [])

    def to_dict(self):
        return {
            'id': self.id,
            'organizer_id': self.organizer_id,
            'organizer_name': self.organizer_name,
            'status': self.status,
            'parent_type': self.parent_type,
            'parent_id': self.parent_id,
            'course_id': self.course_id,
            'course_name': self.course_name,
            'hole_count': self.hole_count,
            'nine_hole_side': self.nine_hole_side,
            'format_id': self.format_id,
            'group_size': self.group_size,
            'region_key': self.region_key,
            'location': _load_json(self.location, None),
            'roster': self.roster_list(),
            'groups': self.group_list(),
            'round_ids': self.round_id_list(),
            'groups_complete': self.groups_complete,
            'created_at': _iso(self.created_at),
            'launched_at': _iso(self.launched_at),
            'completed_at': _iso(self.completed_at),
        }


class Round(db.Model):
    __tablename__ = 'round'
    id = db.Column(db.Integer, primary_key=True)
    marker_id = db.Column(db.String(64), nullable=False, index=True)
    status = db.Column(db.String(32), default='live', nullable=False, index=True)  # live, abandoned, complete
    course_id = db.Column(db.Integer, nullable=False)
    course_name = db.Column(db.String(128), nullable=False)
    hole_count = db.Column(db.Integer, nullable=False)
    nine_hole_side = db.Column(db.String(8), nullable=True)
    format_id = db.Column(db.String(64), nullable=True)
    round_type = db.Column(db.String(32), nullable=False, default='on_premise')
    privacy = db.Column(db.String(32), nullable=False, default='public')
    region_key = db.Column(db.String(64), nullable=True)
    location = db.Column(db.Text, nullable=True)  # JSON object
    # Immutable player snapshot taken at launch, JSON-encoded
    players = db.Column(db.Text, nullable=False, default='[]')
    # Hole layout, JSON-encoded lists aligned with playing_order
    playing_order = db.Column(db.Text, nullable=False, default='[]')
    hole_pars = db.Column(db.Text, nullable=False, default='[]')
    hole_details = db.Column(db.Text, nullable=False, default='[]')
    starting_hole = db.Column(db.Integer, nullable=False, default=1)
    current_hole = db.Column(db.Integer, nullable=False, default=1)
    started_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    abandoned_at = db.Column(db.DateTime, nullable=True, index=True)
    abandon_reason = db.Column(db.String(64), nullable=True)
    previous_marker_id = db.Column(db.String(64), nullable=True)
    marker_transferred_at = db.Column(db.DateTime, nullable=True)
    # Embedded marker transfer request; all null when there is none
    transfer_requested_by = db.Column(db.String(64), nullable=True)
    transfer_requested_by_name = db.Column(db.String(128), nullable=True)
    transfer_requested_at = db.Column(db.DateTime, nullable=True)
    transfer_status = db.Column(db.String(16), nullable=True, index=True)  # pending
    transfer_expires_at = db.Column(db.DateTime, nullable=True)
    outing_id = db.Column(db.Integer, db.ForeignKey('outing.id'), nullable=True, index=True)
    group_id = db.Column(db.String(64), nullable=True)
    group_name = db.Column(db.String(128), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    messages = db.relationship('RoundMessage', backref='round', lazy='dynamic', passive_deletes=True)

    __mapper_args__ = {'version_id_col': version}

    def player_list(self):
        return _load_json(self.players, [])

    def set_players(self, players):
        self.players = json.dumps(players)

    def find_player(self, player_id):
        for p in self.player_list():
            if p.get('player_id') == player_id:
                return p
        return None

    @property
    def marker_transfer_request(self):
        if not self.transfer_status:
            return None
        return {
            'requested_by': self.transfer_requested_by,
            'requested_by_name': self.transfer_requested_by_name,
            'requested_at': _iso(self.transfer_requested_at),
            'status': self.transfer_status,
            'expires_at': _iso(self.transfer_expires_at),
        }

    def clear_transfer_request(self):
        self.transfer_requested_by = None
        self.transfer_requested_by_name = None
        self.transfer_requested_at = None
        self.transfer_status = None
        self.transfer_expires_at = None

    def to_dict(self):
        return {
            'id': self.id,
            'version': self.version,
            'marker_id': self.marker_id,
            'status': self.status,
            'course_id': self.course_id,
            'course_name': self.course_name,
            'hole_count': self.hole_count,
            'nine_hole_side': self.nine_hole_side,
            'format_id': self.format_id,
            'round_type': self.round_type,
            'is_simulator': self.round_type == 'simulator',
            'privacy': self.privacy,
            'region_key': self.region_key,
            'location': _load_json(self.location, None),
            'players': self.player_list(),
            'playing_order': _load_json(self.playing_order, []),
            'hole_pars': _load_json(self.hole_pars, []),
            'hole_details': _load_json(self.hole_details, []),
            'starting_hole': self.starting_hole,
            'current_hole': self.current_hole,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'abandoned_at': _iso(self.abandoned_at),
            'abandon_reason': self.abandon_reason,
            'previous_marker_id': self.previous_marker_id,
            'marker_transferred_at': _iso(self.marker_transferred_at),
            'marker_transfer_request': self.marker_transfer_request,
            'outing_id': self.outing_id,
            'group_id': self.group_id,
            'group_name': self.group_name,
        }


class RoundMessage(db.Model):
    __tablename__ = 'round_message'
    id = db.Column(db.Integer, primary_key=True)
    round_id = db.Column(db.Integer, db.ForeignKey('round.id'), nullable=False, index=True)
    sender_id = db.Column(db.String(64), nullable=False)
    sender_name = db.Column(db.String(128), nullable=True)
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    reactions = db.relationship('MessageReaction', backref='message', lazy='dynamic', passive_deletes=True)

    def to_dict(self):
        return {
            'id': self.id,
            'round_id': self.round_id,
            'sender_id': self.sender_id,
            'sender_name': self.sender_name,
            'body': self.body,
            'created_at': _iso(self.created_at),
            'reactions': [r.to_dict() for r in self.reactions],
        }


class MessageReaction(db.Model):
    __tablename__ = 'message_reaction'
    id = db.Column(db.Integer, primary_key=True)
    message_id = db.Column(db.Integer, db.ForeignKey('round_message.id'), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False)
    emoji = db.Column(db.String(16), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {'id': self.id, 'user_id': self.user_id, 'emoji': self.emoji}


class Notification(db.Model):
    __tablename__ = 'notification'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    type = db.Column(db.String(64), nullable=False)
    actor_id = db.Column(db.String(64), nullable=True)
    actor_name = db.Column(db.String(128), nullable=True)
    message = db.Column(db.Text, nullable=True)
    payload = db.Column(db.Text, nullable=False, default='{}')  # JSON object
    read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'type': self.type,
            'actor_id': self.actor_id,
            'actor_name': self.actor_name or 'System',
            'message': self.message,
            'payload': _load_json(self.payload, {}),
            'read': self.read,
            'created_at': _iso(self.created_at),
            'expires_at': _iso(self.expires_at),
        }


# Child record collections per parent table: (child model, foreign key column).
# Purging a parent must empty these first, deepest level first.
CHILD_COLLECTIONS = {
    'round': [(RoundMessage, 'round_id')],
    'round_message': [(MessageReaction, 'message_id')],
}


def child_collections(model):
    return CHILD_COLLECTIONS.get(model.__tablename__, [])
