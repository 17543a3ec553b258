from flask import Blueprint, jsonify
from flask_login import login_required, current_user

from fairway import db
from fairway.models import Notification, utcnow


notifications = Blueprint('notifications', __name__)


@notifications.route('', methods=['GET'])
@login_required
def list_notifications():
    """Unexpired notifications for the signed-in user, newest first."""
    now = utcnow()
    notes = (
        Notification.query
        .filter(Notification.user_id == current_user.player_id)
        .filter((Notification.expires_at.is_(None)) | (Notification.expires_at > now))
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .all()
    )
    return jsonify([n.to_dict() for n in notes])


@notifications.route('/<int:notification_id>/read', methods=['POST'])
@login_required
def mark_read(notification_id):
    note = Notification.query.filter_by(id=notification_id, user_id=current_user.player_id).first_or_404()
    note.read = True
    db.session.commit()
    return jsonify(note.to_dict())
