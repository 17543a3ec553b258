from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from fairway.models import Outing
from fairway.services.rounds.launcher import launch_outing


outings = Blueprint('outings', __name__)


@outings.route('/launch', methods=['POST'])
@login_required
def launch():
    """Create one round per group plus the outing tying them together."""
    data = request.get_json(silent=True) or {}
    result = launch_outing(current_user.player_id, data)
    return jsonify(result), 201


@outings.route('/<int:outing_id>', methods=['GET'])
@login_required
def get_outing(outing_id):
    outing = Outing.query.filter_by(id=outing_id).first_or_404()
    return jsonify(outing.to_dict())
