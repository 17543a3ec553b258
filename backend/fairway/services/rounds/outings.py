from datetime import datetime
from typing import Optional

from flask import current_app

from fairway import db
from fairway.models import Outing, Round, utcnow
from fairway.services.notifications import NotificationDispatcher


def record_round_completion(round_id: int, now: Optional[datetime] = None,
                            dispatcher: Optional[NotificationDispatcher] = None) -> Optional[Outing]:
    """Mark an outing group complete once the scoring subsystem completes its round.

    groups_complete is recounted from the group statuses so a repeated call
    for the same round changes nothing. When every group is complete the
    outing is closed and its on-platform players are told.
    Returns the outing, or None when the round is not a completed outing round.
    """
    rnd = db.session.get(Round, round_id)
    if not rnd or rnd.status != 'complete' or not rnd.outing_id:
        return None
    if not rnd.group_id:
        current_app.logger.warning(f"[outing-progress] round={round_id} has outing={rnd.outing_id} but no group")
        return None
    outing = db.session.get(Outing, rnd.outing_id)
    if not outing:
        current_app.logger.error(f"[outing-progress] outing={rnd.outing_id} not found for round={round_id}")
        return None

    now = now or utcnow()
    groups = outing.group_list()
    for g in groups:
        if g.get('group_id') == rnd.group_id:
            g['status'] = 'complete'
    outing.set_groups(groups)
    outing.groups_complete = sum(1 for g in groups if g.get('status') == 'complete')

    just_finished = outing.status != 'complete' and outing.groups_complete >= len(groups)
    if just_finished:
        outing.status = 'complete'
        outing.completed_at = now
    db.session.commit()
    current_app.logger.info(
        f"[outing-progress] outing={outing.id} complete={outing.groups_complete}/{len(groups)}"
    )

    if just_finished:
        dispatcher = dispatcher or NotificationDispatcher()
        for player in outing.roster_list():
            if player.get('is_ghost'):
                continue
            dispatcher.dispatch('outing_complete', player.get('player_id'), {
                'outing_id': outing.id,
                'course_name': outing.course_name,
                'actor_id': outing.organizer_id,
                'actor_name': outing.organizer_name,
                'message': f"Your outing at {outing.course_name} is complete",
            })
    return outing
