"""Outing launch: validate, create rounds, create the outing, backfill, invite.

Rounds and the outing each want the other's id. Rounds are written first
with ``outing_id`` unset, then the outing is written with the round ids,
then the rounds are backfilled. Once the rounds and the outing exist the
launch has succeeded; backfill and invites are best-effort and are only
logged when they fail.
"""
import json
from typing import Dict, List, Optional, Tuple

from flask import current_app

from fairway import db
from fairway.models import Outing, Round, utcnow
from fairway.services.notifications import NotificationDispatcher
from .batching import chunked
from .errors import (
    InternalError,
    InvalidArgument,
    PartialEffectError,
    RoundServiceError,
    Unauthenticated,
)

PARENT_TYPES = ('casual', 'league', 'invitational', 'tour')
HOLE_COUNTS = (9, 18)
DEFAULT_PAR = 4


def build_playing_order(starting_hole: int, total_holes: int, base_hole: int = 1) -> List[int]:
    """Hole numbers in the order a group plays them, wrapping after the last hole."""
    return [((starting_hole - base_hole + i) % total_holes) + base_hole for i in range(total_holes)]


def base_hole_for(hole_count: int, nine_hole_side: Optional[str]) -> int:
    return 10 if hole_count == 9 and nine_hole_side == 'back' else 1


def build_hole_layout(tee: Optional[dict], playing_order: List[int]) -> Tuple[List[int], List[dict]]:
    """Pars and hole details for each entry of ``playing_order`` from a tee's hole list."""
    holes = (tee or {}).get('holes') or []
    pars, details = [], []
    for hole_number in playing_order:
        hole = holes[hole_number - 1] if 0 < hole_number <= len(holes) else {}
        hole = hole or {}
        par = hole.get('par') or DEFAULT_PAR
        pars.append(par)
        details.append({
            'par': par,
            'yardage': hole.get('yardage') or 0,
            'handicap': hole.get('handicap'),
        })
    return pars, details


def validate_launch_request(data: dict, min_roster: int = 2) -> None:
    """Raise InvalidArgument naming the first violated precondition."""
    if not isinstance(data, dict):
        raise InvalidArgument("Launch request must be a JSON object.")
    roster = data.get('roster') or []
    groups = data.get('groups') or []
    if not isinstance(roster, list) or not all(isinstance(p, dict) for p in roster):
        raise InvalidArgument("roster must be a list of player objects.")
    if not isinstance(groups, list) or not all(isinstance(g, dict) for g in groups):
        raise InvalidArgument("groups must be a list of group objects.")
    for player in roster:
        if not isinstance(player.get('player_id'), str) or not player['player_id']:
            raise InvalidArgument("Every roster player needs a player_id string.")
        if player.get('tee') is not None and not isinstance(player['tee'], dict):
            raise InvalidArgument(f"roster player {player['player_id']} tee must be an object.")
    for group in groups:
        player_ids = group.get('player_ids') or []
        if not isinstance(player_ids, list) or not all(isinstance(pid, str) for pid in player_ids):
            raise InvalidArgument(f"group {group.get('group_id')} player_ids must be a list of strings.")
        if group.get('marker_id') is not None and not isinstance(group['marker_id'], str):
            raise InvalidArgument(f"group {group.get('group_id')} marker_id must be a string.")
    if len(roster) < min_roster:
        raise InvalidArgument(f"Outing requires at least {min_roster} players.")
    if not groups:
        raise InvalidArgument("Outing requires at least 1 group.")
    if not data.get('course_id') or not data.get('course_name'):
        raise InvalidArgument("Course info is required.")

    hole_count = data.get('hole_count')
    if hole_count not in HOLE_COUNTS:
        raise InvalidArgument("Hole count must be 9 or 18.")
    parent_type = data.get('parent_type') or 'casual'
    if parent_type not in PARENT_TYPES:
        raise InvalidArgument(f"Unknown outing type '{parent_type}'.")

    by_id = {p.get('player_id'): p for p in roster}
    base = base_hole_for(hole_count, data.get('nine_hole_side'))
    assigned = set()
    for group in groups:
        name = group.get('name') or group.get('group_id') or 'Unnamed'
        marker_id = group.get('marker_id')
        player_ids = group.get('player_ids') or []
        if not marker_id:
            raise InvalidArgument(f'Group "{name}" has no designated scorer.')
        marker = by_id.get(marker_id)
        if marker is None:
            raise InvalidArgument(f'Group "{name}" scorer is not on the roster.')
        if marker.get('is_ghost'):
            raise InvalidArgument(f'Group "{name}" scorer cannot be a guest player.')
        if marker_id not in player_ids:
            raise InvalidArgument(f'Group "{name}" scorer is not in the group.')
        for pid in player_ids:
            if pid not in by_id:
                raise InvalidArgument(f'Group "{name}" player {pid} is not on the roster.')
            if pid in assigned:
                raise InvalidArgument(f'Player {pid} is assigned to more than one group.')
            assigned.add(pid)
        starting_hole = group.get('starting_hole')
        if starting_hole is None:
            continue
        try:
            starting_hole = int(starting_hole)
        except (TypeError, ValueError):
            starting_hole = None
        if starting_hole is None or not (base <= starting_hole < base + hole_count):
            raise InvalidArgument(
                f'Group "{name}" starting hole must be between {base} and {base + hole_count - 1}.'
            )


def _round_player(player: dict, marker_id: str) -> dict:
    return {
        'player_id': player.get('player_id'),
        'display_name': player.get('display_name'),
        'avatar': player.get('avatar'),
        'is_ghost': bool(player.get('is_ghost')),
        'is_marker': player.get('player_id') == marker_id,
        'handicap_index': player.get('handicap_index'),
        'course_handicap': player.get('course_handicap'),
        'tee_name': player.get('tee_name'),
        'slope_rating': player.get('slope_rating'),
        'course_rating': player.get('course_rating'),
        'team_id': None,
        'contact_info': player.get('contact_info'),
        'contact_type': player.get('contact_type'),
    }


def _roster_entry(player: dict) -> dict:
    return {
        'player_id': player.get('player_id'),
        'display_name': player.get('display_name'),
        'avatar': player.get('avatar'),
        'is_ghost': bool(player.get('is_ghost')),
        'handicap_index': player.get('handicap_index'),
        'course_handicap': player.get('course_handicap'),
        'tee_name': player.get('tee_name'),
        'slope_rating': player.get('slope_rating'),
        'course_rating': player.get('course_rating'),
        'group_id': player.get('group_id'),
        'is_group_marker': bool(player.get('is_group_marker')),
        'contact_info': player.get('contact_info'),
        'contact_type': player.get('contact_type'),
    }


def _create_rounds(data: dict, now) -> Tuple[List[Round], List[dict]]:
    """Write one live round per group in a single commit."""
    hole_count = data['hole_count']
    nine_hole_side = data.get('nine_hole_side') if hole_count == 9 else None
    base = base_hole_for(hole_count, nine_hole_side)
    by_id = {p.get('player_id'): p for p in data['roster']}
    location = json.dumps(data['location']) if data.get('location') else None
    round_type = data.get('round_type') or 'on_premise'

    created, groups = [], []
    for group in data['groups']:
        marker = by_id[group['marker_id']]
        starting_hole = int(group.get('starting_hole') or base)
        playing_order = build_playing_order(starting_hole, hole_count, base)
        hole_pars, hole_details = build_hole_layout(marker.get('tee'), playing_order)
        group_players = [by_id[pid] for pid in group['player_ids']]

        rnd = Round(
            marker_id=group['marker_id'],
            status='live',
            course_id=data['course_id'],
            course_name=data['course_name'],
            hole_count=hole_count,
            nine_hole_side=nine_hole_side,
            format_id=data.get('format_id'),
            round_type=round_type,
            privacy=data.get('privacy') or 'public',
            region_key=data.get('region_key'),
            location=location,
            players=json.dumps([_round_player(p, group['marker_id']) for p in group_players]),
            playing_order=json.dumps(playing_order),
            hole_pars=json.dumps(hole_pars),
            hole_details=json.dumps(hole_details),
            starting_hole=starting_hole,
            current_hole=1,
            started_at=now,
            outing_id=None,
            group_id=group.get('group_id'),
            group_name=group.get('name'),
        )
        db.session.add(rnd)
        created.append(rnd)
        groups.append(group)

    db.session.commit()

    groups_with_rounds = []
    for group, rnd in zip(groups, created):
        groups_with_rounds.append({
            'group_id': group.get('group_id'),
            'name': group.get('name'),
            'player_ids': list(group['player_ids']),
            'marker_id': group['marker_id'],
            'round_id': rnd.id,
            'starting_hole': rnd.starting_hole,
            'status': 'live',
        })
        current_app.logger.info(f"[launch-round] round={rnd.id} group={group.get('name')} marker={group['marker_id']}")
    return created, groups_with_rounds


def _create_outing(data: dict, caller_id: str, organizer_name: str, groups: List[dict],
                   round_ids: List[int], now) -> Outing:
    hole_count = data['hole_count']
    outing = Outing(
        organizer_id=caller_id,
        organizer_name=organizer_name,
        status='live',
        parent_type=data.get('parent_type') or 'casual',
        parent_id=data.get('parent_id'),
        course_id=data['course_id'],
        course_name=data['course_name'],
        hole_count=hole_count,
        nine_hole_side=data.get('nine_hole_side') if hole_count == 9 else None,
        format_id=data.get('format_id'),
        group_size=data.get('group_size'),
        region_key=data.get('region_key'),
        location=json.dumps(data['location']) if data.get('location') else None,
        roster=json.dumps([_roster_entry(p) for p in data['roster']]),
        groups=json.dumps(groups),
        round_ids=json.dumps(round_ids),
        groups_complete=0,
        created_at=now,
        launched_at=now,
    )
    db.session.add(outing)
    db.session.commit()
    return outing


def backfill_outing_refs(outing_id: int, round_ids: List[int], batch_size: int = 500) -> int:
    """Point each round at its outing. Safe to re-run; already-linked rounds are left alone."""
    updated = 0
    for chunk in chunked(round_ids, batch_size):
        pending = Round.query.filter(Round.id.in_(chunk), Round.outing_id.is_(None)).all()
        for rnd in pending:
            rnd.outing_id = outing_id
        db.session.commit()
        updated += len(pending)
    return updated


def _send_invites(dispatcher, data: dict, caller_id: str, organizer_name: str,
                  organizer_avatar, groups: List[dict], outing_id: int) -> int:
    """Invite group markers and the other on-platform players. Returns the failure count."""
    by_id = {p.get('player_id'): p for p in data['roster']}
    course_name = data['course_name']
    failures = 0

    def _send(recipient_id, round_id, message, navigation_target):
        payload = {
            'round_id': round_id,
            'outing_id': outing_id,
            'course_name': course_name,
            'actor_id': caller_id,
            'actor_name': organizer_name,
            'actor_avatar': organizer_avatar,
            'message': message,
            'navigation_target': navigation_target,
        }
        try:
            delivered = dispatcher.dispatch('round_invite', recipient_id, payload)
        except Exception as exc:
            delivered = False
            err = PartialEffectError('invite', f"recipient={recipient_id} error={exc}")
            current_app.logger.warning(f"[launch-notify-fail] {err}")
        return bool(delivered)

    for group in groups:
        if group['marker_id'] == caller_id:
            continue
        marker = by_id.get(group['marker_id'])
        if not marker or marker.get('is_ghost'):
            continue
        message = (f"{organizer_name} started a group outing at {course_name}. "
                   f"You're scoring for {group['name']}!")
        if not _send(group['marker_id'], group['round_id'], message, 'scoring'):
            failures += 1

    marker_ids = {g['marker_id'] for g in groups}
    for player in data['roster']:
        pid = player.get('player_id')
        if player.get('is_ghost') or pid == caller_id or pid in marker_ids:
            continue
        player_group = next((g for g in groups if pid in g['player_ids']), None)
        if not player_group:
            continue
        message = f"{organizer_name} started a group outing at {course_name}. You're in {player_group['name']}."
        if not _send(pid, player_group['round_id'], message, 'round'):
            failures += 1
    return failures


def launch_outing(caller_id: Optional[str], data: dict,
                  dispatcher: Optional[NotificationDispatcher] = None) -> Dict:
    """Create the rounds and outing for a launch request.

    Returns ``{'outing_id', 'round_ids', 'organizer_round_id'}``.
    Raises Unauthenticated, InvalidArgument (nothing written) or
    InternalError (wrapping an unexpected failure of the primary writes).
    """
    if not caller_id:
        raise Unauthenticated()
    data = data or {}
    validate_launch_request(data, int(current_app.config.get('MIN_ROSTER_SIZE', 2)))

    dispatcher = dispatcher or NotificationDispatcher()
    batch_size = int(current_app.config.get('WRITE_BATCH_SIZE', 500))
    organizer = next((p for p in data['roster'] if p.get('player_id') == caller_id), None)
    organizer_name = (organizer or {}).get('display_name') or 'Unknown'
    now = utcnow()

    current_app.logger.info(
        f"[launch] course={data['course_name']} players={len(data['roster'])} groups={len(data['groups'])}"
    )

    try:
        rounds, groups = _create_rounds(data, now)
        round_ids = [r.id for r in rounds]
        outing = _create_outing(data, caller_id, organizer_name, groups, round_ids, now)
        outing_id = outing.id
    except RoundServiceError:
        raise
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(f"[launch-fail] course={data.get('course_name')}")
        raise InternalError("Failed to launch outing. Please try again.") from exc

    current_app.logger.info(f"[launch] outing={outing_id} rounds={round_ids}")

    try:
        linked = backfill_outing_refs(outing_id, round_ids, batch_size)
        current_app.logger.info(f"[launch-backfill] outing={outing_id} linked={linked}")
    except Exception as exc:
        db.session.rollback()
        err = PartialEffectError('backfill', f"outing={outing_id} error={exc}")
        current_app.logger.warning(f"[launch-backfill-fail] {err}")

    failures = _send_invites(dispatcher, data, caller_id, organizer_name,
                             (organizer or {}).get('avatar'), groups, outing_id)
    if failures:
        current_app.logger.warning(f"[launch-notify] outing={outing_id} failed_invites={failures}")

    organizer_round_id = next((g['round_id'] for g in groups if g['marker_id'] == caller_id), round_ids[0])
    return {
        'outing_id': outing_id,
        'round_ids': round_ids,
        'organizer_round_id': organizer_round_id,
    }
