"""Periodic round reconciliation.

Three independent passes, each deriving its work from a fresh query:

- sweep_stale_rounds: live rounds started before the stale window are
  abandoned with reason ``stale_cleanup``.
- resolve_orphaned_transfers: pending marker transfer requests left
  unanswered past expiry plus a grace window are auto-approved.
- purge_abandoned_rounds: rounds abandoned before the purge window are
  deleted after their child records.

run_reconciler wraps each pass so one failing never stops the others.
Abandoned rounds never return to live.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from flask import current_app, has_app_context
from sqlalchemy.orm.exc import StaleDataError

from fairway import db, socketio
from fairway.models import Round, utcnow
from .batching import chunked, purge_child_collections
from .errors import TransientStoreError
from .transfers import apply_marker_transfer

STALE_REASON = 'stale_cleanup'


@dataclass(frozen=True)
class ReconcileWindows:
    stale_after: timedelta = timedelta(hours=12)
    orphan_grace: timedelta = timedelta(minutes=10)
    purge_after: timedelta = timedelta(hours=24)
    batch_size: int = 500

    @staticmethod
    def from_config(config) -> "ReconcileWindows":
        return ReconcileWindows(
            stale_after=timedelta(seconds=int(config.get('STALE_THRESHOLD_SEC', 12 * 60 * 60))),
            orphan_grace=timedelta(seconds=int(config.get('ORPHAN_GRACE_SEC', 10 * 60))),
            purge_after=timedelta(seconds=int(config.get('PURGE_THRESHOLD_SEC', 24 * 60 * 60))),
            batch_size=int(config.get('WRITE_BATCH_SIZE', 500)),
        )


def _emit_round_update(round_id: int, status: str) -> None:
    socketio.emit('round_update', {'round_id': round_id, 'status': status}, to=f"round:{round_id}", namespace='/ws')


def sweep_stale_rounds(now: datetime, windows: ReconcileWindows) -> int:
    """Abandon live rounds started before ``now - stale_after``. Returns how many were abandoned."""
    cutoff = now - windows.stale_after
    stale = (
        Round.query
        .filter(Round.status == 'live', Round.started_at < cutoff)
        .order_by(Round.id)
        .all()
    )
    if not stale:
        current_app.logger.info("[stale-sweep] no stale rounds")
        return 0

    current_app.logger.info(f"[stale-sweep] found={len(stale)} cutoff={cutoff.isoformat()}")
    abandoned = 0
    for batch in chunked(stale, windows.batch_size):
        ids = []
        try:
            for rnd in batch:
                # Rows expire after each batch commit; this reads the current status
                if rnd.status != 'live':
                    current_app.logger.info(f"[stale-sweep] round={rnd.id} now {rnd.status}, skipped")
                    continue
                hours_old = round((now - rnd.started_at).total_seconds() / 3600)
                current_app.logger.info(
                    f"[stale-sweep] abandon round={rnd.id} course={rnd.course_name} age={hours_old}h marker={rnd.marker_id}"
                )
                rnd.status = 'abandoned'
                rnd.abandoned_at = now
                rnd.abandon_reason = STALE_REASON
                ids.append(rnd.id)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            err = TransientStoreError('stale-sweep', f"batch={ids} error={exc}")
            current_app.logger.error(f"[stale-sweep-fail] {err}")
            continue
        abandoned += len(ids)
        for rid in ids:
            _emit_round_update(rid, 'abandoned')

    current_app.logger.info(f"[stale-sweep] abandoned={abandoned}")
    return abandoned


def resolve_orphaned_transfers(now: datetime, windows: ReconcileWindows) -> int:
    """Auto-approve pending transfer requests overdue by more than the grace window.

    Each round commits on its own. A round whose version moved underneath
    us (a client resolved the request first) is skipped.
    """
    pending = (
        Round.query
        .filter(Round.status == 'live', Round.transfer_status == 'pending')
        .order_by(Round.id)
        .all()
    )
    resolved = 0
    for rnd in pending:
        round_id = rnd.id
        if rnd.transfer_expires_at is None:
            current_app.logger.warning(f"[orphan-transfer] round={round_id} pending request has no expiry")
            continue
        overdue = now - rnd.transfer_expires_at
        if overdue <= windows.orphan_grace:
            continue

        requester_id = rnd.transfer_requested_by
        try:
            if rnd.find_player(requester_id) is None:
                rnd.clear_transfer_request()
                action = 'cleared'
            else:
                apply_marker_transfer(rnd, requester_id, now)
                action = 'approved'
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            current_app.logger.info(f"[orphan-transfer] round={round_id} changed concurrently, skipped")
            continue
        except Exception as exc:
            db.session.rollback()
            err = TransientStoreError('orphan-transfer', f"round={round_id} error={exc}")
            current_app.logger.error(f"[orphan-transfer-fail] {err}")
            continue

        resolved += 1
        current_app.logger.info(
            f"[orphan-transfer] round={round_id} {action} requester={requester_id} "
            f"overdue={int(overdue.total_seconds())}s"
        )
        _emit_round_update(round_id, 'live')
    return resolved


def purge_abandoned_rounds(now: datetime, windows: ReconcileWindows) -> int:
    """Delete rounds abandoned before ``now - purge_after`` together with their child records."""
    cutoff = now - windows.purge_after
    expired_ids = [
        rid for (rid,) in (
            db.session.query(Round.id)
            .filter(Round.status == 'abandoned', Round.abandoned_at < cutoff)
            .order_by(Round.id)
            .all()
        )
    ]
    if not expired_ids:
        current_app.logger.info("[purge] no expired abandoned rounds")
        return 0

    purged = 0
    for round_id in expired_ids:
        try:
            rnd = db.session.get(Round, round_id)
            if rnd is None or rnd.status != 'abandoned':
                continue
            children = purge_child_collections(rnd, windows.batch_size)
            db.session.delete(rnd)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            err = TransientStoreError('purge', f"round={round_id} error={exc}")
            current_app.logger.error(f"[purge-skip] {err}")
            continue
        purged += 1
        current_app.logger.info(f"[purge] round={round_id} children={children}")

    current_app.logger.info(f"[purge] purged={purged} of {len(expired_ids)}")
    return purged


PASSES = (
    ('stale_rounds', sweep_stale_rounds),
    ('orphaned_transfers', resolve_orphaned_transfers),
    ('abandoned_rounds', purge_abandoned_rounds),
)


def _run_passes(app, now: datetime, windows: ReconcileWindows) -> Dict[str, Optional[int]]:
    summary: Dict[str, Optional[int]] = {}
    for name, run_pass in PASSES:
        try:
            summary[name] = run_pass(now, windows)
        except Exception:
            db.session.rollback()
            app.logger.exception(f"[reconcile] pass={name} failed")
            summary[name] = None
    app.logger.info(f"[reconcile] finished at={now.isoformat()} summary={summary}")
    return summary


def run_reconciler(app, now: Optional[datetime] = None,
                   windows: Optional[ReconcileWindows] = None) -> Dict[str, Optional[int]]:
    """Run every pass once. A failed pass reports None and the next pass still runs."""
    now = now or utcnow()
    windows = windows or ReconcileWindows.from_config(app.config)
    if has_app_context():
        return _run_passes(app, now, windows)
    with app.app_context():
        return _run_passes(app, now, windows)
