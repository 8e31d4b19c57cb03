"""
AUTOMATION ROUTES
=================

Control surface for officials:
- Trigger a rule group now
- Scheduler status (last / next run per group)
- Recent automation log entries
"""

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user

from chama.models import ActionType
from chama.services.automation_service import (
    trigger_rules, get_status, recent_logs
)
from chama.services.ledger_store import LedgerError
from chama.services.rule_engine import RuleGroup
from chama.services.scheduler import SchedulerBusyError

automation_bp = Blueprint('automation', __name__, url_prefix='/automation')


def _official_required():
    """Returns an error response unless the current user is a group official."""
    if current_app.config.get('LOGIN_DISABLED'):
        return None
    if not current_user.is_official():
        return jsonify({'error': 'Only group officials can run automation'}), 403
    return None


# ============== TRIGGER ==============
@automation_bp.route('/trigger/<group>', methods=['POST'])
@login_required
def trigger(group):
    denied = _official_required()
    if denied:
        return denied

    try:
        group = RuleGroup(group)
    except ValueError:
        return jsonify({'error': f'Unknown rule group {group!r}'}), 404

    try:
        record = trigger_rules(group)
    except SchedulerBusyError as e:
        return jsonify({'error': str(e)}), 409
    except LedgerError as e:
        return jsonify({'error': f'Ledger store error: {str(e)}'}), 503

    # store unreachable at batch start
    status_code = 503 if record.error else 200
    return jsonify({
        'message': f'{group.value.capitalize()} rules executed',
        'run': record.to_dict(),
        'outcomes': {run.rule: [o.to_dict() for o in run.outcomes] for run in record.runs},
    }), status_code


# ============== STATUS ==============
@automation_bp.route('/status')
@login_required
def status():
    denied = _official_required()
    if denied:
        return denied
    return jsonify(get_status())


# ============== LOGS ==============
@automation_bp.route('/logs')
@login_required
def logs():
    denied = _official_required()
    if denied:
        return denied

    limit = max(1, min(request.args.get('limit', 50, type=int), 500))
    action_type = request.args.get('action_type')
    member_id = request.args.get('member_id', type=int)

    if action_type and action_type not in [a.value for a in ActionType]:
        return jsonify({'error': f'Unknown action type {action_type!r}'}), 400

    return jsonify({'logs': recent_logs(limit=limit, action_type=action_type, member_id=member_id)})
