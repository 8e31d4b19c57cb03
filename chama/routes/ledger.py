"""
LEDGER ROUTES
=============

JSON endpoints over members, savings, loans and fines, plus the
savings leaderboard and member stats.
Uses ledger_service for all writes.
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required

from chama.extensions import db
from chama.models import Member, Loan, Saving
from chama.services.ledger_service import (
    register_member, approve_member, reject_member, record_saving,
    create_loan, approve_loan, reject_loan, mark_loan_paid,
    add_manual_fine, pay_fine, list_fines, savings_leaderboard, member_stats,
    LedgerServiceError
)
from chama.services.ledger_store import LedgerError

ledger_bp = Blueprint('ledger', __name__, url_prefix='/api')


@ledger_bp.errorhandler(LedgerServiceError)
def handle_service_error(e):
    return jsonify({'error': str(e)}), 400


@ledger_bp.errorhandler(LedgerError)
def handle_store_error(e):
    return jsonify({'error': f'Ledger store error: {str(e)}'}), 503


def _payload():
    return request.get_json(silent=True) or {}


# ============== MEMBERS ==============
@ledger_bp.route('/members', methods=['GET'])
@login_required
def list_members():
    members = Member.query.order_by(Member.id).all()
    return jsonify([m.to_dict() for m in members])


@ledger_bp.route('/members', methods=['POST'])
@login_required
def add_member():
    data = _payload()
    member = register_member(
        member_code=data.get('member_code'),
        name=data.get('name'),
        email=data.get('email'),
        phone=data.get('phone'),
        role=data.get('role', 'member'),
        status=data.get('status', 'approved'),
        password=data.get('password'),
    )
    return jsonify(member.to_dict()), 201


@ledger_bp.route('/members/stats', methods=['GET'])
@login_required
def stats():
    return jsonify({'stats': member_stats()})


@ledger_bp.route('/leaderboard', methods=['GET'])
@login_required
def leaderboard():
    limit = max(1, min(request.args.get('limit', 10, type=int), 100))
    return jsonify({'leaderboard': savings_leaderboard(limit=limit)})


@ledger_bp.route('/members/<int:member_id>/approve', methods=['PUT'])
@login_required
def approve_member_route(member_id):
    return jsonify(approve_member(member_id).to_dict())


@ledger_bp.route('/members/<int:member_id>/reject', methods=['PUT'])
@login_required
def reject_member_route(member_id):
    return jsonify(reject_member(member_id).to_dict())


# ============== SAVINGS ==============
@ledger_bp.route('/members/<int:member_id>/savings', methods=['GET'])
@login_required
def member_savings(member_id):
    db.get_or_404(Member, member_id)
    savings = Saving.query.filter_by(member_id=member_id).order_by(Saving.timestamp.desc()).all()
    return jsonify([s.to_dict() for s in savings])


@ledger_bp.route('/savings', methods=['POST'])
@login_required
def add_saving():
    data = _payload()
    saving = record_saving(
        member_id=data.get('member_id'),
        amount=data.get('amount'),
        reference=data.get('reference'),
    )
    return jsonify(saving.to_dict()), 201


# ============== LOANS ==============
@ledger_bp.route('/loans', methods=['GET'])
@login_required
def list_loans():
    query = Loan.query
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)
    return jsonify([loan.to_dict() for loan in query.order_by(Loan.id).all()])


@ledger_bp.route('/loans', methods=['POST'])
@login_required
def request_loan():
    data = _payload()
    loan = create_loan(member_id=data.get('member_id'), amount=data.get('amount'))
    return jsonify(loan.to_dict()), 201


@ledger_bp.route('/loans/<int:loan_id>/approve', methods=['PUT'])
@login_required
def approve_loan_route(loan_id):
    return jsonify(approve_loan(loan_id).to_dict())


@ledger_bp.route('/loans/<int:loan_id>/reject', methods=['PUT'])
@login_required
def reject_loan_route(loan_id):
    return jsonify(reject_loan(loan_id).to_dict())


@ledger_bp.route('/loans/<int:loan_id>/pay', methods=['PUT'])
@login_required
def pay_loan_route(loan_id):
    return jsonify(mark_loan_paid(loan_id).to_dict())


# ============== FINES ==============
@ledger_bp.route('/fines', methods=['GET'])
@login_required
def fines():
    member_id = request.args.get('member_id', type=int)
    unpaid = request.args.get('unpaid', '').lower() in ('1', 'true', 'yes')
    return jsonify([f.to_dict() for f in list_fines(member_id=member_id, unpaid_only=unpaid)])


@ledger_bp.route('/fines', methods=['POST'])
@login_required
def add_fine():
    data = _payload()
    fine = add_manual_fine(
        member_id=data.get('member_id'),
        amount=data.get('amount'),
        reason=data.get('reason'),
    )
    return jsonify(fine.to_dict()), 201


@ledger_bp.route('/fines/<int:fine_id>/pay', methods=['PUT'])
@login_required
def pay_fine_route(fine_id):
    return jsonify(pay_fine(fine_id).to_dict())
