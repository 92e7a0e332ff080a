from flask import Blueprint, jsonify, request, current_app

from ..access import require_admin
from ..identity import current_principal
from ..validation import parse_page
from . import json_body, pagination

bp = Blueprint('admin', __name__, url_prefix='/api/v1/admin')


# ==================== Users ====================

@bp.route('/users', methods=['GET'])
def list_users():
    page, limit = parse_page(request.args)
    users, total = current_app.users.list_users(
        current_principal(),
        role=request.args.get('role'),
        status=request.args.get('status'),
        search=request.args.get('search', '').strip() or None,
        page=page,
        limit=limit
    )
    return jsonify({
        'data': [u.to_dict(include_security=True) for u in users],
        'pagination': pagination(page, limit, total)
    })


@bp.route('/users/<int:user_id>', methods=['GET'])
def get_user(user_id: int):
    user = current_app.users.get_user(user_id, current_principal())
    return jsonify(user.to_dict(include_security=True))


@bp.route('/users/<int:user_id>/status', methods=['PUT'])
def update_user_status(user_id: int):
    user = current_app.users.transition_status(user_id, json_body().get('status'), current_principal())
    return jsonify({
        'message': f'User status updated to {user.status}',
        'user': user.to_dict(include_security=True)
    })


@bp.route('/users/<int:user_id>/approve', methods=['PUT'])
def approve_user(user_id: int):
    user = current_app.users.approve(user_id, current_principal())
    return jsonify({'message': 'User approved', 'user': user.to_dict(include_security=True)})


@bp.route('/users/<int:user_id>/reject', methods=['PUT'])
def reject_user(user_id: int):
    user = current_app.users.reject(user_id, current_principal())
    return jsonify({'message': 'User rejected', 'user': user.to_dict(include_security=True)})


@bp.route('/users/<int:user_id>/role', methods=['PUT'])
def change_user_role(user_id: int):
    user = current_app.users.change_role(user_id, json_body().get('role'), current_principal())
    return jsonify({
        'message': f'User role updated to {user.role}',
        'user': user.to_dict(include_security=True)
    })


# ==================== Audit ====================

@bp.route('/audit', methods=['GET'])
def audit_logs():
    require_admin(current_principal())
    page, limit = parse_page(request.args)
    return jsonify(current_app.audit.query(
        entity_type=request.args.get('entity_type'),
        entity_id=request.args.get('entity_id'),
        page=page,
        limit=limit
    ))


@bp.route('/users/<int:user_id>/activity', methods=['GET'])
def user_activity(user_id: int):
    require_admin(current_principal())
    page, limit = parse_page(request.args)
    return jsonify(current_app.audit.user_activity(user_id, page=page, limit=limit))
