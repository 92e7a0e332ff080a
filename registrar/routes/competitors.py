from flask import Blueprint, jsonify, current_app

from ..access import is_admin
from ..identity import current_principal
from ..validation import UNSET
from . import json_body

bp = Blueprint('competitors', __name__, url_prefix='/api/v1/competitors')


@bp.route('/<int:competitor_id>', methods=['GET'])
def get_competitor(competitor_id: int):
    principal = current_principal()
    competitor = current_app.competitors.get_competitor(competitor_id, principal)
    return jsonify(competitor.to_dict(include_admin=is_admin(principal)))


@bp.route('/<int:competitor_id>', methods=['PUT'])
def update_competitor(competitor_id: int):
    """Partial update; `"_delete": true` soft-deletes instead."""
    data = json_body()
    competitor = current_app.competitors.update_competitor(competitor_id, data, current_principal())
    message = 'Competitor deleted' if data.get('_delete') is True else 'Competitor updated'
    return jsonify({
        'message': message,
        'competitor': competitor.to_dict(include_admin=True)
    })


@bp.route('/<int:competitor_id>', methods=['DELETE'])
def delete_competitor(competitor_id: int):
    competitor = current_app.competitors.soft_delete_competitor(competitor_id, current_principal())
    return jsonify({
        'message': 'Competitor deleted',
        'competitor': competitor.to_dict(include_admin=True)
    })


@bp.route('/<int:competitor_id>/status', methods=['PUT'])
def set_status(competitor_id: int):
    data = json_body()
    competitor = current_app.competitors.set_acceptance_status(
        competitor_id,
        data.get('status'),
        current_principal(),
        admin_notes=data.get('admin_notes', UNSET)
    )
    return jsonify({
        'message': f'Competitor status set to {competitor.player_acceptance_status}',
        'competitor': competitor.to_dict(include_admin=True)
    })


@bp.route('/<int:competitor_id>/document', methods=['POST'])
def attach_document(competitor_id: int):
    """Record where the uploaded registration document is stored."""
    competitor = current_app.competitors.attach_document(
        competitor_id, json_body().get('document_url'), current_principal()
    )
    return jsonify({
        'message': 'Document attached',
        'competitor': competitor.to_dict(include_admin=True)
    })
