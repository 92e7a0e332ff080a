from flask import Blueprint, jsonify, request, current_app

from ..access import is_admin
from ..identity import current_principal
from ..validation import parse_page
from . import json_body, pagination, list_arg

bp = Blueprint('tournaments', __name__, url_prefix='/api/v1/tournaments')


# ==================== Tournament CRUD ====================

@bp.route('', methods=['GET'])
def list_tournaments():
    """List tournaments visible to the caller."""
    status = request.args.get('status')
    limit = min(100, max(1, request.args.get('limit', 50, type=int)))
    offset = max(0, request.args.get('offset', 0, type=int))

    tournaments = current_app.registry.list_tournaments(
        current_principal(),
        status=status,
        limit=limit,
        offset=offset
    )

    return jsonify({
        'tournaments': [t.to_dict() for t in tournaments],
        'count': len(tournaments),
        'limit': limit,
        'offset': offset
    })


@bp.route('/deleted', methods=['GET'])
def list_deleted_tournaments():
    tournaments = current_app.registry.list_deleted(current_principal())
    return jsonify({
        'tournaments': [t.to_dict() for t in tournaments],
        'count': len(tournaments)
    })


@bp.route('', methods=['POST'])
def create_tournament():
    tournament = current_app.registry.create_tournament(json_body(), current_principal())
    return jsonify({
        'message': 'Tournament created',
        'tournament': tournament.to_dict()
    }), 201


@bp.route('/<int:tournament_id>', methods=['GET'])
def get_tournament(tournament_id: int):
    tournament = current_app.registry.get_tournament(tournament_id, current_principal())
    return jsonify(tournament.to_dict())


@bp.route('/<int:tournament_id>', methods=['PUT'])
def update_tournament(tournament_id: int):
    tournament = current_app.registry.update_tournament(tournament_id, json_body(), current_principal())
    return jsonify({
        'message': 'Tournament updated',
        'tournament': tournament.to_dict()
    })


@bp.route('/<int:tournament_id>', methods=['DELETE'])
def delete_tournament(tournament_id: int):
    tournament = current_app.registry.soft_delete_tournament(tournament_id, current_principal())
    return jsonify({
        'message': 'Tournament deleted',
        'tournament': tournament.to_dict()
    })


@bp.route('/<int:tournament_id>/restore', methods=['POST'])
def restore_tournament(tournament_id: int):
    tournament = current_app.registry.restore_tournament(tournament_id, current_principal())
    return jsonify({
        'message': 'Tournament restored',
        'tournament': tournament.to_dict()
    })


@bp.route('/<int:tournament_id>/rename', methods=['POST'])
def rename_deleted_tournament(tournament_id: int):
    """Give a soft-deleted tournament a free name so it can be restored."""
    tournament = current_app.registry.rename_deleted_tournament(
        tournament_id, json_body().get('name'), current_principal()
    )
    return jsonify({
        'message': 'Tournament renamed',
        'tournament': tournament.to_dict()
    })


@bp.route('/<int:tournament_id>/registration', methods=['GET'])
def registration_status(tournament_id: int):
    return jsonify(current_app.registry.registration_status(tournament_id, current_principal()))


# ==================== Competitors ====================

@bp.route('/<int:tournament_id>/competitors', methods=['GET'])
def list_competitors(tournament_id: int):
    principal = current_principal()
    page, limit = parse_page(request.args)
    filters = {
        'status': list_arg('status'),
        'categories': list_arg('category'),
        'gender': list_arg('gender'),
        'teams': list_arg('team'),
        'search': request.args.get('search', '').strip(),
        'deleted': request.args.get('deleted') == 'true',
    }

    competitors, total = current_app.competitors.list_competitors(
        tournament_id, principal, filters, page=page, limit=limit
    )

    admin = is_admin(principal)
    return jsonify({
        'data': [c.to_dict(include_admin=admin) for c in competitors],
        'pagination': pagination(page, limit, total)
    })


@bp.route('/<int:tournament_id>/competitors', methods=['POST'])
def register_competitor(tournament_id: int):
    """Open registration for anyone; admins may register at any time."""
    principal = current_principal()
    competitor = current_app.competitors.register_competitor(tournament_id, json_body(), principal)
    return jsonify({
        'message': 'Registration received',
        'competitor': competitor.to_dict(include_admin=is_admin(principal))
    }), 201


@bp.route('/<int:tournament_id>/competitors/<int:competitor_id>', methods=['PUT'])
def update_tournament_competitor(tournament_id: int, competitor_id: int):
    """Update scoped to one tournament; 404 when the competitor belongs elsewhere."""
    data = json_body()
    competitor = current_app.competitors.update_competitor(
        competitor_id, data, current_principal(), tournament_id=tournament_id
    )
    message = 'Competitor deleted' if data.get('_delete') is True else 'Competitor updated'
    return jsonify({
        'message': message,
        'competitor': competitor.to_dict(include_admin=True)
    })


@bp.route('/<int:tournament_id>/competitors/<int:competitor_id>', methods=['DELETE'])
def delete_tournament_competitor(tournament_id: int, competitor_id: int):
    competitor = current_app.competitors.soft_delete_competitor(
        competitor_id, current_principal(), tournament_id=tournament_id
    )
    return jsonify({
        'message': 'Competitor deleted',
        'competitor': competitor.to_dict(include_admin=True)
    })
