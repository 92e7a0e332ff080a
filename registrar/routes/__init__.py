import math

from flask import request

from ..errors import BadRequest


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequest('Request body must be a JSON object')
    return data


def client_ip() -> str:
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr or 'unknown'


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        'page': page,
        'limit': limit,
        'total': total,
        'total_pages': math.ceil(total / limit) if total else 0,
        'has_next': page * limit < total,
        'has_prev': page > 1,
    }


def list_arg(name: str) -> list:
    """Repeated or comma-separated query values: ?status=A&status=B or ?status=A,B."""
    values = []
    for raw in request.args.getlist(name):
        values.extend(v.strip() for v in raw.split(',') if v.strip())
    return values
