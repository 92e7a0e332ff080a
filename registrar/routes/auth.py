import logging

from flask import Blueprint, jsonify, request, current_app, redirect

from ..access import require_auth
from ..errors import BadRequest, Forbidden, Unauthorized
from ..identity import Principal, current_principal, extract_credential
from ..models import UserStatus
from ..oauth import OAuthError, get_provider, encode_state, decode_state
from . import json_body, client_ip

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__, url_prefix='/api/v1/auth')


def _set_auth_cookie(response, token: str):
    response.set_cookie(
        current_app.config['AUTH_COOKIE_NAME'],
        token,
        max_age=current_app.config['JWT_EXPIRES_DAYS'] * 24 * 60 * 60,
        httponly=True,
        secure=current_app.config['AUTH_COOKIE_SECURE'],
        samesite='Lax'
    )
    return response


@bp.route('/register', methods=['POST'])
def register():
    """Self-registration; the account waits for admin approval."""
    data = json_body()
    current_app.register_limiter.check_request(client_ip(), data.get('email'))

    user = current_app.users.register(data.get('email'), data.get('password'), data.get('name'))

    return jsonify({
        'message': 'Registration successful. Your account is pending approval.',
        'user': user.to_dict()
    }), 201


@bp.route('/login', methods=['POST'])
def login():
    data = json_body()
    current_app.auth_limiter.check_request(client_ip(), data.get('email'))

    user = current_app.users.authenticate(data.get('email'), data.get('password'))
    token = current_app.tokens.issue(user)

    response = jsonify({
        'message': 'Login successful',
        'user': Principal.from_user(user).to_dict(),
        'token': token
    })
    return _set_auth_cookie(response, token)


@bp.route('/logout', methods=['POST'])
def logout():
    credential = extract_credential()
    if credential:
        current_app.tokens.revoke(credential)
        logger.info("Token revoked on logout")

    response = jsonify({'message': 'Logged out successfully'})
    response.delete_cookie(current_app.config['AUTH_COOKIE_NAME'])
    return response


@bp.route('/me', methods=['GET'])
def me():
    principal = require_auth(current_principal())
    return jsonify({'user': principal.to_dict()})


# ==================== OAuth ====================

@bp.route('/<provider>/redirect', methods=['GET'])
def oauth_redirect(provider: str):
    """Send the browser to the provider's consent page."""
    oauth = get_provider(provider, current_app.config)
    state = encode_state(request.args.get('redirect_to', '/'), current_app.config['SECRET_KEY'])
    return redirect(oauth.authorization_url(state))


@bp.route('/<provider>/callback', methods=['GET'])
def oauth_callback(provider: str):
    oauth = get_provider(provider, current_app.config)

    if request.args.get('error'):
        raise BadRequest(f"OAuth error: {request.args['error']}")
    code = request.args.get('code')
    if not code:
        raise BadRequest('Authorization code not provided')

    redirect_to = decode_state(
        request.args.get('state'),
        current_app.config['SECRET_KEY'],
        max_age=current_app.config['OAUTH_STATE_TTL']
    )

    try:
        access_token = oauth.exchange_code(code)
        profile = oauth.fetch_profile(access_token)
    except OAuthError as e:
        logger.warning(f"OAuth sign-in via {provider} failed: {e}")
        raise Unauthorized(f'{provider.title()} sign-in failed')

    user = current_app.users.upsert_oauth_user(oauth.name, profile)
    if user.status != UserStatus.APPROVED.value:
        logger.warning(f"OAuth sign-in refused for {user.email}: status {user.status}")
        raise Forbidden(current_app.users.status_message(user.status))

    token = current_app.tokens.issue(user)
    logger.info(f"OAuth login successful: {user.email} via {provider}")
    return _set_auth_cookie(redirect(redirect_to), token)
