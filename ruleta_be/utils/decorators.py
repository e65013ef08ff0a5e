import hmac
from functools import wraps
from flask import request, jsonify, current_app
from flask_jwt_extended import current_user, verify_jwt_in_request

from ruleta_be.exceptions import AuthorizationException

def service_token_required(f):
    """
    Decorator to protect routes with a service API token.
    Expects the token to be passed in the 'X-Service-Token' header.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = request.headers.get('X-Service-Token')
        if not token:
            current_app.logger.warning("Service token missing for protected route.")
            return jsonify({'status': False, 'status_message': 'Service token required.'}), 401

        expected_token = current_app.config.get('SERVICE_API_TOKEN')
        if not expected_token:
            current_app.logger.error("SERVICE_API_TOKEN is not configured in the application.")
            # Return 500 as this is a server configuration issue
            return jsonify({'status': False, 'status_message': 'Internal server error: Service token not configured.'}), 500

        if hmac.compare_digest(token.encode('utf-8'), expected_token.encode('utf-8')):
            return f(*args, **kwargs)
        else:
            current_app.logger.warning("Invalid service token received.")
            # 403: a token was sent, but it is not the right one.
            return jsonify({'status': False, 'status_message': 'Invalid service token.'}), 403
    return decorated_function

def is_admin():
    return current_user and current_user.is_admin

def admin_required(f):
    """JWT-authenticated route restricted to administrators."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        verify_jwt_in_request()
        if not is_admin():
            raise AuthorizationException(status_message="Access denied: administrator rights required.")
        return f(*args, **kwargs)
    return decorated_function
