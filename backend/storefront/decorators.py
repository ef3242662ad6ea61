# Overview: Request decorators for API routes.

from functools import wraps

import bcrypt
from flask import current_app, g, jsonify, request


ADMIN_KEY_HEADER = "X-Admin-Key"


def hash_admin_key(raw_key: str) -> str:
    """bcrypt hash suitable for ADMIN_API_KEY_HASH."""
    return bcrypt.hashpw(raw_key.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_admin_key(raw_key: str | None, key_hash: str | None) -> bool:
    if not raw_key or not key_hash:
        return False
    try:
        return bcrypt.checkpw(raw_key.encode("utf-8"), key_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in config
        current_app.logger.error("ADMIN_API_KEY_HASH is not a valid bcrypt hash")
        return False


def require_admin(f):
    """
    Require the admin API key.

    SECURITY: Returns 401 if the X-Admin-Key header is missing or does not
    match ADMIN_API_KEY_HASH, and 503 if no hash is configured (admin
    endpoints are closed rather than open by default).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        key_hash = current_app.config.get("ADMIN_API_KEY_HASH")
        if not key_hash:
            return jsonify({"error": "Admin access is not configured"}), 503

        if not verify_admin_key(request.headers.get(ADMIN_KEY_HEADER), key_hash):
            current_app.logger.warning(
                "Rejected admin request %s %s from %s", request.method, request.path, request.remote_addr
            )
            return jsonify({"error": "Authentication required"}), 401

        g.is_admin = True
        return f(*args, **kwargs)

    return decorated_function
