from functools import wraps

from flask import abort
from flask_login import current_user


def roles_required(*roles):
    """Role gate for JSON endpoints: 401 when anonymous, 403 when no role matches."""
    allowed = [str(r).strip() for r in roles if r]

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)
            if not current_user.has_role(*allowed):
                abort(403)
            return fn(*args, **kwargs)
        return wrapper
    return decorator
