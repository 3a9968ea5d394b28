import hmac
from functools import wraps

from flask import make_response, request

from .config import getSettings, is_true


def _credentials_match(auth, settings):
    if auth is None or auth.username is None or auth.password is None:
        return False
    return hmac.compare_digest(
        auth.username.encode("utf-8"), settings["username"].encode("utf-8")
    ) and hmac.compare_digest(auth.password.encode("utf-8"), settings["password"].encode("utf-8"))


def authorise(f):
    """Basic auth gate, active only while "enable security" is on."""
    @wraps(f)
    def decorated(*args, **kwargs):
        settings = getSettings()
        if not is_true(settings.get("enable security")) or _credentials_match(
            request.authorization, settings
        ):
            return f(*args, **kwargs)
        return make_response(
            "Login required",
            401,
            {"WWW-Authenticate": 'Basic realm="Telebox"'},
        )

    return decorated
