"""
Rate limiting configuration for the elevation API
"""
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
import os


def get_limiter_storage_uri():
    """
    Get storage URI for rate limiter
    Uses Redis in production, memory in development
    """
    redis_url = os.environ.get('REDIS_URL')
    if redis_url:
        return redis_url
    return "memory://"


limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=get_limiter_storage_uri(),
    default_limits=["600 per hour", "60 per minute"],
    strategy="fixed-window",
)


def init_limiter(app):
    """Initialize rate limiter with Flask app"""
    limiter.init_app(app)
    if app.config.get('TESTING'):
        limiter.enabled = False
    return limiter
