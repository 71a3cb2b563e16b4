#!/usr/bin/env python3
"""
Temporary Privilege Elevation Server
Grants time-bounded write access on database schemas and revokes it on schedule
"""

from flask import Flask, jsonify
import logging
import os
from pathlib import Path
import secrets

from models import db

BASE_DIR = Path(__file__).parent

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger('elevation.server')


def _env_flag(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


app = Flask(__name__)

testing = _env_flag('TESTING', False)
app.config['TESTING'] = testing

# Secret key for sessions (generate a secure one for production)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', secrets.token_hex(32))

# Database configuration
database_url = os.environ.get('DATABASE_URL', f'sqlite:///{BASE_DIR}/elevation.db')

# Fix Heroku-style postgres:// scheme (should be postgresql://)
if database_url.startswith('postgres://'):
    database_url = database_url.replace('postgres://', 'postgresql://', 1)

is_postgres = database_url.startswith('postgresql')

app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

if is_postgres:
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_size': 5,
        'max_overflow': 10,
        'pool_recycle': 300,  # Recycle connections after 5 minutes
        'pool_pre_ping': True,
        'pool_timeout': 30,
    }
else:
    # SQLite settings (for local dev)
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_pre_ping': True,
        'connect_args': {'timeout': 30},
    }

# Elevation service configuration
app.config['ELEVATION_BACKEND'] = os.environ.get(
    'ELEVATION_BACKEND', 'postgres' if is_postgres else 'memory'
)
app.config['TARGET_DATABASE_URL'] = os.environ.get('TARGET_DATABASE_URL', database_url)
app.config['MEMORY_BACKEND_PRINCIPALS'] = os.environ.get(
    'MEMORY_BACKEND_PRINCIPALS', 'readonly_user,readwrite_user,analyst_user'
)
app.config['MEMORY_BACKEND_RESOURCES'] = os.environ.get(
    'MEMORY_BACKEND_RESOURCES', 'app_data,reporting'
)
app.config['ADMIN_API_TOKEN'] = os.environ.get('ADMIN_API_TOKEN', '')
app.config['CRON_SECRET'] = os.environ.get('CRON_SECRET', '')
app.config['SCHEDULER_ENABLED'] = _env_flag('SCHEDULER_ENABLED', not testing)
app.config['SCHEDULER_INTERVAL_SECONDS'] = int(os.environ.get('SCHEDULER_INTERVAL_SECONDS', '60'))
app.config['CLEANUP_INTERVAL_MINUTES'] = int(os.environ.get('CLEANUP_INTERVAL_MINUTES', '60'))
app.config['SCHEDULER_MAX_ATTEMPTS'] = int(os.environ.get('SCHEDULER_MAX_ATTEMPTS', '5'))

if not app.config['ADMIN_API_TOKEN'] and not testing:
    logger.warning('ADMIN_API_TOKEN is not set; admin endpoints will reject every request')

db.init_app(app)

# Initialize rate limiter
from rate_limiter import init_limiter
limiter = init_limiter(app)

# Tables must exist before the scheduler worker starts scanning
if _env_flag('AUTO_CREATE_TABLES', not is_postgres):
    with app.app_context():
        db.create_all()

# Build backend, scheduler and grant manager
from core.elevation.service import init_elevation
elevation = init_elevation(app)

# Register elevation routes
from routes.elevation_routes import register_elevation_routes
register_elevation_routes(app)


@app.route('/api/health', methods=['GET'])
def health():
    """Liveness probe"""
    return jsonify({
        'status': 'ok',
        'backend': app.config['ELEVATION_BACKEND'],
        'scheduler_running': bool(elevation.worker and elevation.worker.running),
    })


@app.errorhandler(429)
def ratelimit_handler(e):
    return jsonify({'error': 'Rate limit exceeded', 'details': str(e.description)}), 429


if __name__ == '__main__':
    print("=" * 60)
    print("Temporary Privilege Elevation Server")
    print("=" * 60)
    print(f"Database: {app.config['SQLALCHEMY_DATABASE_URI'].split('@')[-1]}")
    print(f"Backend: {app.config['ELEVATION_BACKEND']}")
    print("Server starting on http://localhost:5000")
    print("=" * 60)

    # The reloader would start a second scheduler worker
    app.run(host='0.0.0.0', port=5000, debug=False)
