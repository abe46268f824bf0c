"""
Routes package
Registers all blueprints
"""
from .api_unlock import unlock_api_bp


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    app.register_blueprint(unlock_api_bp)

    app.logger.info("[STARTUP] Blueprints registered")
