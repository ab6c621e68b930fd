"""
Mycelix Music API Package.

This package contains the modular Flask blueprints for the Mycelix Music API.

Blueprints:
- core: Health and diagnostics
- songs: Song catalog, plays and claims
- analytics: Artist and catalog aggregates
- strategies: Strategy configs, payout previews and the strategy catalog
- indexer: Payment event ingestion and the poison list
"""

from api.analytics import analytics_bp
from api.core import core_bp
from api.indexer import indexer_bp
from api.songs import songs_bp
from api.strategies import strategies_bp

# List of all blueprints for registration
# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (core_bp, ''),          # /health routes at root
    (songs_bp, ''),         # /api/songs, /api/claims
    (analytics_bp, ''),     # /api/artists, /api/analytics
    (strategies_bp, ''),    # /api/strategy-configs, /api/strategies
    (indexer_bp, ''),       # /api/indexer
]


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)
