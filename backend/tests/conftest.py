"""
Pytest fixtures for storefront backend tests.

Provides test database setup, a recording notifier, factories for stock
and referral partners, and the admin test client headers.
"""

import bcrypt
import pytest

from storefront import create_app
from storefront.extensions import db

from factories import ADMIN_KEY, RecordingNotifier


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'NOTIFICATIONS_INLINE': True,
        'RESEND_API_KEY': None,
        'PRICING_BREAKS': (1, 5, 10),
        'POOLING_EXEMPT_PRODUCTS': ('bpc-tb-combo',),
        'ORDER_RATE_LIMIT_MAX_REQUESTS': 10,
        'ORDER_RATE_LIMIT_WINDOW_MS': 15 * 60 * 1000,
        'ADMIN_API_KEY_HASH': bcrypt.hashpw(ADMIN_KEY.encode(), bcrypt.gensalt(rounds=4)).decode(),
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        app.extensions["storefront.order_rate_limiter"].reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def client(app, db_session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def notifier(app):
    """Swap the real notifier for one that records what would be sent."""
    original = app.extensions["storefront.notifier"]
    recorder = RecordingNotifier()
    app.extensions["storefront.notifier"] = recorder
    yield recorder
    app.extensions["storefront.notifier"] = original


@pytest.fixture(scope='function')
def admin_headers():
    return {'X-Admin-Key': ADMIN_KEY}
