"""
Pytest configuration and shared fixtures for Mycelix Music API tests.

This module provides shared fixtures and test configuration including:
- Flask app setup on the in-memory catalog and local cache
- A deterministic signing account (the first Hardhat dev account)
- Admin key headers
"""

import os
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Set up test environment before any imports
os.environ["APP_ENV"] = "test"
os.environ["API_ADMIN_KEY"] = "test-admin-key-12345"
os.environ["RATE_LIMIT_REQUESTS"] = "10000"
os.environ["RATE_LIMIT_WINDOW"] = "1"
os.environ.setdefault("LOG_LEVEL", "WARNING")

ADMIN_KEY = "test-admin-key-12345"

# Hardhat account #0 (public test key, never holds real funds)
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

# Hardhat account #1
OTHER_PRIVATE_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
OTHER_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

# Hardhat default deployment address, used as EIP-712 verifying contract
VERIFYING_CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
CHAIN_ID = 31337


@pytest.fixture
def app_config():
    """Test configuration with the admin key and typed data enabled."""
    from config import AppConfig
    return AppConfig(
        env="test",
        admin_key=ADMIN_KEY,
        eip712_chain_id=CHAIN_ID,
        eip712_verifier=VERIFYING_CONTRACT,
        rate_limit_requests=10000,
        rate_limit_window=1,
        rpc_url="",
    )


@pytest.fixture
def memory_store():
    from storage.memory import MemoryCatalogStore
    return MemoryCatalogStore()


@pytest.fixture
def local_cache():
    from cache import LocalCache
    return LocalCache()


@pytest.fixture(scope="function")
def flask_app(app_config, memory_store, local_cache):
    """Create Flask test app with fresh in-memory backends for each test."""
    from app import create_app

    app = create_app(app_config, store=memory_store, cache=local_cache)
    app.config['TESTING'] = True
    return app


@pytest.fixture(scope="function")
def flask_client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()


@pytest.fixture
def admin_headers():
    """Headers for admin-key requests."""
    return {
        "Content-Type": "application/json",
        "x-api-key": ADMIN_KEY,
    }


@pytest.fixture
def song_body():
    """A valid song registration body owned by the test account."""
    return {
        "id": "mycelix-test-song",
        "title": "Spore Drift",
        "artist": "Hypha",
        "artistAddress": TEST_ADDRESS,
        "ipfsHash": "QmTestHash123",
        "paymentModel": "pay_per_stream",
        "genre": "ambient",
    }
