"""
Shared fixtures for the probe agent tests

Catalogs are signed with a throwaway RSA key whose self-signed certificate
plays the controller CA. No live database or controller is needed.
"""

import asyncio
import base64
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from probe_agent.allowlist import canonical_json, hash_template
from probe_agent.drivers import DatabaseDriver, QueryResult


def iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.000Z")


class CatalogSigner:
    """Builds catalogs the way the controller does"""

    def __init__(self, key):
        self.key = key

    def sign(
        self,
        templates: Dict[str, str],
        expires_in: timedelta = timedelta(hours=1),
        version: int = 1,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or datetime.now(timezone.utc)
        document = {
            "version": version,
            "generated_at": iso(now),
            "expires_at": iso(now + expires_in),
            "queries": {tool_id: hash_template(t) for tool_id, t in templates.items()},
        }
        signature = self.key.sign(canonical_json(document), padding.PKCS1v15(), hashes.SHA256())
        return {**document, "signature": base64.b64encode(signature).decode("ascii")}


def _self_signed_pem(key, common_name: str) -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="session")
def ca_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ca_pem(ca_key):
    return _self_signed_pem(ca_key, "Probe Test CA")


@pytest.fixture(scope="session")
def signer(ca_key):
    return CatalogSigner(ca_key)


@pytest.fixture(scope="session")
def rogue_signer():
    """Signs with a key the probe does not trust"""
    return CatalogSigner(rsa.generate_private_key(public_exponent=65537, key_size=2048))


# ===================== Fake database driver =====================

class FakeDriver(DatabaseDriver):
    """In-memory driver that records every query"""

    name = "Fake"

    def __init__(self, db_type=None):
        self.db_type = db_type
        self.connected = False
        self.config = None
        self.queries = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.connect_error: Optional[Exception] = None
        self.execute_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def connect(self, config):
        self.connect_calls += 1
        if self.connect_error:
            raise self.connect_error
        self.config = config
        self.connected = True

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    async def execute(self, query, timeout=None):
        self.queries.append((query, timeout))
        if self.gate is not None:
            await self.gate.wait()
        if self.execute_error:
            raise self.execute_error
        return QueryResult(columns=["id", "name"], rows=[[7, "seven"]], row_count=1)

    def is_connected(self):
        return self.connected


class DriverFactory:
    """Stands in for create_driver and keeps every driver it made"""

    def __init__(self):
        self.created = []
        self.execute_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    def __call__(self, db_type):
        driver = FakeDriver(db_type)
        driver.execute_error = self.execute_error
        driver.gate = self.gate
        self.created.append(driver)
        return driver

    @property
    def last(self) -> FakeDriver:
        return self.created[-1]


@pytest.fixture
def driver_factory():
    return DriverFactory()
