"""
SQL Query Allowlist

The only path by which SQL text coming from the controller becomes
executable. The controller sends a catalog of approved template hashes
signed with its CA key; a template runs only if its normalized hash is in
the currently loaded, unexpired, verified catalog.

Flow:
1. allowlist.sync delivers a catalog after connecting
2. The signature is verified against the provisioned CA certificate
3. On sql.execute the template is normalized, hashed and looked up
4. Only then are parameters sanitized and substituted
"""

import base64
import binascii
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from pydantic import ValidationError

from .exceptions import AllowlistValidationError
from .messages import QueryCatalog, parse_iso_timestamp

logger = logging.getLogger(__name__)

HASH_PREFIX = "sha256:"

_LINE_COMMENT = re.compile(r"--.*?$", re.MULTILINE)
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_WHITESPACE = re.compile(r"\s+")
_PARAM_DISALLOWED = re.compile(r"[^a-zA-Z0-9_.\[\]]")


def normalize_template(template: str) -> str:
    """
    Normalize SQL template text for hashing

    Must match the controller's normalization byte for byte:
    - removes line comments (-- ...)
    - removes block comments (/* ... */)
    - collapses whitespace runs to one space and trims
    - leaves {{param}} placeholders untouched
    """
    normalized = _LINE_COMMENT.sub("", template)
    normalized = _BLOCK_COMMENT.sub("", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def hash_template(template: str) -> str:
    """Return "sha256:<hex>" of the normalized template"""
    digest = hashlib.sha256(normalize_template(template).encode("utf-8")).hexdigest()
    return f"{HASH_PREFIX}{digest}"


def sanitize_param(value: Any) -> str:
    """Keep only alphanumerics, underscore, dot and square brackets"""
    return _PARAM_DISALLOWED.sub("", str(value))


def canonical_json(document: Dict[str, Any]) -> bytes:
    """
    Serialize exactly as the controller does when signing

    The controller signs json.dumps(doc, sort_keys=True, separators=(",", ":")):
    keys sorted at every nesting level, arrays in order, no whitespace.
    """
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


def load_public_key(pem: str):
    """Public key from a PEM certificate or a bare PEM public key"""
    data = pem.encode("utf-8")
    if b"BEGIN CERTIFICATE" in data:
        return x509.load_pem_x509_certificate(data).public_key()
    return serialization.load_pem_public_key(data)


@dataclass(frozen=True)
class _CatalogSnapshot:
    """Immutable view of one accepted catalog, swapped in as a whole"""
    catalog: QueryCatalog
    expires_at: datetime
    hash_to_tool: Mapping[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AllowlistEngine:
    """
    Validates SQL templates against a signed catalog from the controller

    The catalog is replaced atomically on every successful sync. A failed
    verification leaves the previous catalog in place.
    """

    def __init__(
        self,
        ca_certificate: Optional[str],
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._ca_certificate = ca_certificate
        self._clock = clock
        self._snapshot: Optional[_CatalogSnapshot] = None
        self._ever_loaded = False

    # ------------------------------------------------------------------
    # Catalog intake
    # ------------------------------------------------------------------

    def update_catalog(self, catalog: Union[QueryCatalog, Dict[str, Any]]) -> None:
        """
        Verify and install a catalog received from the controller

        Raises:
            AllowlistValidationError: SIGNATURE_INVALID if the catalog is
                malformed or its signature does not verify
        """
        if not isinstance(catalog, QueryCatalog):
            try:
                catalog = QueryCatalog.model_validate(catalog)
            except ValidationError as e:
                raise AllowlistValidationError(
                    "Catalog is malformed - cannot verify signature",
                    AllowlistValidationError.SIGNATURE_INVALID,
                    details={"errors": e.error_count()},
                )

        if not self.verify_signature(catalog):
            raise AllowlistValidationError(
                "Catalog signature verification failed - possible tampering",
                AllowlistValidationError.SIGNATURE_INVALID,
            )

        try:
            expires_at = parse_iso_timestamp(catalog.expires_at)
        except ValueError:
            raise AllowlistValidationError(
                f"Catalog expires_at is not a valid timestamp: {catalog.expires_at}",
                AllowlistValidationError.CATALOG_EXPIRED,
            )

        hash_to_tool = {digest: tool_id for tool_id, digest in catalog.queries.items()}
        self._snapshot = _CatalogSnapshot(
            catalog=catalog,
            expires_at=expires_at,
            hash_to_tool=MappingProxyType(hash_to_tool),
        )
        self._ever_loaded = True

        logger.info(
            f"Query catalog v{catalog.version} loaded: {len(hash_to_tool)} queries, "
            f"expires: {catalog.expires_at}"
        )

    def verify_signature(self, catalog: QueryCatalog) -> bool:
        """Check the catalog signature with the CA public key (SHA-256)"""
        if not self._ca_certificate:
            logger.error("CA certificate not available for signature verification")
            return False

        content = canonical_json(catalog.signed_document())

        try:
            signature = base64.b64decode(catalog.signature)
            public_key = load_public_key(self._ca_certificate)
        except (binascii.Error, ValueError) as e:
            logger.error(f"Cannot verify catalog signature: {e}")
            return False

        try:
            if isinstance(public_key, rsa.RSAPublicKey):
                public_key.verify(signature, content, padding.PKCS1v15(), hashes.SHA256())
            elif isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(signature, content, ec.ECDSA(hashes.SHA256()))
            else:
                logger.error(f"Unsupported CA key type: {type(public_key).__name__}")
                return False
        except InvalidSignature:
            logger.error("Catalog signature verification FAILED")
            return False

        logger.debug("Catalog signature verified")
        return True

    def clear_catalog(self) -> None:
        """Drop the current catalog"""
        self._snapshot = None
        logger.info("Query catalog cleared")

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def has_catalog(self) -> bool:
        return self._snapshot is not None

    @property
    def ever_loaded(self) -> bool:
        """True once any catalog has been accepted, even if later cleared"""
        return self._ever_loaded

    def is_catalog_expired(self) -> bool:
        snapshot = self._snapshot
        if snapshot is None:
            return True
        return self._clock() > snapshot.expires_at

    def seconds_until_expiration(self) -> int:
        snapshot = self._snapshot
        if snapshot is None:
            return 0
        remaining = (snapshot.expires_at - self._clock()).total_seconds()
        return max(0, int(remaining))

    def validate_template(self, template: str) -> str:
        """
        Check a template against the catalog

        Returns:
            The toolId the template is approved under

        Raises:
            AllowlistValidationError: CATALOG_MISSING, CATALOG_EXPIRED or
                TEMPLATE_NOT_ALLOWED
        """
        snapshot = self._snapshot
        if snapshot is None:
            raise AllowlistValidationError(
                "Query catalog not yet received from controller",
                AllowlistValidationError.CATALOG_MISSING,
            )

        if self._clock() > snapshot.expires_at:
            raise AllowlistValidationError(
                "Query catalog has expired - waiting for refresh",
                AllowlistValidationError.CATALOG_EXPIRED,
            )

        digest = hash_template(template)
        tool_id = snapshot.hash_to_tool.get(digest)
        if tool_id is None:
            logger.warning(f"Template REJECTED - hash not in catalog: {digest[:30]}...")
            raise AllowlistValidationError(
                "Template not in approved catalog - execution blocked",
                AllowlistValidationError.TEMPLATE_NOT_ALLOWED,
            )

        logger.debug(f"Template approved: {tool_id} (hash: {digest[:20]}...)")
        return tool_id

    def substitute_params(self, template: str, params: Dict[str, Any]) -> str:
        """
        Substitute sanitized parameters into an already validated template

        Call validate_template() on the same template first.
        """
        result = template
        for key, value in params.items():
            result = result.replace("{{" + key + "}}", sanitize_param(value))
        return result

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def query_count(self) -> int:
        snapshot = self._snapshot
        return len(snapshot.hash_to_tool) if snapshot else 0

    @property
    def tool_ids(self) -> Dict[str, str]:
        """Copy of the hash -> toolId index"""
        snapshot = self._snapshot
        return dict(snapshot.hash_to_tool) if snapshot else {}

    def get_status(self) -> Dict[str, Any]:
        """Catalog status for logs and heartbeats, not for authorization"""
        snapshot = self._snapshot
        return {
            "hasCatalog": snapshot is not None,
            "expired": self.is_catalog_expired(),
            "queryCount": self.query_count,
            "expiresAt": snapshot.expires_at.isoformat() if snapshot else None,
            "secondsUntilExpiration": self.seconds_until_expiration(),
        }
