"""
Configuration Management for the Probe Agent

Loads configuration from a YAML or JSON file and environment variables,
and resolves which authentication mode the probe runs in.
"""

import os
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .exceptions import ConfigurationError
from .messages import parse_iso_timestamp

logger = logging.getLogger(__name__)


class DbType(str, Enum):
    """Supported database backends"""
    MSSQL = "mssql"
    POSTGRES = "postgres"


class AuthMode(str, Enum):
    """How the probe authenticates to the controller"""
    CERTIFICATE = "certificate"
    SECRET = "secret"
    NONE = "none"


@dataclass
class ControllerConfig:
    """Controller connection settings (normally from the generated init.json)"""
    server_url: str = ""
    server_id: str = ""
    client_id: str = ""
    client_secret: Optional[str] = None
    certificate: Optional[str] = None
    private_key: Optional[str] = None
    ca_certificate: Optional[str] = None
    cert_expires_at: Optional[str] = None
    heartbeat_interval: float = 30
    catalog_refresh_interval: float = 50 * 60
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    request_timeout: float = 10


@dataclass
class SqlConfig:
    """Local database connection settings"""
    db_type: DbType = DbType.MSSQL
    server: str = "localhost"
    port: Optional[int] = None  # None = backend default
    user: str = ""
    password: str = ""
    database: str = ""
    options: Dict[str, Any] = field(default_factory=dict)
    connection_timeout: int = 15
    query_timeout: int = 30


@dataclass
class ProjectConfig:
    """Project directory exposed to file.* actions"""
    path: str = ""


@dataclass
class LoggingConfig:
    """Logging settings"""
    level: str = "INFO"
    file: str = "probe_agent.log"
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class AgentConfig:
    """Complete agent configuration"""
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    database: SqlConfig = field(default_factory=SqlConfig)
    project: ProjectConfig = field(default_factory=ProjectConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    auth_state_path: str = "config/auth-config.json"
    sql_configured: bool = False

    @property
    def auth_mode(self) -> AuthMode:
        return determine_auth_mode(self.controller)

    @property
    def is_configured(self) -> bool:
        """True when there is a server URL and usable credentials"""
        return bool(self.controller.server_url) and self.auth_mode != AuthMode.NONE


# Flat keys written by the controller into init.json
INIT_JSON_MAPPING = {
    "serverUrl": ("controller", "server_url"),
    "serverId": ("controller", "server_id"),
    "clientId": ("controller", "client_id"),
    "clientSecret": ("controller", "client_secret"),
    "certificate": ("controller", "certificate"),
    "privateKey": ("controller", "private_key"),
    "caCertificate": ("controller", "ca_certificate"),
    "certExpiresAt": ("controller", "cert_expires_at"),
    "projectPath": ("project", "path"),
}


def determine_auth_mode(controller: ControllerConfig) -> AuthMode:
    """Certificate wins over secret; with neither the probe never connects"""
    if controller.certificate and controller.private_key:
        return AuthMode.CERTIFICATE
    if controller.client_secret:
        return AuthMode.SECRET
    return AuthMode.NONE


def _apply_section(section_obj, values: Dict[str, Any]):
    for key, value in values.items():
        if hasattr(section_obj, key):
            setattr(section_obj, key, value)


def load_config(config_path: Optional[str] = None) -> AgentConfig:
    """
    Load configuration from YAML or JSON file and environment variables

    Priority:
    1. Environment variables (highest)
    2. Config file
    3. Defaults (lowest)

    Supports:
    - YAML files (config.yaml) with nested sections
    - The flat camelCase init.json generated by the controller

    Args:
        config_path: Path to config file (YAML or JSON)

    Returns:
        AgentConfig instance
    """
    config = AgentConfig()

    if config_path is None:
        config_path = os.environ.get("PROBE_CONFIG_PATH", "config.yaml")

    config_file = Path(config_path)
    if config_file.exists():
        # utf-8-sig handles a BOM left by Windows editors
        with open(config_path, "r", encoding="utf-8-sig") as f:
            content = f.read()

        file_config = {}
        if config_path.endswith(".json"):
            file_config = json.loads(content) or {}
        else:
            # YAML is a superset of JSON, so this also reads JSON content
            file_config = yaml.safe_load(content) or {}

        if not isinstance(file_config, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        if "controller" not in file_config and any(k in file_config for k in INIT_JSON_MAPPING):
            # Flat init.json from the controller - map to nested structure
            for key, (section, attr) in INIT_JSON_MAPPING.items():
                if file_config.get(key):
                    setattr(getattr(config, section), attr, file_config[key])
        else:
            if "controller" in file_config:
                _apply_section(config.controller, file_config["controller"])

            if "database" in file_config:
                _apply_section(config.database, file_config["database"])
                config.sql_configured = True

            if "project" in file_config:
                _apply_section(config.project, file_config["project"])

            if "logging" in file_config:
                _apply_section(config.logging, file_config["logging"])

            if file_config.get("auth_state_path"):
                config.auth_state_path = file_config["auth_state_path"]

    # Apply environment variables (override config file)
    env_mappings = {
        # Controller
        "PROBE_SERVER_URL": ("controller", "server_url"),
        "PROBE_SERVER_ID": ("controller", "server_id"),
        "PROBE_CLIENT_ID": ("controller", "client_id"),
        "PROBE_CLIENT_SECRET": ("controller", "client_secret"),
        "PROBE_HEARTBEAT_INTERVAL": ("controller", "heartbeat_interval", float),
        # Database
        "DB_TYPE": ("database", "db_type"),
        "DB_SERVER": ("database", "server"),
        "DB_PORT": ("database", "port", int),
        "DB_USER": ("database", "user"),
        "DB_PASSWORD": ("database", "password"),
        "DB_DATABASE": ("database", "database"),
        "DB_CONNECTION_TIMEOUT": ("database", "connection_timeout", int),
        "DB_QUERY_TIMEOUT": ("database", "query_timeout", int),
        # Project
        "PROJECT_PATH": ("project", "path"),
        # Logging
        "LOG_LEVEL": ("logging", "level"),
        "LOG_FILE": ("logging", "file"),
    }

    for env_var, mapping in env_mappings.items():
        value = os.environ.get(env_var)
        if value is not None:
            section = mapping[0]
            key = mapping[1]
            converter = mapping[2] if len(mapping) > 2 else str

            section_obj = getattr(config, section)
            setattr(section_obj, key, converter(value))
            if section == "database":
                config.sql_configured = True

    config.database.db_type = DbType(config.database.db_type)
    if config.database.port is not None:
        config.database.port = int(config.database.port)

    return config


def check_certificate_expiration(cert_expires_at: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    """
    Log how close the client certificate is to expiry

    Returns:
        Whole days until expiry, or None if no expiry is known
    """
    if not cert_expires_at:
        return None

    expires_at = parse_iso_timestamp(cert_expires_at)
    now = now or datetime.now(timezone.utc)
    days_until_expiry = (expires_at - now).days

    if days_until_expiry < 0:
        logger.error(f"Client certificate EXPIRED on {expires_at.isoformat()}")
        logger.error("Regenerate the certificate from the controller and update init.json")
    elif days_until_expiry < 30:
        logger.warning(f"Client certificate expires in {days_until_expiry} days ({expires_at.isoformat()})")
    elif days_until_expiry < 90:
        logger.info(f"Client certificate expires in {days_until_expiry} days ({expires_at.isoformat()})")

    return days_until_expiry


class AuthStateStore:
    """
    Local persistence of auth settings pushed by the controller

    config.sync delivers either an ``authRequired`` flag or a
    ``passwordHash`` depending on deployment. Both are saved so a restarted
    probe enforces local UI auth before it reconnects.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8-sig") as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load auth config from {self.path}: {e}")
            return {}

        if not isinstance(state, dict):
            logger.error(f"Ignoring auth config in {self.path}: expected a JSON object")
            return {}
        return state

    def save(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Merge values into the stored state and write it back"""
        state = self.load()
        state.update(values)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2)
        return state


def save_config_template(path: str = "config.yaml.example"):
    """Generate example config file"""
    template = """# SQL Probe Agent Configuration

# Controller connection (normally provided by the generated init.json)
controller:
  server_url: "https://controller.example.com"
  server_id: "srv_YOUR_SERVER_ID"
  client_id: "probe_YOUR_CLIENT_ID"
  client_secret: "YOUR_CLIENT_SECRET"
  # certificate / private_key select certificate mode instead
  # ca_certificate: "-----BEGIN CERTIFICATE-----..."
  heartbeat_interval: 30

# Local database
database:
  db_type: "mssql"   # mssql | postgres
  server: "localhost"
  # port: 1433       # defaults to 1433 (mssql) or 5432 (postgres)
  user: "sa"
  password: "YourPassword"
  database: "YourDatabaseName"
  options:
    encrypt: true
    trust_server_certificate: true
    # ssl_mode: "require"   # postgres: disable | require | verify-ca | verify-full

# Project directory readable by the controller
project:
  path: ""

# Logging Configuration
logging:
  level: "INFO"
  file: "probe_agent.log"
  max_size_mb: 10
  backup_count: 5
"""
    with open(path, "w") as f:
        f.write(template)
    print(f"Config template saved to {path}")
