"""
Configuration Management Module
Loads configuration from the process environment, optionally overlaid by a
YAML file, and registers every secret it reads with the redaction registry.
"""

import os
import re
import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List
from urllib.parse import quote_plus

from errors import register_secret

logger = logging.getLogger(__name__)

# user:pass@tcp(host:port)/db?params
_GO_DSN = re.compile(
    r"^(?P<user>[^:@]*)(?::(?P<password>[^@]*))?@(?P<proto>\w+)?"
    r"\((?P<host>[^:)]*)(?::(?P<port>\d+))?\)/(?P<db>[^?]*)(?:\?(?P<params>.*))?$"
)


@dataclass
class DatabaseConfig:
    """Affiliation store connection settings"""
    dsn: str = ""
    host: str = "localhost"
    port: int = 3306
    user: str = ""
    password: str = ""
    name: str = ""
    params: str = "?charset=utf8"
    pool_size: int = 5
    max_overflow: int = 10
    pool_recycle: int = 30
    origin: str = "da-affiliation-api"

    def url(self) -> str:
        """SQLAlchemy URL for the affiliation store."""
        if self.dsn:
            return dsn_to_url(self.dsn)
        if not self.name:
            raise ConfigurationError("please specify database via SH_DB=...")
        params = self.params if self.params.startswith("?") or not self.params else "?" + self.params
        return (
            f"mysql+pymysql://{quote_plus(self.user)}:{quote_plus(self.password)}"
            f"@{self.host}:{self.port}/{self.name}{params}"
        )


@dataclass
class AnalyticsDatabaseConfig:
    """Analytics store (read-only) connection"""
    endpoint: str = ""


@dataclass
class DocumentStoreConfig:
    """Search backend settings"""
    url: str = ""
    username: str = ""
    password: str = ""
    timeout: int = 60


@dataclass
class DirectoryConfig:
    """Organization and user directory settings"""
    org_url: str = ""
    user_url: str = ""
    token: str = ""
    timeout: int = 30


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "debug"
    sql_out: bool = False


@dataclass
class ServerConfig:
    """HTTP transport settings"""
    host: str = "0.0.0.0"
    port: int = 8080
    max_inflight: int = 50
    cors_origins: List[str] = field(default_factory=list)


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


def dsn_to_url(dsn: str) -> str:
    """Accept either a SQLAlchemy URL or a Go-style MySQL DSN

    Args:
        dsn: 'mysql+pymysql://...' / 'sqlite://...' or 'user:pass@tcp(host:port)/db?params'

    Returns:
        SQLAlchemy URL
    """
    if "://" in dsn:
        return dsn
    m = _GO_DSN.match(dsn)
    if not m:
        raise ConfigurationError("SH_DSN is not a valid DSN")
    params = m.group("params") or ""
    # parseTime is a Go driver flag only
    kept = [p for p in params.split("&") if p and not p.startswith("parseTime")]
    query = ("?" + "&".join(kept)) if kept else ""
    return (
        f"mysql+pymysql://{quote_plus(m.group('user'))}:{quote_plus(m.group('password') or '')}"
        f"@{m.group('host') or 'localhost'}:{m.group('port') or '3306'}/{m.group('db')}{query}"
    )


def _as_int(key: str, value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got '{value}'")


class ConfigManager:
    """Manages service configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, env: Optional[Dict[str, str]] = None, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            env: Environment mapping (os.environ if None)
            config_path: Optional YAML overlay; defaults to $CONFIG_PATH
        """
        self._env = dict(os.environ if env is None else env)
        path = config_path or self._env.get("CONFIG_PATH")
        self.config_path = Path(path) if path else None
        self._raw_config: Dict[str, Any] = {}
        self.database: DatabaseConfig = DatabaseConfig()
        self.analytics_database: AnalyticsDatabaseConfig = AnalyticsDatabaseConfig()
        self.document_store: DocumentStoreConfig = DocumentStoreConfig()
        self.directory: DirectoryConfig = DirectoryConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.server: ServerConfig = ServerConfig()

        if self.config_path is not None:
            if self.config_path.exists():
                self._load_yaml()
            else:
                logger.warning(f"Config file not found at {self.config_path}, using environment only")
        self.load()

    def _load_yaml(self) -> None:
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

    def _get(self, section: str, key: str, env_key: str, default: Any = "") -> Any:
        """Environment wins over the YAML overlay, which wins over the default."""
        if env_key in self._env and self._env[env_key] != "":
            return self._env[env_key]
        return self._raw_config.get(section, {}).get(key, default)

    def load(self) -> None:
        """Build every configuration section"""
        self._parse_database()
        self._parse_analytics_database()
        self._parse_document_store()
        self._parse_directory()
        self._parse_logging()
        self._parse_server()
        self._validate()
        self._register_secrets()

    def _parse_database(self) -> None:
        user = self._get('database', 'user', 'SH_USR', "") or self._get('database', 'user', 'SH_USER', "")
        params = self._get('database', 'params', 'SH_PARAMS', "?charset=utf8")
        if params == "-":
            params = ""
        self.database = DatabaseConfig(
            dsn=self._get('database', 'dsn', 'SH_DSN', ""),
            host=self._get('database', 'host', 'SH_HOST', "localhost"),
            port=_as_int("SH_PORT", self._get('database', 'port', 'SH_PORT'), 3306),
            user=user,
            password=self._get('database', 'password', 'SH_PASS', ""),
            name=self._get('database', 'name', 'SH_DB', ""),
            params=params,
            pool_size=_as_int("SH_POOL_SIZE", self._get('database', 'pool_size', 'SH_POOL_SIZE'), 5),
            max_overflow=_as_int("SH_MAX_OVERFLOW", self._get('database', 'max_overflow', 'SH_MAX_OVERFLOW'), 10),
            pool_recycle=_as_int("SH_POOL_RECYCLE", self._get('database', 'pool_recycle', 'SH_POOL_RECYCLE'), 30),
            origin=self._get('database', 'origin', 'SH_ORIGIN', "da-affiliation-api"),
        )

    def _parse_analytics_database(self) -> None:
        self.analytics_database = AnalyticsDatabaseConfig(
            endpoint=self._get('analytics_database', 'endpoint', 'API_DB_ENDPOINT', "")
        )

    def _parse_document_store(self) -> None:
        self.document_store = DocumentStoreConfig(
            url=self._get('document_store', 'url', 'ELASTIC_URL', ""),
            username=self._get('document_store', 'username', 'ELASTIC_USERNAME', ""),
            password=self._get('document_store', 'password', 'ELASTIC_PASSWORD', ""),
            timeout=_as_int("ELASTIC_TIMEOUT", self._get('document_store', 'timeout', 'ELASTIC_TIMEOUT'), 60),
        )

    def _parse_directory(self) -> None:
        self.directory = DirectoryConfig(
            org_url=self._get('directory', 'org_url', 'ORG_SVC_URL', ""),
            user_url=self._get('directory', 'user_url', 'USER_SVC_URL', ""),
            token=self._get('directory', 'token', 'DIRECTORY_TOKEN', ""),
            timeout=_as_int("DIRECTORY_TIMEOUT", self._get('directory', 'timeout', 'DIRECTORY_TIMEOUT'), 30),
        )

    def _parse_logging(self) -> None:
        self.logging = LoggingConfig(
            level=str(self._get('logging', 'level', 'LOG_LEVEL', "debug")).lower(),
            sql_out=bool(self._get('logging', 'sql_out', 'DA_AFF_API_SQL_OUT', "")),
        )

    def _parse_server(self) -> None:
        origins = self._get('server', 'cors_origins', 'CORS_ORIGINS', [])
        if isinstance(origins, str):
            origins = [o.strip() for o in origins.split(",") if o.strip()]
        self.server = ServerConfig(
            host=self._get('server', 'host', 'API_HOST', "0.0.0.0"),
            port=_as_int("API_PORT", self._get('server', 'port', 'API_PORT'), 8080),
            max_inflight=_as_int("MAX_INFLIGHT", self._get('server', 'max_inflight', 'MAX_INFLIGHT'), 50),
            cors_origins=list(origins),
        )

    def _validate(self) -> None:
        if self.logging.level not in ("debug", "info", "warn"):
            logger.warning(f"Unknown LOG_LEVEL '{self.logging.level}', using debug")
            self.logging.level = "debug"
        if self.server.max_inflight < 1:
            raise ConfigurationError("MAX_INFLIGHT must be positive")
        if self.database.pool_size < 1:
            raise ConfigurationError("SH_POOL_SIZE must be positive")

    def _register_secrets(self) -> None:
        for secret in (
            self.database.password,
            self.database.dsn,
            self.analytics_database.endpoint,
            self.document_store.password,
            self.directory.token,
        ):
            register_secret(secret)

    @classmethod
    def get_instance(cls) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager()
        return cls._instance

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary, secrets omitted"""
        return {
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name,
                'pool_size': self.database.pool_size,
                'pool_recycle': self.database.pool_recycle,
            },
            'document_store': {'url': self.document_store.url},
            'directory': {
                'org_url': self.directory.org_url,
                'user_url': self.directory.user_url,
            },
            'logging': {
                'level': self.logging.level,
                'sql_out': self.logging.sql_out,
            },
            'server': {
                'host': self.server.host,
                'port': self.server.port,
                'max_inflight': self.server.max_inflight,
            },
        }


def get_config() -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance()
