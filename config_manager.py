"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)

PERMISSIBLE_PURPOSES = ["EMPLOYMENT", "INSURANCE", "LEGAL", "GOVERNMENT", "UNDERWRITING", "FRAUD"]


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "mvr_user"
    password: str = "mvr_password"
    name: str = "mvr_exchange"
    url: Optional[str] = None
    echo: bool = False


@dataclass
class IngestionConfig:
    """Record ingestion rules"""
    dedup_window_days: int = 30
    default_storage_limitation_days: int = 5 * 365
    # Purposes accepted on ingestion; retrieval always accepts all purposes
    allowed_purposes: List[str] = field(default_factory=lambda: list(PERMISSIBLE_PURPOSES))
    max_batch_size: int = 500
    # Retries of the whole unit of work after losing a first-insert race
    conflict_retry_attempts: int = 2


@dataclass
class AuditConfig:
    """Audit emission configuration"""
    sink: str = "file"  # file, memory, pipeline
    sink_path: str = "audit_logs/events.ndjson"
    function_name: str = "mvr-exchange"
    dispatch_workers: int = 2
    dispatch_timeout_seconds: float = 2.0


@dataclass
class PipelineConfig:
    """Audit pipeline configuration"""
    company_id_max_length: int = 50
    storage_directory: str = "audit_storage"
    max_workers: int = 4


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = "logs/mvr_exchange.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    security_log_dir: Optional[str] = None


@dataclass
class ApiConfig:
    """HTTP API configuration"""
    api_key: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.database: DatabaseConfig = DatabaseConfig()
        self.ingestion: IngestionConfig = IngestionConfig()
        self.audit: AuditConfig = AuditConfig()
        self.pipeline: PipelineConfig = PipelineConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.api: ApiConfig = ApiConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        self._parse_database()
        self._parse_ingestion()
        self._parse_audit()
        self._parse_pipeline()
        self._parse_logging()
        self._parse_api()
        self._validate()

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name),
            url=cfg.get('url'),
            echo=cfg.get('echo', False)
        )

    def _parse_ingestion(self) -> None:
        """Parse ingestion configuration"""
        cfg = self._raw_config.get('ingestion', {})
        self.ingestion = IngestionConfig(
            dedup_window_days=cfg.get('dedup_window_days', 30),
            default_storage_limitation_days=cfg.get('default_storage_limitation_days', 5 * 365),
            allowed_purposes=[str(p).upper() for p in cfg.get('allowed_purposes', PERMISSIBLE_PURPOSES)],
            max_batch_size=cfg.get('max_batch_size', 500),
            conflict_retry_attempts=cfg.get('conflict_retry_attempts', 2)
        )

    def _parse_audit(self) -> None:
        """Parse audit configuration"""
        cfg = self._raw_config.get('audit', {})
        self.audit = AuditConfig(
            sink=cfg.get('sink', 'file'),
            sink_path=cfg.get('sink_path', self.audit.sink_path),
            function_name=cfg.get('function_name', 'mvr-exchange'),
            dispatch_workers=cfg.get('dispatch_workers', 2),
            dispatch_timeout_seconds=float(cfg.get('dispatch_timeout_seconds', 2.0))
        )

    def _parse_pipeline(self) -> None:
        """Parse audit pipeline configuration"""
        cfg = self._raw_config.get('pipeline', {})
        self.pipeline = PipelineConfig(
            company_id_max_length=cfg.get('company_id_max_length', 50),
            storage_directory=cfg.get('storage_directory', 'audit_storage'),
            max_workers=cfg.get('max_workers', 4)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', self.logging.file),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format),
            security_log_dir=cfg.get('security_log_dir')
        )

    def _parse_api(self) -> None:
        """Parse API configuration"""
        cfg = self._raw_config.get('api', {})
        self.api = ApiConfig(
            api_key=cfg.get('api_key'),
            cors_origins=cfg.get('cors_origins', self.api.cors_origins)
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secrets omitted)"""
        return {
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            },
            'ingestion': {
                'dedup_window_days': self.ingestion.dedup_window_days,
                'default_storage_limitation_days': self.ingestion.default_storage_limitation_days,
                'allowed_purposes': self.ingestion.allowed_purposes,
                'max_batch_size': self.ingestion.max_batch_size
            },
            'audit': {
                'sink': self.audit.sink,
                'sink_path': self.audit.sink_path,
                'function_name': self.audit.function_name,
                'dispatch_timeout_seconds': self.audit.dispatch_timeout_seconds
            },
            'pipeline': {
                'company_id_max_length': self.pipeline.company_id_max_length,
                'storage_directory': self.pipeline.storage_directory
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        unknown = [p for p in self.ingestion.allowed_purposes if p not in PERMISSIBLE_PURPOSES]
        if unknown:
            raise ConfigurationError(f"Unknown permissible purposes in ingestion.allowed_purposes: {unknown}")
        if not self.ingestion.allowed_purposes:
            raise ConfigurationError("ingestion.allowed_purposes must not be empty")
        if self.ingestion.dedup_window_days < 0:
            raise ConfigurationError("ingestion.dedup_window_days must be non-negative")
        if self.ingestion.default_storage_limitation_days < 0:
            raise ConfigurationError("ingestion.default_storage_limitation_days must be non-negative")
        if self.ingestion.max_batch_size < 1:
            raise ConfigurationError("ingestion.max_batch_size must be at least 1")
        if self.audit.sink not in ("file", "memory", "pipeline"):
            raise ConfigurationError(f"audit.sink must be one of file, memory, pipeline; got '{self.audit.sink}'")
        if self.audit.dispatch_timeout_seconds <= 0:
            raise ConfigurationError("audit.dispatch_timeout_seconds must be positive")
        if not 1 <= self.pipeline.company_id_max_length <= 255:
            raise ConfigurationError("pipeline.company_id_max_length must be between 1 and 255")
        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Invalid logging level: {self.logging.level}")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
