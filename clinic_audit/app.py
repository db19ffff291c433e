"""Application wiring for the clinic audit engine."""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from clinic_audit.integrations.browser import PlaywrightBrowser
from clinic_audit.integrations.http_fetcher import HttpFetcher
from clinic_audit.modules.technical_audit.auditor import TechnicalAuditor
from clinic_audit.modules.technical_audit.inspector import PageInspector
from clinic_audit.modules.technical_audit.repository import SQLAuditRepository
from clinic_audit.modules.technical_audit.settings import AuditSettings

logger = logging.getLogger(__name__)


class AuditApplication:
    """Load configuration and build a ready-to-use :class:`TechnicalAuditor`.

    Usage::

        app = AuditApplication()
        app.initialize()
        async with app.browser:
            record = await app.auditor().run_audit("clinic-1", urls)
    """

    def __init__(
        self,
        config_path: str = "config/settings.yaml",
        env_path: str = ".env",
    ):
        self._config_path = config_path
        self._env_path = env_path
        self.config: dict[str, Any] = {}
        self.settings = AuditSettings()
        self.browser: Optional[PlaywrightBrowser] = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, init_database: bool = True) -> None:
        """Load .env and settings.yaml, create data directories and the database."""
        if self._initialized:
            return

        env_file = Path(self._env_path)
        if env_file.exists():
            load_dotenv(env_file)
            logger.info("Loaded environment from %s", self._env_path)

        self.config = self._load_config()
        self.settings = AuditSettings.from_mapping(self.config.get("audit", {}))

        for dir_key in ("data_dir", "export_dir"):
            dir_path = self.config.get("app", {}).get(dir_key, "")
            if dir_path:
                Path(dir_path).mkdir(parents=True, exist_ok=True)

        if init_database:
            from clinic_audit.database import init_db
            db_cfg = self.config.get("database", {})
            init_db(database_url=db_cfg.get("url"), echo=db_cfg.get("echo", False))

        browser_cfg = self.config.get("browser", {})
        self.browser = PlaywrightBrowser(
            headless=browser_cfg.get("headless", True),
            launch_args=browser_cfg.get("launch_args"),
        )
        self._initialized = True
        logger.info("AuditApplication initialised.")

    def _load_config(self) -> dict[str, Any]:
        """Load the YAML configuration file."""
        config_file = Path(self._config_path)
        if not config_file.exists():
            logger.warning("Config file not found: %s; using defaults.", self._config_path)
            return {}
        with open(config_file, "r", encoding="utf-8") as fh:
            config = yaml.safe_load(fh) or {}
        logger.info("Configuration loaded from %s", self._config_path)
        return config

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    def auditor(self, persist: bool = True) -> TechnicalAuditor:
        """Build a :class:`TechnicalAuditor` backed by Playwright, aiohttp and SQLAlchemy."""
        if not self._initialized:
            self.initialize(init_database=persist)
        user_agent = self.config.get("browser", {}).get("crawler_user_agent", "ClinicAuditBot/1.0")
        return TechnicalAuditor(
            inspector=PageInspector(self.browser, navigation_timeout=self.settings.navigation_timeout),
            fetcher=HttpFetcher(user_agent=user_agent),
            repository=SQLAuditRepository() if persist else None,
            settings=self.settings,
        )

    def repository(self) -> SQLAuditRepository:
        if not self._initialized:
            self.initialize()
        return SQLAuditRepository()
