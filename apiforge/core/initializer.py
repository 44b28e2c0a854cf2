"""
Application Initialization Module
Creates the registry and audit tables and checks the SQL executor
"""
from typing import Dict, Optional
from loguru import logger
import aiofiles
import os

from apiforge.core.config import Settings, settings as default_settings


INIT_SQL_PATH = os.path.join(os.path.dirname(__file__), '..', 'sql', 'init.sql')


class AppInitializer:
    """Handles application initialization tasks"""

    def __init__(self, db, config: Optional[Settings] = None):
        self.db = db
        self.settings = config or default_settings

    async def check_dependencies(self) -> Dict[str, bool]:
        """
        Check database connectivity and the SQL executor function
        """
        status = {"database": False, "sql_executor": False}
        try:
            await self.db.fetchval("SELECT 1")
            status["database"] = True
            status["sql_executor"] = await self.db.has_sql_executor()
        except Exception as e:
            logger.error(f"Dependency check failed: {e}")

        if status["database"] and not status["sql_executor"]:
            logger.warning(
                f"SQL executor function '{self.settings.SQL_EXECUTOR_FUNCTION}' not found; "
                f"API generation will fail until it is installed.\n{self.db.executor_remediation()}"
            )
        return status

    async def initialize_database(self) -> None:
        """
        Create registry and audit tables if they do not exist
        """
        try:
            async with aiofiles.open(INIT_SQL_PATH, 'r') as f:
                template = await f.read()

            init_sql = template.format(
                registry_table=self.settings.REGISTRY_TABLE,
                audit_table=self.settings.AUDIT_TABLE,
            )
            await self.db.execute(init_sql)
            logger.info("Registry and audit tables ready")

        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            raise
