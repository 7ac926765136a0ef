import logging
from typing import Literal, Optional

from pydantic import HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings
from rich import print

DEFAULT_HOTSPOT_TASK_URL = (
    "https://sampleserver6.arcgisonline.com/arcgis/rest/services/"
    "911CallsHotspot/GPServer/911%20Calls%20Hotspot"
)


# using pydantic_settings to manage environment variables
# and do automatic type casting in a central place
class GpJobsSettings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore"
    }
    GPJOBS_LOG_LEVEL: str = "INFO"
    # "arcgis" talks to an ArcGIS Server GP task, "ogc" to an OGC API Processes endpoint
    GPJOBS_SERVICE_KIND: Literal["arcgis", "ogc"] = "arcgis"
    # GP task URL (arcgis) or API root (ogc)
    GPJOBS_SERVICE_URL: HttpUrl = HttpUrl(DEFAULT_HOTSPOT_TASK_URL)
    # Process identifier, only used by the OGC client
    GPJOBS_PROCESS_ID: str = "hotspot"
    # Name of the output parameter holding the analysis result
    GPJOBS_RESULT_PARAMETER: str = "Output_Features"
    GPJOBS_QUERY_INPUT_NAME: str = "Query"
    GPJOBS_API_TOKEN: Optional[SecretStr] = None
    GPJOBS_POLL_INTERVAL: float = 2.0
    GPJOBS_STATUS_MAX_ATTEMPTS: int = 5
    GPJOBS_REQUEST_TIMEOUT: float = 30.0

    @field_validator("GPJOBS_LOG_LEVEL", mode="before")
    def normalize_log_level(cls, value: str) -> str:
        """Accept lower-case level names from the environment."""
        return str(value).upper().strip()

    def print_settings(self, logger: logging.Logger):
        """Prints the settings for debugging purposes"""
        logger.info("gpjobs settings:")
        print(self)


app_settings = GpJobsSettings()
