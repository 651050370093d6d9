"""
Service Appointments Backend - Main Application
"""

import logging

from dotenv import load_dotenv

# Load environment variables FIRST before importing modules that need them
load_dotenv()

from servicehub.utils.logging_config import configure_logging  # noqa: E402
from servicehub.app_factory import create_app  # noqa: E402

configure_logging()
logger = logging.getLogger(__name__)

app = create_app()

if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("servicehub.main:app", host="0.0.0.0", port=port)
