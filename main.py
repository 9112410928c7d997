"""
Ramp settlement service entry point.

Loads .env before anything reads configuration, configures logging and
exposes the ASGI app (gunicorn: main:app) or serves it with uvicorn.
"""

import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

from config import Config  # noqa: E402
from webhook_server import create_app  # noqa: E402

logger = logging.getLogger(__name__)

Config.log_environment_config()
app = create_app()


def main():
    import uvicorn

    logger.info(f"🚀 Starting ramp settlement service on {Config.HOST}:{Config.PORT}")
    uvicorn.run(app, host=Config.HOST, port=Config.PORT, log_level=Config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
