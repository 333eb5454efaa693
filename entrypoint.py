import uvicorn
import os
from logging_config import setup_logging

# Setup logging before building the app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from logging_config import get_logger

logger = get_logger(__name__)


def main():
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    logger.info(f"Starting PartyRooms server on {host}:{port}")
    uvicorn.run("app:main_app", factory=True, host=host, port=port, reload=os.getenv("RELOAD", "") == "1")


if __name__ == "__main__":
    main()
