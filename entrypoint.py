import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from constants import HOST, PORT
from logging_config import get_logger

logger = get_logger(__name__)


def main():
    logger.info(f"Starting GhostRooms server on {HOST}:{PORT}")
    # Room and presence state live in this process: one worker only
    uvicorn.run("app:app", host=HOST, port=PORT, workers=1, log_config=None)


if __name__ == "__main__":
    main()
