import uvicorn
from constants import HOST, PORT, LOG_LEVEL, LOG_FILE
from logging_config import setup_logging

# Setup logging before importing app
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)

from app import app
from logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    logger.info(f"Starting ambulance tracking relay on {HOST}:{PORT}")
    # Room membership lives in process memory, so a single worker unless RELAY_BROKER=redis
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL.lower())
