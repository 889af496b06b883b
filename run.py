import os
import logging
from advanced_config import PATH_SETTINGS
from server import main

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

# Create required directories
for directory in PATH_SETTINGS.values():
    os.makedirs(directory, exist_ok=True)
    logger.info(f"Created directory: {directory}")

if __name__ == '__main__':
    main()
