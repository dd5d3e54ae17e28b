import logging
import os
import sys

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

# One shared logger; modules log through it instead of creating their own.
logger = logging.getLogger("escrow_market")

# SQL echo is controlled by the engine, not by the application level.
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
