import logging
import os
import sys

logger = logging.getLogger("rivemart")

if not logger.handlers:
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] %(name)s: %(message)s", "%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(_handler)
    logger.setLevel(getattr(logging, (os.getenv("LOG_LEVEL") or "INFO").strip().upper(), logging.INFO))
    logger.propagate = False
