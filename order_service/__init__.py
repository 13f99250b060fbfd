from .logging_config import configure_logging

# module loggers bind at import time, so configure before any of them exist
configure_logging()
