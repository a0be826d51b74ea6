import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT, level=level.upper())
    else:
        root.setLevel(level.upper())
    # httpx logs every request at INFO, which drowns out the poller
    logging.getLogger("httpx").setLevel(logging.WARNING)
