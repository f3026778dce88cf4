import logging

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def setup_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format=LOG_FORMAT)


def get_logger(name="delivery_controller"):
    if name != "delivery_controller" and not name.startswith("delivery_controller."):
        name = f"delivery_controller.{name}"
    return logging.getLogger(name)
