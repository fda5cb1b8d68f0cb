import os
import logging
from logging.handlers import TimedRotatingFileHandler

__version__ = '1.0.0'

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}


def configure_logging(logger_config, name='sealback'):
    """
    Configure application logging.

    Args:
        logger_config: LoggerConfig with log directory, level and number of
            daily files to keep
        name: Name of the logger handed to the pipeline components

    Returns:
        The configured logger
    """
    os.makedirs(logger_config.dir, exist_ok=True)
    log_level = LOG_LEVELS.get(logger_config.level, logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler, one file per day
    file_handler = TimedRotatingFileHandler(
        os.path.join(logger_config.dir, 'sealback.log'),
        when='midnight',
        backupCount=logger_config.max_files
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    logger = logging.getLogger(name)
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    logger.propagate = False

    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger
