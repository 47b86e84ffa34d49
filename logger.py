import logging
import logging.handlers
import sys
from pathlib import Path
from datetime import datetime, timezone
from typing import Dict, Optional

from config import Settings, settings

NAMESPACE       = 'foco'
COMPONENTS      = ('main', 'mqtt', 'coordinator', 'state', 'liveness', 'liveness_monitor', 'api')
NOISY_LOGGERS   = ('paho', 'uvicorn.access', 'httpx')

DATE_FORMAT     = '%Y-%m-%d %H:%M:%S'
CONSOLE_FORMAT  = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT     = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'

class LevelColorFormatter(logging.Formatter):
    """Colors level and logger name on a copy, so other handlers see the plain record"""

    COLORS = {
        logging.DEBUG       : '\033[36m',
        logging.INFO        : '\033[32m',
        logging.WARNING     : '\033[33m',
        logging.ERROR       : '\033[31m',
        logging.CRITICAL    : '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, colored: bool = True, **kwargs):
        super().__init__(**kwargs)
        self.colored = colored

    def format(self, record):
        color = self.COLORS.get(record.levelno) if self.colored else None
        if color:
            record              = logging.makeLogRecord(record.__dict__)
            record.levelname    = f"{color}{record.levelname}{self.RESET}"
            record.name         = f"{color}{record.name}{self.RESET}"
        return super().format(record)

def _console_handler(config: Settings, level: int) -> logging.Handler:
    colored = config.LOG_COLOR and sys.stdout.isatty()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(LevelColorFormatter(colored=colored, fmt=CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    handler.setLevel(level)
    return handler

def _file_handler(config: Settings, level: int) -> Optional[logging.Handler]:
    # Empty LOG_DIR means console only
    if not config.LOG_DIR:
        return None

    log_dir = Path(config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        filename        = log_dir / "app.log"
        , maxBytes      = config.LOG_FILE_MAX_BYTES
        , backupCount   = config.LOG_FILE_BACKUPS
        , encoding      = 'utf-8'
    )
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT))
    handler.setLevel(level)
    return handler

def setup_logging(config: Settings = settings) -> Dict[str, logging.Logger]:
    """
    Install the console and rotating file handlers on the root logger.
    Safe to call again: handlers from an earlier call are replaced, anything
    else on the root logger is left alone.
    """
    level   = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    root    = logging.getLogger()
    root.setLevel(level)

    for handler in [h for h in root.handlers if getattr(h, 'foco_handler', False)]:
        root.removeHandler(handler)
        handler.close()

    for handler in (_console_handler(config, level), _file_handler(config, level)):
        if handler is not None:
            handler.foco_handler = True
            root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return {component: get_logger(component) for component in COMPONENTS}

def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f'{NAMESPACE}.{name}')

def _banner(title: str, rows: Dict[str, object]):
    logger = get_logger('main')
    logger.info("=" * 60)
    logger.info(title)
    logger.info("=" * 60)
    for label, value in rows.items():
        logger.info(f"{label}: {value}")
    logger.info("=" * 60)

def log_startup_info(config: Settings = settings):
    rows = {
        "Log Level"         : config.LOG_LEVEL,
        "App Host"          : f"{config.APP_HOST}:{config.APP_PORT}",
        "MQTT Broker"       : f"{config.broker_address()} (tls={config.use_tls()})",
        "MQTT Client ID"    : config.MQTT_CLIENT_ID,
        "MQTT User"         : config.MQTT_USERNAME or 'anonymous',
    }
    for role, topic in config.get_topics().items():
        rows[f"Topic {role}"] = topic
    rows["Heartbeat Window"] = f"{config.DEVICE_HEARTBEAT_WINDOW_SECONDS}s"

    _banner("Light Bridge Starting Up", rows)

def log_shutdown_info():
    _banner("Light Bridge Shutting Down", {"Shutdown Time": datetime.now(timezone.utc).isoformat()})
