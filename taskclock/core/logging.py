# taskclock/core/logging.py
import logging
import sys
from datetime import datetime

# Level applied to loggers created after set_default_level() is called
_default_level: int = logging.INFO

_ROOT_NAME = 'taskclock'


class ColoredFormatter(logging.Formatter):
    """Tabular colored formatter: [time] [component] [level] message"""

    RESET = '\033[0m'
    TIME_COLOR = '\033[94m'
    TEXT_COLOR = '\033[97m'

    LEVEL_COLORS = {
        'DEBUG': '\033[90m',
        'INFO': '\033[92m',
        'WARNING': '\033[93m',
        'ERROR': '\033[91m',
        'CRITICAL': '\033[1;91m',
    }

    # [scheduler.lease] is the widest component name we emit
    COMPONENT_WIDTH = 18
    LEVEL_WIDTH = 10

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'taskclock.scheduler.lease' -> 'scheduler.lease'
        prefix = f'{_ROOT_NAME}.'
        component = (
            record.name[len(prefix):] if record.name.startswith(prefix) else record.name
        )

        component_col = f'[{component}]'.ljust(self.COMPONENT_WIDTH)
        level_col = f'[{record.levelname}]'.ljust(self.LEVEL_WIDTH)
        level_color = self.LEVEL_COLORS.get(record.levelname, self.TEXT_COLOR)

        formatted = (
            f'{self.TIME_COLOR}[{time_str}]{self.RESET} '
            f'{self.TEXT_COLOR}{component_col}{self.RESET}'
            f'{level_color}{level_col}{self.RESET}'
            f'{self.TEXT_COLOR}{record.getMessage()}{self.RESET}'
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the level used for loggers created from now on."""
    global _default_level
    _default_level = level


def apply_level(level: int) -> None:
    """Set the level on every existing taskclock logger and its handlers."""
    set_default_level(level)

    for name in list(logging.Logger.manager.loggerDict):
        if name == _ROOT_NAME or name.startswith(f'{_ROOT_NAME}.'):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger = logging.getLogger(f'{_ROOT_NAME}.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Each component has its own handler; avoid double output via parents
        logger.propagate = False

    return logger
