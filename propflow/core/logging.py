# propflow/core/logging.py
import logging
import os
import sys
from datetime import datetime
from typing import Optional

LOG_LEVEL_ENV = 'PROPFLOW_LOG_LEVEL'


def _level_from_env() -> int:
    name = os.environ.get(LOG_LEVEL_ENV, '').strip().upper()
    level = logging.getLevelName(name) if name else logging.INFO
    return level if isinstance(level, int) else logging.INFO


# Starts from PROPFLOW_LOG_LEVEL; the CLI --loglevel flag overrides it
_default_level: int = _level_from_env()


def _stdout_wants_color() -> bool:
    if os.environ.get('PROPFLOW_FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        return True
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()


class ColoredFormatter(logging.Formatter):
    """
    Column-aligned ``[time] [component] [LEVEL] message`` lines.

    Colors follow the same switches as error rendering: PROPFLOW_FORCE_COLOR
    forces them, NO_COLOR or a non-terminal stdout drops them.
    """

    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    def __init__(self, use_color: Optional[bool] = None) -> None:
        super().__init__()
        self.use_color = _stdout_wants_color() if use_color is None else use_color

    def _paint(self, text: str, color: str) -> str:
        if not self.use_color:
            return text
        return f'{color}{text}{self.COLORS["RESET"]}'

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'propflow.dispatcher' -> 'dispatcher'
        component = record.name.split('.')[-1] if '.' in record.name else record.name

        # [dispatcher] is 12 chars, [CRITICAL] is 10
        component_padded = f'[{component}]'.ljust(14)
        level_padded = f'[{record.levelname}]'.ljust(11)
        level_color = self.LEVEL_COLORS.get(record.levelname, self.COLORS['WHITE'])

        formatted = (
            self._paint(f'[{time_str}]', self.COLORS['LIGHT_BLUE'])
            + ' '
            + self._paint(component_padded, self.COLORS['WHITE'])
            + self._paint(level_padded, level_color)
            + self._paint(record.getMessage(), self.COLORS['WHITE'])
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the level applied to new loggers and to the ones already handed out."""
    global _default_level
    _default_level = level
    for name, logger in logging.root.manager.loggerDict.items():
        if name.startswith('propflow.') and isinstance(logger, logging.Logger):
            logger.setLevel(level)
            for handler in logger.handlers:
                handler.setLevel(level)


def get_logger(component_name: str) -> logging.Logger:
    """Logger named ``propflow.<component_name>`` with one stdout handler."""
    logger = logging.getLogger(f'propflow.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)
        logger.propagate = False

    return logger
