"""
Logging configuration for the class ledger.

Console output in either a plain ``standard`` format or structured JSON
(python-json-logger), selected by ``Settings.log_format``.
"""

import logging
import logging.config
from typing import Any, Dict, Optional

from .config import Settings, get_settings


def build_logging_config(settings: Settings) -> Dict[str, Any]:
    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'standard': {
                'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
            },
            'json': {
                '()': 'pythonjsonlogger.json.JsonFormatter',
                'fmt': '%(asctime)s %(levelname)s %(name)s %(message)s',
                'rename_fields': {'levelname': 'level', 'name': 'logger'},
            },
        },
        'handlers': {
            'console': {
                'level': settings.log_level.upper(),
                'class': 'logging.StreamHandler',
                'formatter': settings.log_format,
            },
        },
        'loggers': {
            'class_ledger': {
                'handlers': ['console'],
                'level': settings.log_level.upper(),
                'propagate': False,
            },
            'apscheduler': {
                'handlers': ['console'],
                'level': 'WARNING',
                'propagate': False,
            },
        },
    }


def configure_logging(settings: Optional[Settings] = None) -> None:
    logging.config.dictConfig(build_logging_config(settings or get_settings()))
