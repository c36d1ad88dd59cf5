"""
JSON-loggning för intake-tjänsten (python-json-logger).

Fält på varje post:
  - timestamp, level, logger, message
  - service     : alltid "intake"
  - environment : ENVIRONMENT (default "production")
  - audit       : true för poster från "intake.audit", så att audit-spåret
                  kan filtreras fram i Loki/ELK även när filsinken är av

Uppladdade filnamn och klient-IP loggas, filinnehåll och tokens aldrig.
"""

import logging
import logging.config
import os

from pythonjsonlogger.jsonlogger import JsonFormatter  # type: ignore[import-untyped]

SERVICE_NAME = "intake"
AUDIT_LOGGER = "intake.audit"

# Loggers som skrivs direkt till JSON-handlern i stället för via root
_OWN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "intake")


class IntakeJsonFormatter(JsonFormatter):
    def __init__(self, *args, environment: str = "production", **kwargs):
        super().__init__(*args, **kwargs)
        self.environment = environment

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = log_record.pop("levelname", record.levelname)
        log_record["logger"] = log_record.pop("name", record.name)
        log_record["service"] = SERVICE_NAME
        log_record["environment"] = self.environment
        if record.name == AUDIT_LOGGER:
            log_record["audit"] = True


def build_logging_config(level: str, environment: str) -> dict:
    loggers = {
        name: {"handlers": ["json"], "level": level, "propagate": False}
        for name in _OWN_LOGGERS
    }
    # Audit-händelser loggas på INFO oavsett LOG_LEVEL
    loggers[AUDIT_LOGGER] = {"handlers": ["json"], "level": "INFO", "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": IntakeJsonFormatter,
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
                "rename_fields": {"asctime": "timestamp"},
                "environment": environment,
            },
        },
        "handlers": {
            "json": {
                "class": "logging.StreamHandler",
                "formatter": "json",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["json"], "level": level},
        "loggers": loggers,
    }


def setup_logging(level: str | None = None) -> None:
    """
    Aktivera JSON-loggning. Anropas en gång från intake.main.run, inte från
    create_app, så att tester kan fånga loggar med caplog.
    """
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    environment = os.getenv("ENVIRONMENT", "production")
    logging.config.dictConfig(build_logging_config(log_level, environment))
