"""Print the logging configuration Switchboard would use with the current env."""

import dataclasses
import json
import logging
import os
import sys

from switchboard.app_logging import ACCESS_LOGGER_NAME, APP_LOGGER_NAME, LogSettings


def get_log_config():
    settings = LogSettings.from_env()
    settings = dataclasses.replace(settings, log_dir=os.path.abspath(settings.log_dir))
    return {
        "log_dir": settings.log_dir,
        "log_level": logging.getLevelName(settings.level),
        "log_json": settings.json_format,
        "log_request_bodies": settings.request_bodies,
        "retention_days": settings.retention_days,
        "rotate_utc": settings.rotate_utc,
        "loggers": {
            name: settings.file_for(name) for name in (APP_LOGGER_NAME, ACCESS_LOGGER_NAME)
        },
    }


def main():
    sys.stdout.write(json.dumps(get_log_config(), indent=2) + "\n")


if __name__ == "__main__":
    main()
