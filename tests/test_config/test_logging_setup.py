import json
import logging
from pathlib import Path

import structlog

from ideacode import logging as ideacode_logging
from ideacode.config import Config, set_config


def test_log_file_receives_json_events(tmp_path: Path):
    config = Config()
    config.logging.level = "INFO"
    config.logging.format = "json"
    config.logging.file = str(tmp_path / "logs" / "ideacode.log")
    set_config(config)

    try:
        ideacode_logging.configure_logging()
        ideacode_logging.get_logger("tests").info("turn_settled", round_trips=2)
    finally:
        if ideacode_logging._log_stream is not None:
            ideacode_logging._log_stream.close()
        structlog.reset_defaults()

    lines = (tmp_path / "logs" / "ideacode.log").read_text(encoding="utf-8").splitlines()
    event = json.loads(lines[-1])
    assert event["event"] == "turn_settled"
    assert event["round_trips"] == 2
    assert event["level"] == "info"


def test_http_client_loggers_stay_quiet_at_debug():
    config = Config()
    config.logging.level = "DEBUG"
    set_config(config)

    try:
        ideacode_logging.configure_logging()
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        structlog.reset_defaults()
