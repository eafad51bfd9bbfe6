import json
import logging
from pathlib import Path

from pocket_runtime.config import LogConfig
from pocket_runtime.logging_utils import log_event, setup_rotating_logger


def test_rotating_loggers_are_isolated(tmp_path: Path):
    log_a = tmp_path / "a.log"
    log_b = tmp_path / "b.log"
    cfg_a = LogConfig(path=log_a, max_bytes=80, backup_count=1)
    cfg_b = LogConfig(path=log_b, max_bytes=40, backup_count=2)

    logger_a = setup_rotating_logger("runtime:a", cfg_a)
    logger_b = setup_rotating_logger("runtime:b", cfg_b)

    logger_a.info("first")
    logger_b.info("second")

    assert log_a.exists()
    assert log_b.exists()
    assert logger_a.handlers[0] is not logger_b.handlers[0]

    # Rotation should be contained per logger
    for _ in range(10):
        logger_b.info("x" * 20)
    logger_b.handlers[0].flush()
    assert (tmp_path / "b.log.1").exists()

    same_logger = setup_rotating_logger("runtime:a", cfg_a)
    assert same_logger is logger_a
    assert len(same_logger.handlers) == 1


def test_log_event_writes_one_json_object(tmp_path: Path):
    cfg = LogConfig(path=tmp_path / "events.log", max_bytes=10_000, backup_count=1)
    logger = setup_rotating_logger("runtime:events", cfg)

    log_event(
        logger,
        logging.WARNING,
        "pocket_runtime.server.exited",
        exc=RuntimeError("boom"),
        venv=tmp_path / "venv",
        exit_code=3,
    )
    logger.handlers[0].flush()

    line = cfg.path.read_text(encoding="utf-8").strip().splitlines()[-1]
    payload = json.loads(line.split("] ", 1)[1])
    assert payload == {
        "event": "pocket_runtime.server.exited",
        "venv": str(tmp_path / "venv"),
        "exit_code": 3,
        "error": "boom",
        "error_type": "RuntimeError",
    }


def test_log_event_skips_disabled_levels(tmp_path: Path):
    cfg = LogConfig(path=tmp_path / "quiet.log", max_bytes=10_000, backup_count=1)
    logger = setup_rotating_logger("runtime:quiet", cfg)

    log_event(logger, logging.DEBUG, "pocket_runtime.debug", detail="hidden")
    logger.handlers[0].flush()

    assert cfg.path.read_text(encoding="utf-8") == ""
