import concurrent.futures
import logging

import pytest

from html_image_service.html_image_service_application import THIRD_PARTY_LOGGERS, setup_logging


@pytest.fixture(autouse=True)
def cleanup_handlers():
    """Clean up logging handlers before and after each test."""
    root_logger = logging.getLogger()
    original_level = root_logger.level
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    yield

    for handler in root_logger.handlers[:]:
        handler.flush()
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.setLevel(original_level)
    for logger_name in THIRD_PARTY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.NOTSET)


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    log_dir = tmp_path / "logs"
    monkeypatch.setenv("LOG_DIR", str(log_dir))
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    return log_dir


def flush_handlers() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def test_log_file_creation(log_dir):
    log_file = setup_logging()

    assert log_file.exists()
    assert log_file.parent == log_dir
    assert log_file.name.startswith("html-image-service_")
    assert log_file.name.endswith(".log")


def test_log_level_from_env(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    setup_logging()

    assert logging.getLogger().getEffectiveLevel() == logging.DEBUG
    for logger_name in THIRD_PARTY_LOGGERS:
        assert logging.getLogger(logger_name).level == logging.DEBUG


def test_invalid_log_level_defaults_to_info(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "INVALID")
    setup_logging()
    assert logging.getLogger().getEffectiveLevel() == logging.INFO


def test_log_message_format(log_dir):
    log_file = setup_logging()
    logging.getLogger("html_image_service.render_service").info("Rendered png image")
    flush_handlers()

    lines = [line for line in log_file.read_text().splitlines() if "Rendered png image" in line]
    assert len(lines) == 1
    parts = lines[0].split(" - ")
    assert len(parts) == 4
    assert parts[1] == "html_image_service.render_service"
    assert parts[2] == "INFO"
    assert parts[3] == "Rendered png image"


def test_messages_below_level_are_dropped(log_dir):
    log_file = setup_logging()
    logging.debug("Debug message")
    logging.warning("Warning message")
    flush_handlers()

    content = log_file.read_text()
    assert "Debug message" not in content
    assert "Warning message" in content


def test_concurrent_logging(log_dir):
    log_file = setup_logging()

    def write_log(i: int) -> None:
        logging.info("Concurrent message %d", i)

    with concurrent.futures.ThreadPoolExecutor(max_workers=4) as executor:
        list(executor.map(write_log, range(100)))
    flush_handlers()

    content = log_file.read_text()
    for i in range(100):
        assert f"Concurrent message {i}\n" in content


def test_invalid_log_level_is_reported(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "LOUD")
    log_file = setup_logging()
    flush_handlers()

    assert "Unknown LOG_LEVEL 'LOUD', using INFO" in log_file.read_text()


def test_uvicorn_logs_reach_log_file(log_dir):
    log_file = setup_logging()
    logging.getLogger("uvicorn.error").info("Application startup complete.")
    flush_handlers()

    assert logging.getLogger("uvicorn.error").handlers == []
    assert "uvicorn.error - INFO - Application startup complete." in log_file.read_text()
