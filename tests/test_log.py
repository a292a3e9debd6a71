import io
import logging

from tabmerge.core.log import PACKAGE_LOGGER_NAME, configure_logging, get_logger, job_logger, temp_level
from tabmerge.core.progress import log_progress


def _cleanup(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


def test_get_logger_defaults_to_package_logger():
    assert get_logger().name == PACKAGE_LOGGER_NAME
    assert get_logger("tabmerge.core.reader").parent.name in {"tabmerge.core", PACKAGE_LOGGER_NAME}


def test_configure_logging_does_not_stack_handlers():
    name = "tabmerge.test_configure"
    stream = io.StringIO()
    logger = configure_logging(level="DEBUG", stream=stream, logger_name=name)
    configure_logging(level="warning", stream=stream, logger_name=name)
    try:
        streams = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
        assert len(streams) == 1
        assert logger.level == logging.WARNING
        assert logger.propagate is True
        logger.warning("disk almost full")
        assert "disk almost full" in stream.getvalue()
    finally:
        _cleanup(logger)


def test_configure_logging_can_disable_propagation():
    name = "tabmerge.test_propagate"
    logger = configure_logging(level=logging.INFO, stream=io.StringIO(), propagate=False, logger_name=name)
    try:
        assert logger.propagate is False
    finally:
        _cleanup(logger)


def test_temp_level_restores_previous_level():
    name = "tabmerge.test_temp"
    logger = get_logger(name)
    logger.setLevel(logging.ERROR)
    with temp_level("DEBUG", name) as tmp:
        assert tmp is logger
        assert logger.level == logging.DEBUG
    assert logger.level == logging.ERROR
    logger.setLevel(logging.NOTSET)


def test_log_progress_formats_percentages(caplog):
    with caplog.at_level(logging.INFO, logger="tabmerge.core.progress"):
        log_progress(30, 100, "read", "files read")
        log_progress(5000, -1, "read")
    messages = [r.getMessage() for r in caplog.records]
    assert "[read] 30.0% (30/100) files read" in messages
    assert "[read] 5000" in messages


def test_job_logger_prefixes_messages_and_tags_records(caplog):
    adapter = job_logger("tabmerge.core.reader", "ab12cd34")
    with caplog.at_level(logging.INFO, logger="tabmerge.core.reader"):
        adapter.info("read %d rows", 7)
    record = caplog.records[-1]
    assert record.getMessage() == "[ab12cd34] read 7 rows"
    assert record.job_id == "ab12cd34"
    assert job_logger(None, None).job_id == "-"


def test_configure_logging_keeps_host_handlers_and_switches_stream():
    name = "tabmerge.test_switch"
    logger = get_logger(name)
    host = logging.StreamHandler(io.StringIO())
    logger.addHandler(host)
    first, second = io.StringIO(), io.StringIO()
    try:
        configure_logging(level="INFO", stream=first, logger_name=name)
        configure_logging(level="INFO", stream=second, fmt="%(levelname)s %(message)s", logger_name=name)
        assert host in logger.handlers
        assert len(logger.handlers) == 2
        logger.info("switched")
        assert first.getvalue() == ""
        assert second.getvalue() == "INFO switched\n"
    finally:
        _cleanup(logger)
