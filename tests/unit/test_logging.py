import json
import logging

import pytest

from radical.futures.logging import get_logger, init_default_logger


@pytest.fixture
def isolated_logger():
    name = "radical.futures.test_logging"
    logger = logging.getLogger(name)
    yield name
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logging.captureWarnings(False)


def test_console_output(isolated_logger, capsys):
    logger = init_default_logger(logging.INFO, logger_name=isolated_logger,
                                 use_colors=False)
    logger.warning("hello")
    logger.debug("hidden")

    out = capsys.readouterr().out
    assert "WARNING │ [test_logging] │ hello" in out
    assert "hidden" not in out


def test_backend_component_name(isolated_logger, capsys):
    logger = init_default_logger(logging.INFO, logger_name=isolated_logger,
                                 use_colors=False)
    child = logging.getLogger(f"{isolated_logger}.backends.execution.cluster")
    child.warning("lost worker")

    assert "[backend(cluster)] │ lost worker" in capsys.readouterr().out


def test_file_and_structured_output(isolated_logger, tmp_path):
    log_file = tmp_path / "run.log"
    logger = init_default_logger(logging.INFO, logger_name=isolated_logger,
                                 output_file=log_file, structured_logging=True,
                                 use_colors=False)
    logger.warning("to file", extra={"future": "future.000001"})
    for handler in logger.handlers:
        handler.flush()

    assert "to file" in log_file.read_text()
    record = json.loads(tmp_path.joinpath("run.json").read_text().splitlines()[-1])
    assert record["message"] == "to file"
    assert record["future"] == "future.000001"


def test_get_logger_returns_named_logger(isolated_logger):
    assert get_logger(isolated_logger).name == isolated_logger
