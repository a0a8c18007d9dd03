import logging

import pytest

from msak.logging_setup import configure_logging

NAMES = ("websockets", "msak.net")


@pytest.fixture
def isolated_loggers(restore_logging):
    saved = {name: logging.getLogger(name).level for name in NAMES}
    yield
    for name, level in saved.items():
        logging.getLogger(name).setLevel(level)


def test_per_logger_levels_and_log_file(app_config, isolated_loggers):
    app_config.logging.levels = {"websockets": "warning", "msak.net": "ERROR"}
    log_path = configure_logging(app_config)

    assert log_path == app_config.paths.logs_dir / "msak.log"
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("websockets").level == logging.WARNING
    assert logging.getLogger("msak.net").level == logging.ERROR
    assert not logging.getLogger("msak.net.sockets").isEnabledFor(logging.INFO)

    logging.getLogger("msak.measurements").info("run finished")
    for handler in logging.getLogger().handlers:
        handler.flush()
    line = log_path.read_text(encoding="utf-8").splitlines()[-1]
    assert "[INFO] MainThread msak.measurements - run finished" in line


def test_verbose_resets_overrides(app_config, isolated_loggers):
    app_config.logging.level = "WARNING"
    app_config.logging.levels = {"websockets": "ERROR"}
    configure_logging(app_config, verbose=True)

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("websockets").level == logging.NOTSET
    assert logging.getLogger("websockets").isEnabledFor(logging.DEBUG)


def test_unknown_level_names_fall_back_to_info(app_config, isolated_loggers):
    app_config.logging.level = "chatty"
    app_config.logging.levels = {"msak.net": "loud"}
    configure_logging(app_config)

    assert logging.getLogger().level == logging.INFO
    assert logging.getLogger("msak.net").level == logging.INFO
