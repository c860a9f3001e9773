"""Unit tests for propflow logging module."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator

import pytest

from propflow.core.logging import ColoredFormatter, get_logger, set_default_level

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_default_level() -> Iterator[None]:
    """Save and restore the module-level _default_level after each test."""
    from propflow.core import logging as propflow_logging

    original = propflow_logging._default_level
    yield
    set_default_level(original)


class TestSetDefaultLevel:
    def test_changes_module_variable(self) -> None:
        from propflow.core import logging as propflow_logging

        set_default_level(logging.DEBUG)
        assert propflow_logging._default_level == logging.DEBUG

    def test_new_logger_uses_default_level(self) -> None:
        set_default_level(logging.WARNING)
        logger = get_logger(f'test_{uuid.uuid4().hex[:8]}')
        assert logger.level == logging.WARNING

    def test_existing_loggers_follow_level_change(self) -> None:
        logger = get_logger(f'test_{uuid.uuid4().hex[:8]}')
        set_default_level(logging.ERROR)
        assert logger.level == logging.ERROR
        for handler in logger.handlers:
            assert handler.level == logging.ERROR


class TestGetLogger:
    def test_namespaced_under_propflow(self) -> None:
        assert get_logger('dispatcher').name == 'propflow.dispatcher'

    def test_single_handler_and_no_propagation(self) -> None:
        name = f'test_{uuid.uuid4().hex[:8]}'
        first = get_logger(name)
        second = get_logger(name)
        assert first is second
        assert len(first.handlers) == 1
        assert first.propagate is False


class TestColoredFormatter:
    def test_component_and_level_in_output(self) -> None:
        record = logging.LogRecord(
            name='propflow.governor',
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg='paused %s',
            args=('now',),
            exc_info=None,
        )
        output = ColoredFormatter().format(record)
        assert '[governor]' in output
        assert '[WARNING]' in output
        assert 'paused now' in output

    def _record(self, level: int = logging.ERROR) -> logging.LogRecord:
        return logging.LogRecord(
            name='propflow.dispatcher',
            level=level,
            pathname=__file__,
            lineno=1,
            msg='run %s failed',
            args=('r-1',),
            exc_info=None,
        )

    def test_plain_output_has_no_escape_codes(self) -> None:
        output = ColoredFormatter(use_color=False).format(self._record())
        assert '\033[' not in output
        assert output.endswith('[dispatcher]  [ERROR]    run r-1 failed')

    def test_colored_output(self) -> None:
        output = ColoredFormatter(use_color=True).format(self._record())
        assert ColoredFormatter.LEVEL_COLORS['ERROR'] in output

    def test_no_color_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv('PROPFLOW_FORCE_COLOR', raising=False)
        monkeypatch.setenv('NO_COLOR', '1')
        assert ColoredFormatter().use_color is False

    def test_force_color_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv('PROPFLOW_FORCE_COLOR', '1')
        monkeypatch.setenv('NO_COLOR', '1')
        assert ColoredFormatter().use_color is True


class TestLevelFromEnv:
    @pytest.mark.parametrize(
        ('value', 'expected'),
        [
            ('debug', logging.DEBUG),
            ('WARNING', logging.WARNING),
            ('', logging.INFO),
            ('chatty', logging.INFO),
        ],
    )
    def test_env_level(self, monkeypatch: pytest.MonkeyPatch, value: str, expected: int) -> None:
        from propflow.core import logging as propflow_logging

        monkeypatch.setenv(propflow_logging.LOG_LEVEL_ENV, value)
        assert propflow_logging._level_from_env() == expected
