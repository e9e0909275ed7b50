# ABOUTME: Unit tests for logging utilities
# ABOUTME: Tests correlation IDs, the correlation processor and configure_logging

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from resource_sync.utils.logging import (
    add_correlation_id,
    configure_logging,
    correlation_id,
    get_correlation_id,
    new_correlation_id,
    set_correlation_id,
)


def mock_structlog_module(mock_structlog: MagicMock) -> None:
    mock_structlog.contextvars.merge_contextvars = MagicMock()
    mock_structlog.processors.add_log_level = MagicMock()
    mock_structlog.processors.TimeStamper.return_value = MagicMock()
    mock_structlog.processors.JSONRenderer.return_value = MagicMock()
    mock_structlog.dev.ConsoleRenderer.return_value = MagicMock()


@pytest.mark.unit
class TestCorrelationId:
    """Tests for correlation ID generation and context management."""

    def test_get_correlation_id_generates_new_when_empty(self):
        """Test that get_correlation_id generates a new ID when none exists."""
        correlation_id.set("")

        cid = get_correlation_id()

        assert len(cid) == 8
        int(cid, 16)

    def test_get_correlation_id_returns_existing(self):
        """Test that get_correlation_id returns existing ID when set."""
        set_correlation_id("test1234")

        assert get_correlation_id() == "test1234"

    def test_get_correlation_id_preserves_value(self):
        """Test that subsequent calls return the same ID."""
        correlation_id.set("")

        assert get_correlation_id() == get_correlation_id()

    def test_new_correlation_id_replaces(self):
        """Test that each unit of work gets a fresh ID."""
        set_correlation_id("old12345")

        cid = new_correlation_id()

        assert cid != "old12345"
        assert correlation_id.get() == cid

    async def test_tasks_do_not_share_ids(self):
        """Test that concurrent tasks keep their own correlation IDs."""
        set_correlation_id("parent00")

        async def work() -> str:
            cid = new_correlation_id()
            await asyncio.sleep(0)
            return get_correlation_id() if get_correlation_id() == cid else "mixed"

        first, second = await asyncio.gather(work(), work())

        assert "mixed" not in (first, second)
        assert first != second
        assert correlation_id.get() == "parent00"


@pytest.mark.unit
class TestAddCorrelationId:
    """Tests for the add_correlation_id processor function."""

    def test_adds_correlation_id_to_event_dict(self):
        """Test that correlation ID is added to event dictionary."""
        set_correlation_id("proc1234")

        result = add_correlation_id(MagicMock(), "info", {"event": "Flushing changes"})

        assert result["correlation_id"] == "proc1234"
        assert result["event"] == "Flushing changes"

    def test_generates_correlation_id_if_not_set(self):
        """Test that correlation ID is generated if not already set."""
        correlation_id.set("")

        result = add_correlation_id(MagicMock(), "info", {"event": "Informer synced"})

        assert len(result["correlation_id"]) == 8


@pytest.mark.unit
class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_logging_default_is_json(self):
        """Test that JSON output is the default."""
        with patch("resource_sync.utils.logging.structlog") as mock_structlog:
            mock_structlog_module(mock_structlog)

            configure_logging()

            mock_structlog.processors.JSONRenderer.assert_called_once()
            mock_structlog.dev.ConsoleRenderer.assert_not_called()
            mock_structlog.configure.assert_called_once()

    def test_configure_logging_console_output(self):
        """Test configure_logging with console output."""
        with patch("resource_sync.utils.logging.structlog") as mock_structlog:
            mock_structlog_module(mock_structlog)

            configure_logging(json_output=False)

            mock_structlog.dev.ConsoleRenderer.assert_called_once()
            mock_structlog.configure.assert_called_once()

    @pytest.mark.parametrize(
        ("level", "expected"), [("DEBUG", 10), ("info", 20), ("WARNING", 30), ("ERROR", 40)]
    )
    def test_configure_logging_levels(self, level, expected):
        """Test that the level name maps to the filtering level."""
        with patch("resource_sync.utils.logging.structlog") as mock_structlog:
            mock_structlog_module(mock_structlog)

            configure_logging(level=level)

            mock_structlog.make_filtering_bound_logger.assert_called_once_with(expected)

    def test_unknown_level_falls_back_to_info(self):
        """Test that an unknown level name means INFO."""
        with patch("resource_sync.utils.logging.structlog") as mock_structlog:
            mock_structlog_module(mock_structlog)

            configure_logging(level="CHATTY")

            mock_structlog.make_filtering_bound_logger.assert_called_once_with(20)

    def test_configure_logging_processors_order(self):
        """Test that the correlation processor runs before the renderer."""
        with patch("resource_sync.utils.logging.structlog") as mock_structlog:
            mock_structlog_module(mock_structlog)

            configure_logging()

            processors = mock_structlog.configure.call_args[1]["processors"]
            assert len(processors) == 5
            assert processors[3] is add_correlation_id
