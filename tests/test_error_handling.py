"""Tests for the error handling system."""

import logging
from pathlib import Path
from unittest.mock import patch

import pytest

from fieldsync.error_handling import (
    ConfigurationError,
    ErrorCategory,
    FieldSyncError,
    PayloadError,
    ServerError,
    StorageContentionError,
    TransientNetworkError,
    graceful_exit,
    handle_error,
)


class TestFieldSyncError:
    """Test the base FieldSyncError class."""

    def test_basic_error_creation(self):
        """Test creating a basic FieldSyncError."""
        error = FieldSyncError(
            "Test error message",
            ErrorCategory.CONFIGURATION,
            solution="Fix your config",
        )

        assert error.message == "Test error message"
        assert error.category == ErrorCategory.CONFIGURATION
        assert error.solution == "Fix your config"
        assert error.recoverable is True
        assert error.log_level == logging.ERROR

    def test_error_display(self, capsys):
        """Test error display to user."""
        error = FieldSyncError(
            "Configuration is invalid",
            ErrorCategory.CONFIGURATION,
            solution="Check your config file",
            details="api_url must start with http://",
        )

        error.display_to_user()
        captured = capsys.readouterr()

        assert "Configuration Error" in captured.out
        assert "Configuration is invalid" in captured.out
        assert "Check your config file" in captured.out
        assert "api_url must start" in captured.out

    def test_non_recoverable_error(self, capsys):
        error = FieldSyncError("Fatal system error", ErrorCategory.SYSTEM, recoverable=False)

        error.display_to_user()
        captured = capsys.readouterr()

        assert "requires intervention" in captured.out

    @patch("fieldsync.error_handling.logger")
    def test_error_logging(self, mock_logger):
        """Test error logging with original exception."""
        original = ValueError("Original error")
        error = FieldSyncError(
            "Wrapped error",
            ErrorCategory.SYSTEM,
            original_error=original,
            log_level=logging.WARNING,
        )

        error.display_to_user()

        mock_logger.log.assert_called_once_with(
            logging.WARNING,
            "%s: %s",
            "system",
            "Wrapped error",
            exc_info=original,
        )


class TestSpecificErrors:
    """Test specific error types."""

    def test_configuration_error_points_at_file(self):
        error = ConfigurationError("Invalid configuration", config_path=Path("/etc/fs.toml"))

        assert error.category == ErrorCategory.CONFIGURATION
        assert error.solution == "Check your configuration file at /etc/fs.toml"

    def test_transient_network_error(self):
        error = TransientNetworkError("Could not reach server")

        assert error.category == ErrorCategory.NETWORK
        assert error.recoverable is True
        assert error.log_level == logging.WARNING
        assert "upload once the network returns" in error.solution

    def test_server_error_status(self):
        error = ServerError("Server rejected request", status_code=422)

        assert error.category == ErrorCategory.SERVER
        assert error.status_code == 422
        assert error.details == "HTTP status 422"

    def test_server_error_keeps_explicit_details(self):
        error = ServerError("Rejected", status_code=400, details="bad field")

        assert error.details == "bad field"

    def test_storage_contention_is_fatal(self):
        error = StorageContentionError("Database stayed locked")

        assert error.category == ErrorCategory.STORAGE
        assert error.recoverable is False
        assert error.log_level == logging.CRITICAL

    def test_payload_error(self):
        error = PayloadError("Missing roll_number")

        assert error.category == ErrorCategory.PAYLOAD
        assert "Missing roll_number" in str(error)


class TestErrorHandler:
    """Test error handler functionality."""

    def test_handle_fieldsync_error(self, capsys):
        handle_error(ServerError("Batch sync failed"))
        captured = capsys.readouterr()

        assert "Server Error" in captured.out
        assert "Batch sync failed" in captured.out

    def test_wraps_connection_errors(self, capsys):
        handle_error(ConnectionError("Network is unreachable"))
        captured = capsys.readouterr()

        assert "Network Error" in captured.out
        assert "Network is unreachable" in captured.out

    def test_wraps_value_errors_as_user_input(self, capsys):
        handle_error(ValueError("bad value"))
        captured = capsys.readouterr()

        assert "User_Input Error" in captured.out

    def test_empty_message_fallback(self, capsys):
        handle_error(RuntimeError())
        captured = capsys.readouterr()

        assert "An unexpected error occurred" in captured.out

    @patch("fieldsync.error_handling.logger")
    def test_handle_error_logging(self, mock_logger):
        handle_error(FieldSyncError("Test error", ErrorCategory.CONFIGURATION))

        mock_logger.log.assert_called_once()


class TestGracefulExit:
    """Test process exit messaging."""

    def test_success(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            graceful_exit(0)

        assert exc_info.value.code == 0
        assert "completed successfully" in capsys.readouterr().out

    def test_failure(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            graceful_exit()

        assert exc_info.value.code == 1
        assert "fieldsync config validate" in capsys.readouterr().out
