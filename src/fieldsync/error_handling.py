"""Error taxonomy and user-facing error display."""

import logging
import sys
from enum import Enum
from pathlib import Path

from rich.console import Console

logger = logging.getLogger(__name__)
console = Console()


class ErrorCategory(Enum):
    """Categories of errors for better user experience."""

    CONFIGURATION = "configuration"
    NETWORK = "network"
    SERVER = "server"
    STORAGE = "storage"
    PAYLOAD = "payload"
    SYSTEM = "system"
    USER_INPUT = "user_input"


class FieldSyncError(Exception):
    """Base exception for FieldSync with enhanced user experience."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        solution: str | None = None,
        details: str | None = None,
        recoverable: bool = True,
        log_level: int = logging.ERROR,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.solution = solution
        self.details = details
        self.recoverable = recoverable
        self.log_level = log_level
        self.original_error = original_error

    def display_to_user(self) -> None:
        """Display error to user with helpful context."""
        category_styles = {
            ErrorCategory.CONFIGURATION: ("⚙️", "yellow"),
            ErrorCategory.NETWORK: ("🌐", "orange1"),
            ErrorCategory.SERVER: ("🛰️", "red"),
            ErrorCategory.STORAGE: ("🗄️", "red"),
            ErrorCategory.PAYLOAD: ("📄", "yellow"),
            ErrorCategory.SYSTEM: ("💻", "red"),
            ErrorCategory.USER_INPUT: ("⌨️", "yellow"),
        }

        emoji, color = category_styles.get(self.category, ("❌", "red"))

        console.print(
            f"\n{emoji} [{color} bold]{self.category.value.title()} Error[/{color} bold]",
        )
        console.print(f"[{color}]{self.message}[/{color}]")

        if self.details:
            console.print(f"\n[dim]Details:[/dim] {self.details}")

        if self.solution:
            console.print(f"\n[green]💡 Solution:[/green] {self.solution}")

        if self.recoverable:
            console.print(
                "\n[dim]This error may be temporary. You can try again.[/dim]",
            )
        else:
            console.print(
                "\n[dim]This error requires intervention before continuing.[/dim]",
            )

        if self.original_error:
            logger.log(
                self.log_level,
                "%s: %s",
                self.category.value,
                self.message,
                exc_info=self.original_error,
            )
        else:
            logger.log(self.log_level, "%s: %s", self.category.value, self.message)


class ConfigurationError(FieldSyncError):
    """Configuration-related errors."""

    def __init__(self, message: str, *, config_path: Path | None = None, **kwargs):
        solution = kwargs.pop("solution", None)
        if not solution and config_path:
            solution = f"Check your configuration file at {config_path}"
        super().__init__(
            message,
            ErrorCategory.CONFIGURATION,
            solution=solution,
            **kwargs,
        )


class TransientNetworkError(FieldSyncError):
    """Server unreachable or timed out; the work is retried on a later cycle."""

    def __init__(self, message: str, **kwargs):
        solution = kwargs.pop(
            "solution",
            "Queued operations are kept and will upload once the network returns",
        )
        super().__init__(
            message,
            ErrorCategory.NETWORK,
            solution=solution,
            log_level=kwargs.pop("log_level", logging.WARNING),
            **kwargs,
        )


class ServerError(FieldSyncError):
    """The server rejected a whole request."""

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs):
        self.status_code = status_code
        details = kwargs.pop("details", None)
        if details is None and status_code is not None:
            details = f"HTTP status {status_code}"
        super().__init__(
            message,
            ErrorCategory.SERVER,
            details=details,
            **kwargs,
        )


class StorageContentionError(FieldSyncError):
    """The local database stayed locked after every retry."""

    def __init__(self, message: str, **kwargs):
        solution = kwargs.pop(
            "solution",
            "Make sure no other FieldSync process is holding the database",
        )
        super().__init__(
            message,
            ErrorCategory.STORAGE,
            solution=solution,
            recoverable=False,
            log_level=logging.CRITICAL,
            **kwargs,
        )


class PayloadError(FieldSyncError):
    """An operation payload is missing required fields or cannot be decoded."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.PAYLOAD, **kwargs)


def handle_error(
    error: Exception,
    *,
    category: ErrorCategory | None = None,
    **kwargs,
) -> None:
    """Convert generic exceptions to FieldSyncError and display to user."""
    if isinstance(error, FieldSyncError):
        error.display_to_user()
        return

    if category is None:
        if isinstance(error, ConnectionError | TimeoutError):
            category = ErrorCategory.NETWORK
        elif isinstance(error, ValueError | KeyError):
            category = ErrorCategory.USER_INPUT
        else:
            category = ErrorCategory.SYSTEM

    wrapped = FieldSyncError(
        message=str(error) or "An unexpected error occurred",
        category=category,
        original_error=error,
        **kwargs,
    )
    wrapped.display_to_user()


def graceful_exit(exit_code: int = 1) -> None:
    """Exit gracefully with helpful message."""
    if exit_code == 0:
        console.print("\n[green]✨ FieldSync completed successfully[/green]")
    else:
        console.print("\n[red]FieldSync encountered errors and had to stop[/red]")
        console.print("[dim]Check the logs above for details on what went wrong[/dim]")
        console.print(
            "[dim]Run 'fieldsync config validate' to check your configuration[/dim]",
        )

    sys.exit(exit_code)
