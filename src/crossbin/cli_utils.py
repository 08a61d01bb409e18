"""CLI utility functions for crossbin.

This module provides common utilities used across CLI commands including:
- Target and output-directory resolution
- Error handling and formatting
"""

import sys
import traceback
from pathlib import Path
from typing import List, Optional, Sequence

from crossbin.config import TargetTriple
from crossbin.errors import CrossbinError


def split_list(values: Sequence[str]) -> List[str]:
    """Flatten repeated options and comma-separated lists, dropping blanks."""
    items: List[str] = []
    for value in values:
        items.extend(item.strip() for item in value.split(",") if item.strip())
    return items


class TargetResolver:
    """Turns command-line target strings into TargetTriples."""

    @staticmethod
    def parse_targets(values: Sequence[str]) -> List[TargetTriple]:
        """Parse and de-duplicate target strings, keeping their order.

        Accepts repeated options as well as comma-separated lists.

        Raises:
            InvalidTargetError: If a target cannot be parsed
        """
        targets: List[TargetTriple] = []
        for item in split_list(values):
            target = TargetTriple.parse(item)
            if target not in targets:
                targets.append(target)
        return targets

    @staticmethod
    def output_dir_for(
        output_dir: Optional[Path], target: TargetTriple, multiple: bool
    ) -> Optional[Path]:
        """Output directory of one target; multi-target builds get a subdirectory each."""
        if not multiple:
            return output_dir
        return (output_dir or Path("output")) / str(target)


class ErrorFormatter:
    """Formats and displays messages with ANSI color codes."""

    # ANSI color codes
    RED = "\033[1;31m"
    GREEN = "\033[1;32m"
    YELLOW = "\033[1;33m"
    RESET = "\033[0m"

    @staticmethod
    def print_error(title: str, message: str = "") -> None:
        """Print formatted error message.

        Args:
            title: Error title (e.g., "build: CompileError: ...")
            message: Optional details printed below the title
        """
        print(f"{ErrorFormatter.RED}✗ {title}{ErrorFormatter.RESET}")
        if message:
            print()
            print(message)
            print()

    @staticmethod
    def print_success(message: str) -> None:
        """Print formatted success message.

        Args:
            message: Success message
        """
        print(f"{ErrorFormatter.GREEN}✓ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def print_warning(message: str) -> None:
        """Print formatted warning message.

        Args:
            message: Warning message
        """
        print(f"{ErrorFormatter.YELLOW}✗ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def format_failure(stage: Optional[str], error: BaseException) -> str:
        """One-line failure summary: ``<stage>: <ErrorType>: <message>``."""
        first_line = str(error).strip().splitlines()[0] if str(error).strip() else ""
        text = f"{type(error).__name__}: {first_line}" if first_line else type(error).__name__
        return f"{stage}: {text}" if stage else text

    @staticmethod
    def handle_crossbin_error(
        error: CrossbinError, stage: Optional[str] = None, verbose: bool = False
    ) -> None:
        """Report a crossbin error and exit with its taxonomy code.

        Args:
            error: The error to handle
            stage: Pipeline stage the error was raised in
            verbose: Whether to print the full message and traceback
        """
        ErrorFormatter.print_error(ErrorFormatter.format_failure(stage, error))
        if verbose:
            print(str(error))
            print("Traceback:")
            print("".join(traceback.format_exception(type(error), error, error.__traceback__)))
        sys.exit(error.exit_code)

    @staticmethod
    def handle_keyboard_interrupt() -> None:
        """Handle KeyboardInterrupt with standard formatting."""
        ErrorFormatter.print_warning("Build interrupted")
        sys.exit(130)  # Standard exit code for SIGINT

    @staticmethod
    def handle_unexpected_error(error: Exception, verbose: bool = False) -> None:
        """Handle unexpected errors with standard formatting.

        Args:
            error: The exception to handle
            verbose: Whether to print traceback
        """
        ErrorFormatter.print_error(f"Unexpected error: {type(error).__name__}: {error}")

        if verbose:
            print("Traceback:")
            print(traceback.format_exc())

        sys.exit(1)


class PathValidator:
    """Validates project paths and directories."""

    @staticmethod
    def validate_project_dir(project_dir: Path) -> None:
        """Validate that project directory exists and is a directory.

        Args:
            project_dir: Path to validate

        Raises:
            SystemExit: If path doesn't exist or isn't a directory
        """
        if not project_dir.exists():
            ErrorFormatter.print_error(f"Error: Path does not exist: {project_dir}")
            sys.exit(2)
        if not project_dir.is_dir():
            ErrorFormatter.print_error(f"Error: Path is not a directory: {project_dir}")
            sys.exit(2)
