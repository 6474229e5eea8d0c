"""
Error mapping and CLI utilities.

Provides centralized exception-to-exit-code mapping and CLI command wrappers
to ensure consistent error handling across all Typer commands.
"""
from __future__ import annotations

import logging
import typer
from typing import Callable, TypeVar

T = TypeVar('T')

logger = logging.getLogger(__name__)

EXIT_CODES = {
    "NotFoundError": 1,
    "ValueError": 2,
    "ValidationError": 2,
    "DecodeError": 2,
    "NetworkError": 3,
    "FetchCancelled": 3,
    "StoreIOError": 4,
    "StoreClosedError": 4,
    "DigestMismatch": 4,
    "StoreCorruptionError": 5,
}


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    Returns:
    - 1: Not cached / not found (NotFoundError)
    - 2: Invalid input or undecodable record (ValueError, ValidationError,
         DecodeError)
    - 3: Network failure or cancellation (NetworkError, FetchCancelled), and
         the fallback for unknown exceptions
    - 4: Store I/O failure (StoreIOError, StoreClosedError, DigestMismatch)
    - 5: Store corruption found by inspection (StoreCorruptionError)

    Args:
        exc: Exception to map

    Returns:
        Exit code (1-5, with 3 as fallback for unknown exceptions)
    """
    return EXIT_CODES.get(type(exc).__name__, 3)


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Unified error wrapper for CLI commands.

    Executes the given function and maps any exceptions to appropriate
    exit codes using typer.Exit. This centralizes error handling so
    CLI commands don't need individual try/except blocks.

    Args:
        func: Function to execute

    Returns:
        Function result if successful

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    try:
        return func()
    except typer.Exit:
        raise
    except Exception as e:
        from .printers import print_error
        logger.debug("Command failed", exc_info=True)
        print_error(e)
        raise typer.Exit(code=exit_code_for(e)) from e
