"""
Console entry point: runs the Typer app and turns escaped errors into exit codes.
"""

import logging
import os
import sys

from rich.console import Console

from modelscope_cli.cli.app import app
from modelscope_cli.cli.formatters import format_error_with_suggestions
from modelscope_cli.exceptions import ModelScopeCliError

EXIT_INTERRUPTED = 130


def _use_utf8_streams() -> None:
    """Windows consoles default to a legacy code page that cannot print the status glyphs."""
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.reconfigure(encoding="utf-8")
        except (AttributeError, TypeError, ValueError):
            continue


def main() -> None:
    if os.name == "nt":
        _use_utf8_streams()

    console = Console(stderr=True)
    try:
        app()
    except KeyboardInterrupt:
        console.print(
            "\n[yellow]Interrupted. Files finished so far are recorded; run the same"
            " command to resume.[/yellow]"
        )
        sys.exit(EXIT_INTERRUPTED)
    except ModelScopeCliError as e:
        console.print(format_error_with_suggestions(e))
        sys.exit(1)
    except Exception as e:
        console.print(format_error_with_suggestions(e, {"type": "Unexpected"}))
        logging.getLogger("modelscope_cli").debug("Full traceback:", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
