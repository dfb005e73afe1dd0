"""
Utilities for canonicalizing transport-encoded paths and resolving local destinations.
"""

import os
from pathlib import Path
from urllib.parse import unquote

from modelscope_cli.exceptions import FilesystemError


def _decode_once(raw: str) -> str:
    """Collapses literal '%20'/'%25' sequences, then percent-decodes the result."""
    collapsed = raw.replace("%20", " ").replace("%25", "%")
    return unquote(collapsed)


def normalize(raw: str) -> str:
    """
    Canonicalizes a transport-encoded path string into its filesystem form.

    Decoding is repeated until the string stops changing, so the result does not
    depend on how many times the transport layer encoded the input and
    ``normalize(normalize(x)) == normalize(x)`` holds for every input.
    Invalid escapes such as ``%zz`` are kept verbatim.
    """
    current = raw
    while True:
        decoded = _decode_once(current)
        if decoded == current:
            return current
        current = decoded


def safe_segment(name: str) -> str:
    """
    Normalizes a single remote name and checks that it is usable as one path
    component, so a listing can never write outside its destination directory.
    """
    segment = normalize(name)
    separators = {"/", os.sep, os.altsep or "/"}
    if (
        segment in ("", ".", "..")
        or "\x00" in segment
        or any(sep in segment for sep in separators)
    ):
        raise FilesystemError(f"Unsafe entry name '{name}'")
    return segment


def get_default_download_root() -> Path:
    """Returns the user's documents directory, the default download root."""
    if os.name == "nt":
        base_dir = Path(os.getenv("USERPROFILE", "~")) / "Documents"
    else:
        base_dir = Path(os.getenv("XDG_DOCUMENTS_DIR", "~/Documents"))
    return base_dir.expanduser()


def resolve_destination_root(destination: str | Path | None) -> Path:
    """
    Resolves the caller's destination into a normalized absolute directory path.
    An empty value selects the platform default.
    """
    if destination is None or str(destination) == "":
        root = get_default_download_root()
    else:
        root = Path(normalize(str(destination))).expanduser()
    return Path(os.path.abspath(root))


def create_dir(directory_path: Path) -> None:
    """Creates a directory (with parents) if it does not already exist."""
    try:
        directory_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(
            f"Cannot create directory '{directory_path}': {e}"
        ) from e
