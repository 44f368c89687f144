"""Version information."""

_VERSION = "2.10.0"


def version() -> str:
    """Return the semantic version string of the package."""
    return _VERSION