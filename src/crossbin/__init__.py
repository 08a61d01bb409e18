"""crossbin - reproducible static binary builds for any Linux target."""

__version__ = "0.1.0"
