"""pushtocode - drive an interactive agent CLI from a thin remote client."""

__version__ = "0.1.0"
