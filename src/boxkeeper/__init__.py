"""boxkeeper - Run one long-lived service container on a local or remote Docker engine."""

__version__ = "0.4.0"
