"""Microsoft 365 tool gateway: resilient Graph request and batch execution."""

__version__ = "0.1.0"
