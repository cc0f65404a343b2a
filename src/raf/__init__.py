"""RAF: run plan files through an autonomous coding agent."""

__version__ = "0.1.0"
