"""Core configuration, logging and scheduling."""
