"""billsync billing engine: local mirror of provider subscription and invoice state."""

__version__ = "0.1.0"
