"""FieldSync - offline-first operation queue and synchronization client."""

__version__ = "0.1.0"
