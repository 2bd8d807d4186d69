"""HZPP delay monitoring: timetable ingestion and real-time delay tracking."""

__version__ = "0.1.0"
