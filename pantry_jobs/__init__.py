"""PantryJobs: background OCR / AI job queue with a polling client."""

__version__ = "1.0.0"
