"""Scan-job daemon parts: models, job queue, path conflict checks, resource monitor, socket server and client."""

__version__ = "0.1.0"