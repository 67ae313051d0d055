"""Celery worker: app factory and ingestion tasks."""
