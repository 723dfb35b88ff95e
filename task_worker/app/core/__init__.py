"""Worker-wide core helpers."""
SERVICE_NAME = "worker"
