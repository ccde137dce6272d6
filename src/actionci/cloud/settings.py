from __future__ import annotations
import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///.actionci/actionci.db")
REDIS_URL = os.environ.get("REDIS_URL")  # unset -> in-process event queue
QUEUE_NAME = os.environ.get("QUEUE_NAME", "actionci:events")
MAX_CONCURRENT_JOBS = int(os.environ.get("MAX_CONCURRENT_JOBS", "0")) or None
APPROVAL_TIMEOUT_SECONDS = float(os.environ.get("APPROVAL_TIMEOUT_SECONDS", "0")) or None
NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL")
ENVIRONMENTS_FILE = os.environ.get("ENVIRONMENTS_FILE")
DISPATCH_POLL_SECONDS = float(os.environ.get("DISPATCH_POLL_SECONDS", "1"))
