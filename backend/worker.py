from __future__ import annotations

import logging
import os

import redis
from rq import Queue, Worker

from billing.config import get_settings
from billing.firebase import init_firebase


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    init_firebase(settings)

    conn = redis.from_url(settings.redis_url)
    listen = [settings.provisioning_queue_name]
    worker = Worker([Queue(name, connection=conn) for name in listen], connection=conn)
    # Retries with an interval wait in the scheduled registry; the scheduler re-queues them.
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
    main()
