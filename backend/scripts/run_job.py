#!/usr/bin/env python3
import argparse
import json
import logging

from billing.config import get_settings
from billing.firebase import get_firestore_client, get_storage_bucket, init_firebase
from billing.notifications import FcmNotifier
from billing.storage_cleanup import cleanup_deleted_storage
from billing.sweeps import expire_subscriptions, send_expiry_warnings

JOBS = ("expire-subscriptions", "expiry-warnings", "cleanup-storage")


def run_job(name: str) -> dict:
    settings = get_settings()
    init_firebase(settings)
    db = get_firestore_client()

    if name == "expire-subscriptions":
        return expire_subscriptions(db, FcmNotifier(), workers=settings.notification_workers)
    if name == "expiry-warnings":
        return send_expiry_warnings(
            db,
            FcmNotifier(),
            thresholds=settings.expiry_warning_thresholds,
            workers=settings.notification_workers,
        )
    if name == "cleanup-storage":
        return cleanup_deleted_storage(db, get_storage_bucket())
    raise ValueError(f"Unknown job: {name}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a scheduled billing job once.")
    parser.add_argument("job", choices=JOBS)
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args()

    level = args.log_level or get_settings().log_level
    logging.basicConfig(level=level.upper())
    result = run_job(args.job)
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
