from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger("billing.storage_cleanup")


def _location_from_path(path: str) -> str:
    # states/{s}/districts/{d}/bodies/{b}/wards/{w}/candidates/{c}
    segments = path.split("/")
    if len(segments) >= 8:
        return "/".join(segments[i] for i in (1, 3, 5, 7))
    return path


def cleanup_deleted_storage(db, bucket, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Delete files queued in candidates' ``deleteStorage`` lists, then clear the lists.

    File and candidate failures are collected; the sweep keeps going.
    """
    started = time.monotonic()
    now = now or datetime.now(timezone.utc)
    snapshots = list(
        db.collection_group("candidates").where("deleteStorage", "!=", []).stream()
    )
    logger.info("Found %s candidates with pending storage deletions", len(snapshots))

    candidates_processed = 0
    files_deleted = 0
    errors: List[Dict[str, Any]] = []
    for snapshot in snapshots:
        candidate_id = snapshot.id
        location = _location_from_path(snapshot.reference.path)
        try:
            paths = (snapshot.to_dict() or {}).get("deleteStorage") or []
            deleted_here = 0
            for storage_path in paths:
                try:
                    bucket.blob(storage_path).delete()
                    deleted_here += 1
                except Exception as exc:
                    logger.error("Failed to delete %s for %s: %s", storage_path, candidate_id, exc)
                    errors.append(
                        {
                            "candidateId": candidate_id,
                            "storagePath": storage_path,
                            "error": str(exc),
                            "location": location,
                        }
                    )
            snapshot.reference.update({"deleteStorage": [], "updatedAt": now})
            candidates_processed += 1
            files_deleted += deleted_here
            logger.info(
                "Cleared deleteStorage for %s (%s) - %s files deleted",
                candidate_id,
                location,
                deleted_here,
            )
        except Exception as exc:
            logger.exception("Error processing candidate %s: %s", candidate_id, exc)
            errors.append({"candidateId": candidate_id, "error": str(exc), "location": location})

    duration = round(time.monotonic() - started)
    result = {
        "success": not errors,
        "candidatesProcessed": candidates_processed,
        "totalFilesDeleted": files_deleted,
        "errors": len(errors),
        "duration": f"{duration}s",
        "timestamp": now.isoformat(),
    }
    if errors:
        logger.warning("Storage cleanup completed with %s errors: %s", len(errors), errors)
    logger.info("Storage cleanup summary: %s", result)
    return result
