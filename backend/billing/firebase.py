import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Any

import firebase_admin
from firebase_admin import credentials
from firebase_admin import firestore
from firebase_admin import storage

from .config import Settings

logger = logging.getLogger("billing.firebase")


class FirebaseNotInitialized(Exception):
    pass


def _load_service_account_info(path_or_json: str) -> dict[str, Any]:
    # File path, raw JSON, or base64-encoded JSON.
    raw_value = (path_or_json or "").strip()
    if not raw_value:
        raise ValueError("FIREBASE_SERVICE_ACCOUNT_PATH is empty")

    path = Path(raw_value).expanduser()
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except Exception as exc:
            raise ValueError(f"Service account file is not valid JSON: {path}") from exc

    if raw_value.endswith(".json") or "/" in raw_value:
        raise ValueError(f"Service account file not found: {path}")

    try:
        return json.loads(raw_value)
    except json.JSONDecodeError:
        pass

    try:
        decoded = base64.b64decode(raw_value.encode("utf-8"), validate=True).decode("utf-8")
        return json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(
            "Service account must be an existing file path, raw JSON, or base64-encoded JSON"
        ) from exc


def _build_credentials(settings: Settings) -> credentials.Base:
    if not settings.firebase_service_account_path:
        return credentials.ApplicationDefault()
    info = dict(_load_service_account_info(settings.firebase_service_account_path))
    private_key = info.get("private_key")
    if isinstance(private_key, str):
        info["private_key"] = private_key.strip().replace("\\n", "\n") + "\n"
    return credentials.Certificate(info)


def init_firebase(settings: Settings) -> None:
    if firebase_admin._apps:
        return
    options = {"projectId": settings.firebase_project_id}
    if settings.firebase_storage_bucket:
        options["storageBucket"] = settings.firebase_storage_bucket
    firebase_admin.initialize_app(_build_credentials(settings), options)
    logger.info("Firebase initialized for project %s", settings.firebase_project_id)


def get_firestore_client():
    if not firebase_admin._apps:
        raise FirebaseNotInitialized("Firebase not initialized")
    return firestore.client()


def get_storage_bucket():
    if not firebase_admin._apps:
        raise FirebaseNotInitialized("Firebase not initialized")
    return storage.bucket()
