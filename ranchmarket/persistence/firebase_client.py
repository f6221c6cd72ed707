from __future__ import annotations

"""
Firebase Admin bootstrap for the marketplace engine.

Inside Cloud Functions the runtime provides ADC and the project id. Anywhere else
(laptops, CI) the client must point at the Firestore emulator unless
ALLOW_PROD_FIRESTORE=1 is set.
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Optional

import firebase_admin
import google.auth
from firebase_admin import credentials, firestore
from google.auth.exceptions import DefaultCredentialsError

from ranchmarket.common.logging import log_event

logger = logging.getLogger(__name__)

_CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
_MANAGED_RUNTIME_VARS = ("K_SERVICE", "FUNCTION_TARGET", "CLOUD_RUN_JOB")

_init_lock = threading.Lock()


class ProductionFirestoreRefused(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class FirestoreTarget:
    project_id: Optional[str]
    emulator_host: Optional[str]
    managed_runtime: bool
    allow_prod: bool

    @classmethod
    def from_env(cls, *, project_id: Optional[str] = None) -> "FirestoreTarget":
        env = (os.getenv("ENV") or "").strip().lower()
        managed = env != "local" and any((os.getenv(n) or "").strip() for n in _MANAGED_RUNTIME_VARS)
        return cls(
            project_id=project_id or os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT") or None,
            emulator_host=(os.getenv("FIRESTORE_EMULATOR_HOST") or "").strip() or None,
            managed_runtime=managed,
            allow_prod=(os.getenv("ALLOW_PROD_FIRESTORE") or "").strip() == "1",
        )

    def check(self) -> None:
        if self.managed_runtime or self.emulator_host or self.allow_prod:
            return
        raise ProductionFirestoreRefused(
            "Refusing to use production Firestore outside Cloud Functions. "
            "Set FIRESTORE_EMULATOR_HOST (e.g. 127.0.0.1:8080) or ALLOW_PROD_FIRESTORE=1."
        )


def _resolve_project_id(target: FirestoreTarget) -> str:
    if target.project_id:
        return target.project_id
    try:
        _, project_id = google.auth.default(scopes=[_CLOUD_PLATFORM_SCOPE])
    except DefaultCredentialsError:
        project_id = None
    if not project_id:
        raise RuntimeError("Firebase project id could not be resolved; set FIREBASE_PROJECT_ID.")
    return project_id


def init_firebase_admin(*, project_id: Optional[str] = None) -> None:
    """Initialise the default Firebase app once per process using ADC."""
    if firebase_admin._apps:
        return

    target = FirestoreTarget.from_env(project_id=project_id)
    target.check()

    with _init_lock:
        if firebase_admin._apps:
            return
        try:
            cred = credentials.ApplicationDefault()
        except Exception as e:
            raise RuntimeError(
                "Application Default Credentials are unavailable; run `gcloud auth application-default login`."
            ) from e

        resolved = _resolve_project_id(target)
        firebase_admin.initialize_app(cred, {"projectId": resolved})
        log_event(
            logger,
            "firestore.initialized",
            project_id=resolved,
            emulator_host=target.emulator_host,
            managed_runtime=target.managed_runtime,
        )


def get_firestore_client(*, project_id: Optional[str] = None) -> Any:
    init_firebase_admin(project_id=project_id)
    return firestore.client()
