"""firebase_admin bootstrap shared by the Firestore and Realtime DB adapters."""

from __future__ import annotations

import logging

import firebase_admin
from firebase_admin import credentials, firestore

logger = logging.getLogger(__name__)


def init_app(
    credentials_path: str | None, database_url: str | None
) -> firebase_admin.App:
    """Return the default firebase app, initializing it on first use.

    Without a service-account file the Application Default Credentials are
    used, which is what Cloud Run and GCE provide.
    """
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    if credentials_path:
        cred = credentials.Certificate(credentials_path)
    else:
        cred = credentials.ApplicationDefault()
    options = {"databaseURL": database_url} if database_url else None
    app = firebase_admin.initialize_app(cred, options)
    logger.info(
        "Initialized firebase app (project=%s, rtdb=%s)",
        getattr(app, "project_id", None) or "default",
        database_url or "n/a",
    )
    return app


def firestore_client(app: firebase_admin.App):
    return firestore.client(app)
