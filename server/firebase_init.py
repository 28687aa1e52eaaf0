import firebase_admin
from firebase_admin import credentials, firestore
import logging
import os
import threading

logger = logging.getLogger(__name__)

FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
FIREBASE_CREDENTIALS = os.getenv(
    "FIREBASE_CREDENTIALS",
    os.path.join(os.path.dirname(__file__), 'serviceAccountKey.json')
)

_init_lock = threading.Lock()
_db = None


def initialize_firebase():
    """Initialize the Firebase Admin SDK once and return the default app"""
    with _init_lock:
        try:
            return firebase_admin.get_app()
        except ValueError:
            pass

        if os.path.exists(FIREBASE_CREDENTIALS):
            cred = credentials.Certificate(FIREBASE_CREDENTIALS)
            app = firebase_admin.initialize_app(cred)
            logger.info("Firebase initialized with service account key")
        else:
            options = {'projectId': FIREBASE_PROJECT_ID} if FIREBASE_PROJECT_ID else None
            app = firebase_admin.initialize_app(credentials.ApplicationDefault(), options)
            logger.info("Firebase initialized with application default credentials")

        return app


def get_db():
    """Get the Firestore client, initializing Firebase on first use"""
    global _db
    if _db is None:
        initialize_firebase()
        _db = firestore.client()
        logger.info("Firestore client ready")
    return _db


__all__ = ['initialize_firebase', 'get_db']
