import os
import logging
import firebase_admin
from firebase_admin import credentials, firestore, firestore_async

logger = logging.getLogger(__name__)

_app = None
_db = None
_listener_db = None


def init_firebase(app_config=None):
    global _app, _db, _listener_db

    if _app is not None:
        return

    cred_path = os.environ.get('GOOGLE_APPLICATION_CREDENTIALS', './firebase-service-account.json')
    if app_config is not None:
        cred_path = getattr(app_config, 'GOOGLE_APPLICATION_CREDENTIALS', None) or cred_path

    if os.path.exists(cred_path):
        cred = credentials.Certificate(cred_path)
    else:
        cred = credentials.ApplicationDefault()

    project_id = ''
    if app_config is not None:
        project_id = getattr(app_config, 'FIREBASE_PROJECT_ID', None) or ''
    if not project_id:
        project_id = os.environ.get('FIREBASE_PROJECT_ID', '')

    options = {}
    if project_id:
        options['projectId'] = project_id

    _app = firebase_admin.initialize_app(cred, options=options if options else None)
    _db = firestore_async.client()
    # Snapshot listeners are only offered by the synchronous client.
    _listener_db = firestore.client()
    logger.info('Firebase initialized (project=%s)', project_id or 'default')


def get_db():
    """Async Firestore client used for reads, writes and transactions."""
    global _db
    if _db is None:
        init_firebase()
    return _db


def get_listener_db():
    """Synchronous Firestore client used for on_snapshot listeners."""
    global _listener_db
    if _listener_db is None:
        init_firebase()
    return _listener_db
