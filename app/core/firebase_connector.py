"""
Firebase Admin SDK initialization.

Credentials are resolved in this order:
- `settings.FIREBASE_CREDENTIALS_JSON`, either the JSON content itself
  (starts with '{') or a path to the service account file;
- the GOOGLE_APPLICATION_CREDENTIALS environment variable (path to file).

The credential dict must have 'type' == 'service_account'.
"""
import os
import json
import logging
import firebase_admin
from firebase_admin import credentials
from app.core.config import settings


def _load_cred_from_json_string(val: str):
    try:
        cred_dict = json.loads(val)
    except ValueError as e:
        raise ValueError(f"FIREBASE_CREDENTIALS_JSON does not contain valid JSON: {e}")
    if cred_dict.get("type") != "service_account":
        raise ValueError("Invalid service account certificate: 'type' field must be 'service_account'.")
    return credentials.Certificate(cred_dict)


def _load_credentials():
    firebase_creds = settings.FIREBASE_CREDENTIALS_JSON
    if firebase_creds:
        if firebase_creds.strip().startswith("{"):
            return _load_cred_from_json_string(firebase_creds), "FIREBASE_CREDENTIALS_JSON"
        path = os.path.expanduser(firebase_creds)
        if not os.path.isfile(path):
            raise ValueError(f"FIREBASE_CREDENTIALS_JSON value is neither valid JSON nor a path to a file: {path}")
        return credentials.Certificate(path), "FIREBASE_CREDENTIALS_JSON"

    gac = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    if gac:
        path = os.path.expanduser(gac)
        if not os.path.isfile(path):
            raise ValueError(f"GOOGLE_APPLICATION_CREDENTIALS is set but the file was not found: {path}")
        return credentials.Certificate(path), "GOOGLE_APPLICATION_CREDENTIALS"

    raise ValueError(
        "Firebase credentials not provided. Set FIREBASE_CREDENTIALS_JSON (content or path) "
        "or GOOGLE_APPLICATION_CREDENTIALS (path)."
    )


def initialize_firebase():
    """Initialize the default Firebase app once; raise with an actionable message otherwise"""
    if firebase_admin._apps:
        logging.debug("Firebase already initialized")
        return

    logging.info("Initializing Firebase Admin SDK...")
    try:
        cred, source = _load_credentials()
        firebase_admin.initialize_app(cred)
    except Exception:
        logging.exception("Fatal error: Failed to initialize Firebase Admin SDK")
        raise
    logging.info("Firebase Admin SDK initialized from %s.", source)
