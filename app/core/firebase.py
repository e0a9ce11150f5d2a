import os
import firebase_admin
from firebase_admin import credentials, auth, firestore
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)


def _load_credentials():
    """Service account file when present, otherwise Application Default Credentials"""
    if settings.firebase_credentials_path and os.path.exists(settings.firebase_credentials_path):
        return credentials.Certificate(settings.firebase_credentials_path)
    logger.warning(
        f"init_firebase: Credentials file not found ({settings.firebase_credentials_path}), "
        "falling back to application default credentials")
    return credentials.ApplicationDefault()


def init_firebase():
    """Initialize Firebase Admin SDK (auth for user ids, Firestore for analytics)"""
    logger.info("init_firebase: Entry")

    try:
        if not firebase_admin._apps:
            firebase_admin.initialize_app(_load_credentials(), {
                'projectId': settings.firebase_project_id,
            })
            logger.info("init_firebase: Success")
        else:
            logger.info("init_firebase: Already initialized")
    except Exception as e:
        logger.error(f"init_firebase: Failure - {e}")
        raise


def verify_firebase_token(token: str) -> dict:
    """
    Verify a Firebase ID token. The 'uid' claim is the key of the user's
    subscription record, so a token without one is rejected.
    """
    logger.info("verify_firebase_token: Entry")

    try:
        decoded_token = auth.verify_id_token(token)
        if not decoded_token.get('uid'):
            raise ValueError("Token has no uid claim")
        logger.info(f"verify_firebase_token: Success - {decoded_token.get('uid')}")
        return decoded_token
    except Exception as e:
        logger.error(f"verify_firebase_token: Failure - {e}")
        raise


def get_firestore_client():
    """Get Firestore client instance"""
    return firestore.client()
