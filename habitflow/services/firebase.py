"""
Firebase Authentication Service

Handles Firebase Admin SDK initialization and ID token verification.
HabitFlow users are keyed by their Firebase UID.
"""
import os
import json
import logging
from typing import Optional
from pathlib import Path

import firebase_admin
from firebase_admin import credentials, auth
from firebase_admin.auth import InvalidIdTokenError, ExpiredIdTokenError

from habitflow.config import settings

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_FILE = Path(__file__).parent.parent.parent / "firebase-adminsdk.json"


class FirebaseService:
    """
    Firebase Admin SDK wrapper for token verification.
    """

    _initialized: bool = False

    @classmethod
    def _init_app(cls, cred=None, source: str = "") -> bool:
        if cred is None:
            firebase_admin.initialize_app()
        else:
            firebase_admin.initialize_app(cred)
        cls._initialized = True
        logger.info(f"Firebase initialized from {source}")
        return True

    @classmethod
    def initialize(cls) -> bool:
        """
        Initialize Firebase Admin SDK.

        Looks for credentials in:
        1. FIREBASE_CREDENTIALS_JSON setting (raw JSON)
        2. FIREBASE_CREDENTIALS_PATH setting
        3. firebase-adminsdk.json in the project root
        4. GOOGLE_APPLICATION_CREDENTIALS environment variable

        Returns:
            True if initialized successfully, False otherwise.
        """
        if cls._initialized:
            return True

        try:
            if settings.FIREBASE_CREDENTIALS_JSON:
                try:
                    cred_dict = json.loads(settings.FIREBASE_CREDENTIALS_JSON)
                    return cls._init_app(credentials.Certificate(cred_dict), "FIREBASE_CREDENTIALS_JSON")
                except json.JSONDecodeError as e:
                    logger.error(f"Failed to parse FIREBASE_CREDENTIALS_JSON: {e}")

            cred_path = settings.FIREBASE_CREDENTIALS_PATH
            if cred_path and Path(cred_path).exists():
                return cls._init_app(credentials.Certificate(cred_path), cred_path)

            if DEFAULT_CREDENTIALS_FILE.exists():
                return cls._init_app(
                    credentials.Certificate(str(DEFAULT_CREDENTIALS_FILE)), str(DEFAULT_CREDENTIALS_FILE)
                )

            if os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
                return cls._init_app(source="GOOGLE_APPLICATION_CREDENTIALS")

            logger.warning("No Firebase credentials found. Auth will fail.")
            return False

        except Exception as e:
            logger.error(f"Failed to initialize Firebase: {e}")
            return False

    @classmethod
    def verify_token(cls, id_token: str) -> Optional[dict]:
        """
        Verify a Firebase ID token.

        Args:
            id_token: The Firebase ID token from the client.

        Returns:
            Decoded token dict with user info, or None if invalid.
        """
        if not cls._initialized:
            cls.initialize()

        if not cls._initialized:
            logger.error("Firebase not initialized, cannot verify token")
            return None

        try:
            return auth.verify_id_token(id_token)

        except ExpiredIdTokenError as e:
            logger.warning(f"Expired Firebase token: {e}")
            return None

        except InvalidIdTokenError as e:
            logger.warning(f"Invalid Firebase token: {e}")
            return None

        except Exception as e:
            logger.error(f"Token verification error: {e}")
            return None

    @classmethod
    def get_user_info(cls, id_token: str) -> Optional[dict]:
        """
        Get user info from a Firebase ID token.

        Returns:
            Dict with uid, email, display_name, or None if invalid.
        """
        decoded = cls.verify_token(id_token)
        if not decoded:
            return None

        return {
            "uid": decoded.get("uid"),
            "email": decoded.get("email") or "",
            "display_name": decoded.get("name"),
            "email_verified": decoded.get("email_verified", False),
        }


# Singleton instance for convenience
firebase_service = FirebaseService()
