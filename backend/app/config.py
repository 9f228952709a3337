"""
app/config.py - Application configuration and Firebase initialization.

This module defines a Pydantic BaseSettings class to load configuration from environment,
and exposes a lazily initialized Firestore client for the cart store endpoints.
The cart engine and the VAT calculator only need `settings`; nothing here talks to
Firebase until `get_db()` is called.
"""
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    firebase_cred_file: str = Field('firebase_service_account.json', validation_alias='FIREBASE_CRED_FILE')
    firebase_project_id: Optional[str] = Field(None, validation_alias='FIREBASE_PROJECT_ID')
    firebase_storage_bucket: Optional[str] = Field(None, validation_alias='FIREBASE_STORAGE_BUCKET')
    firebase_collection_prefix: str = Field('', validation_alias='FIREBASE_COLLECTION_PREFIX')

    # Firebase credentials from environment variables (for Cloud Run)
    firebase_private_key_id: Optional[str] = Field(None, validation_alias='FIREBASE_PRIVATE_KEY_ID')
    firebase_private_key: Optional[str] = Field(None, validation_alias='FIREBASE_PRIVATE_KEY')
    firebase_client_email: Optional[str] = Field(None, validation_alias='FIREBASE_CLIENT_EMAIL')
    firebase_client_id: Optional[str] = Field(None, validation_alias='FIREBASE_CLIENT_ID')
    firebase_auth_uri: Optional[str] = Field(None, validation_alias='FIREBASE_AUTH_URI')
    firebase_token_uri: Optional[str] = Field(None, validation_alias='FIREBASE_TOKEN_URI')
    firebase_auth_provider_x509_cert_url: Optional[str] = Field(None, validation_alias='FIREBASE_AUTH_PROVIDER_X509_CERT_URL')
    firebase_client_x509_cert_url: Optional[str] = Field(None, validation_alias='FIREBASE_CLIENT_X509_CERT_URL')

    # Pricing
    seller_country: str = Field('FR', validation_alias='SELLER_COUNTRY')
    currency: str = Field('EUR', validation_alias='CURRENCY')

    # Cart engine / store client
    cart_debounce_seconds: float = Field(1.0, validation_alias='CART_DEBOUNCE_SECONDS')
    cart_store_base_url: str = Field('http://localhost:8000', validation_alias='CART_STORE_BASE_URL')
    cart_store_timeout_seconds: float = Field(10.0, validation_alias='CART_STORE_TIMEOUT_SECONDS')

    debug: bool = Field(False, validation_alias='DEBUG')
    allowed_origins: str = Field('*', validation_alias='ALLOWED_ORIGINS')  # Comma-separated list or '*' for all

    def model_post_init(self, __context):
        """Normalize the seller country once so every comparison is uppercase."""
        self.seller_country = (self.seller_country or "").strip().upper()

    def collection(self, name: str) -> str:
        """Prefix-aware collection name (FIREBASE_COLLECTION_PREFIX)."""
        prefix = (self.firebase_collection_prefix or "").strip()
        return f"{prefix}{name}" if prefix else name


# Load settings from environment (.env file, etc.)
settings = Settings()

_db = None


# Service-account keys that Cloud Run passes in as FIREBASE_<KEY> variables
_SERVICE_ACCOUNT_KEYS = (
    "private_key_id",
    "private_key",
    "client_email",
    "client_id",
    "auth_uri",
    "token_uri",
    "auth_provider_x509_cert_url",
    "client_x509_cert_url",
)


def service_account_info(cfg: Settings) -> Optional[dict]:
    """Service-account dict from the environment, or None when any key is missing."""
    values = {key: getattr(cfg, f"firebase_{key}") for key in _SERVICE_ACCOUNT_KEYS}
    if not all(values.values()):
        return None
    return {"type": "service_account", "project_id": cfg.firebase_project_id, **values}


def _credential() -> credentials.Certificate:
    info = service_account_info(settings)
    if info is not None:
        return credentials.Certificate(info)
    # Use service account file (local development)
    return credentials.Certificate(settings.firebase_cred_file)


def get_db():
    """
    Return the Firestore client, initializing the Firebase Admin SDK on first use.
    Used as a FastAPI dependency by the cart store endpoints (tests override it).
    """
    global _db
    if _db is not None:
        return _db
    try:
        firebase_admin.initialize_app(_credential(), {
            'projectId': settings.firebase_project_id,
            'storageBucket': settings.firebase_storage_bucket
        })
    except ValueError as e:
        if "already exists" not in str(e):
            raise
        # Firebase app already initialized, reuse the default app
    _db = firestore.client()
    return _db
