import logging
import os
from typing import Dict, Optional

from dotenv import load_dotenv
from google.cloud import secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("allerq_backend")

# --- Configuration ---
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID", PROJECT_ID)
FIRESTORE_DATABASE = os.getenv("FIRESTORE_DATABASE", "(default)")

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000")

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")
OPENAI_TIMEOUT = float(os.getenv("OPENAI_TIMEOUT", "60"))

GOCARDLESS_ENVIRONMENT = os.getenv("GOCARDLESS_ENVIRONMENT", "sandbox")

# Resolved secrets, keyed by env var name
_SECRET_CACHE: Dict[str, str] = {}


def _build_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


def get_secret(env_name: str) -> Optional[str]:
    """
    Resolve a secret by env var name.

    Lookup order: the env var itself, then Secret Manager when
    <env_name>_SECRET_ID is set. Returns None when neither is configured.
    Env values are read on every call so they can change at runtime;
    Secret Manager values are cached for the process lifetime.
    """
    value = os.environ.get(env_name)
    if value:
        return value

    if env_name in _SECRET_CACHE:
        return _SECRET_CACHE[env_name]

    secret_id = os.environ.get(f"{env_name}_SECRET_ID")
    if not secret_id:
        return None

    creds = _build_creds()
    client = secretmanager.SecretManagerServiceClient(credentials=creds)
    name = client.secret_version_path(PROJECT_ID, secret_id, "latest")
    resp = client.access_secret_version(request={"name": name})
    value = resp.payload.data.decode("utf-8")
    _SECRET_CACHE[env_name] = value
    logger.info(f"[Secrets] Loaded {env_name} from Secret Manager")
    return value
