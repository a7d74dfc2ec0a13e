import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

def _optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None

class Settings:
    """Runtime configuration read from the environment (and .env)."""

    def __init__(self):
        self.form_token_ttl_minutes = int(os.getenv("FORM_TOKEN_TTL_MINUTES", "30"))
        self.form_base_url = os.getenv("FORM_BASE_URL", "http://localhost:8000").rstrip("/")
        self.redis_url = _optional("REDIS_URL")

        # CRM services; unset means in-memory stores
        self.lead_crm_url = _optional("LEAD_CRM_URL")
        self.user_data_crm_url = _optional("USER_DATA_CRM_URL")
        self.classification_crm_url = _optional("CLASSIFICATION_CRM_URL")
        self.crm_timeout = float(os.getenv("CRM_TIMEOUT_SECONDS", "15"))

        self.classification_threshold = int(os.getenv("CLASSIFICATION_THRESHOLD", "60"))

        self.log_file = os.getenv("LOG_FILE", "logs/app.log")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", "8000"))
