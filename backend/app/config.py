from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List, Optional
from pathlib import Path

# Charger explicitement le fichier .env
from dotenv import load_dotenv
env_file_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_file_path)

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

STORE_BACKENDS = ("database", "json")


class Settings(BaseSettings):
    # === APPLICATION ===
    APP_NAME: str = "Curvy Elegance M-Pesa Gateway"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    API_PREFIX: str = ""
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    # === M-PESA (DARAJA) ===
    # 🔐 Ces clés NE DOIVENT JAMAIS être en dur ! Utiliser .env !
    MPESA_ENVIRONMENT: str = "sandbox"
    MPESA_CONSUMER_KEY: Optional[str] = None
    MPESA_CONSUMER_SECRET: Optional[str] = None
    MPESA_BUSINESS_SHORT_CODE: Optional[str] = None
    MPESA_PASSKEY: Optional[str] = None
    MPESA_CALLBACK_URL: Optional[str] = None
    # Till (Buy Goods) : PartyB différent du short code
    MPESA_PARTY_B: Optional[str] = None
    MPESA_TRANSACTION_TYPE: str = "CustomerPayBillOnline"
    MPESA_TIMEOUT_SECONDS: float = 30.0
    MPESA_TOKEN_MAX_RETRIES: int = 3
    MPESA_TOKEN_RETRY_DELAY_SECONDS: float = 2.0
    # ResultCode renvoyés par la requête de statut quand le push n'est pas encore résolu
    MPESA_IN_PROGRESS_CODES: List[str] = ["1037"]

    # === VALIDATION DES PAIEMENTS ===
    MPESA_COUNTRY_PREFIX: str = "254"
    MIN_AMOUNT: int = 1
    MAX_AMOUNT: int = 250000
    REFERENCE_PREFIX: str = "CE"

    # === STOCKAGE DES TRANSACTIONS ===
    TRANSACTION_STORE_BACKEND: str = "database"
    DATABASE_URL: str = "sqlite:///./transactions.db"
    TRANSACTIONS_DIR: str = "transactions"

    # === RÉCONCILIATION PÉRIODIQUE ===
    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: float = 60.0
    PENDING_TIMEOUT_SECONDS: float = 120.0

    # === SÉCURITÉ ===
    CALLBACK_SECRET: Optional[str] = None
    CALLBACK_ALLOWED_IPS: List[str] = []
    ADMIN_API_TOKEN: Optional[str] = None
    CORS_ORIGINS: Optional[List[str]] = None

    # === RATE LIMITING ===
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_PAYMENTS: str = "10/minute"
    # Chaque statut PENDING déclenche un poll Daraja ; les callbacks ne sont jamais limités
    RATE_LIMIT_STATUS: str = "30/minute"

    # === LOGGING ===
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = "logs"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    def __init__(self, **data):
        super().__init__(**data)
        self._validate_choices()
        self._validate_secrets()
        self._init_cors_origins()

    def _validate_choices(self):
        """Valider les valeurs énumérées."""
        if self.MPESA_ENVIRONMENT not in MPESA_BASE_URLS:
            raise ValueError(
                f"MPESA_ENVIRONMENT invalide: {self.MPESA_ENVIRONMENT!r} "
                f"(attendu: {', '.join(MPESA_BASE_URLS)})"
            )
        if self.TRANSACTION_STORE_BACKEND not in STORE_BACKENDS:
            raise ValueError(
                f"TRANSACTION_STORE_BACKEND invalide: {self.TRANSACTION_STORE_BACKEND!r} "
                f"(attendu: {', '.join(STORE_BACKENDS)})"
            )

    def _validate_secrets(self):
        """Valider que les secrets requis sont présents."""
        if self.ENVIRONMENT == "test":
            return

        missing_secrets = [
            name for name, value in self.MPESA_CREDENTIALS.items() if not value
        ]
        if self.ENVIRONMENT == "production" and not self.ADMIN_API_TOKEN:
            missing_secrets.append("ADMIN_API_TOKEN")

        if missing_secrets:
            raise ValueError(
                f"🚨 SECRETS MANQUANTS en {self.ENVIRONMENT}: {', '.join(missing_secrets)}\n"
                f"   Veuillez les définir dans le fichier .env"
            )

    def _init_cors_origins(self):
        """Initialiser les origines CORS selon l'environnement."""
        if self.CORS_ORIGINS is None:
            if self.ENVIRONMENT == "production":
                self.CORS_ORIGINS = []
            else:
                self.CORS_ORIGINS = [
                    "http://localhost:3000",
                    "http://127.0.0.1:3000",
                ]

    @property
    def MPESA_CREDENTIALS(self) -> Dict[str, Optional[str]]:
        """Valeurs obligatoires pour parler à Daraja."""
        return {
            "MPESA_CONSUMER_KEY": self.MPESA_CONSUMER_KEY,
            "MPESA_CONSUMER_SECRET": self.MPESA_CONSUMER_SECRET,
            "MPESA_BUSINESS_SHORT_CODE": self.MPESA_BUSINESS_SHORT_CODE,
            "MPESA_PASSKEY": self.MPESA_PASSKEY,
            "MPESA_CALLBACK_URL": self.MPESA_CALLBACK_URL,
        }

    @property
    def MPESA_BASE_URL(self) -> str:
        return MPESA_BASE_URLS[self.MPESA_ENVIRONMENT]

    def describe(self) -> Dict[str, str]:
        """Résumé de configuration sans données sensibles."""
        return {
            "environment": self.ENVIRONMENT,
            "mpesa_environment": self.MPESA_ENVIRONMENT,
            "business_short_code": self.MPESA_BUSINESS_SHORT_CODE or "Not set",
            "callback_url": self.MPESA_CALLBACK_URL or "Not set",
            "consumer_key": "Set" if self.MPESA_CONSUMER_KEY else "Not set",
            "consumer_secret": "Set" if self.MPESA_CONSUMER_SECRET else "Not set",
            "passkey": "Set" if self.MPESA_PASSKEY else "Not set",
            "store_backend": self.TRANSACTION_STORE_BACKEND,
        }


@lru_cache()
def get_settings() -> Settings:
    """Instance unique - validée au premier appel."""
    try:
        return Settings()
    except ValueError as e:
        print(f"❌ ERREUR DE CONFIGURATION: {e}")
        raise
