"""
SERVICE M-PESA - Lipa na M-Pesa Online (STK Push)
Implémentation basée sur l'API Daraja de Safaricom

Endpoints utilisés :
    GET  /oauth/v1/generate?grant_type=client_credentials   (Basic auth)
    POST /mpesa/stkpush/v1/processrequest                   (push)
    POST /mpesa/stkpushquery/v1/query                       (statut)
"""
import base64
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

import requests

from app.config import Settings
from app.exceptions import AuthError, InProgressError, NetworkError, ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushAcknowledgement:
    correlation_id: Optional[str]
    merchant_request_id: Optional[str]
    provider_ack_code: str
    provider_ack_message: Optional[str]
    customer_message: Optional[str] = None


@dataclass(frozen=True)
class PushStatus:
    result_code: str
    result_description: Optional[str]


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp Daraja: YYYYMMDDHHMMSS"""
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def generate_password(short_code: str, passkey: str, timestamp: str) -> str:
    """Mot de passe STK: base64(short_code + passkey + timestamp)"""
    return base64.b64encode(f"{short_code}{passkey}{timestamp}".encode()).decode()


class MpesaService:
    TOKEN_PATH = "/oauth/v1/generate"
    STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
    STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

    # errorCode renvoyé par la requête de statut tant que le client n'a pas répondu
    PROCESSING_ERROR_CODE = "500.001.1001"
    TOKEN_EXPIRY_BUFFER_SECONDS = 60

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None, clock=time.time):
        self.settings = settings
        self.base_url = settings.MPESA_BASE_URL
        self.consumer_key = settings.MPESA_CONSUMER_KEY
        self.consumer_secret = settings.MPESA_CONSUMER_SECRET
        self.short_code = settings.MPESA_BUSINESS_SHORT_CODE
        self.passkey = settings.MPESA_PASSKEY
        self.timeout = settings.MPESA_TIMEOUT_SECONDS
        self.in_progress_codes = set(settings.MPESA_IN_PROGRESS_CODES)

        self.session = session or requests.Session()
        self._clock = clock
        self._token_lock = threading.Lock()
        self.access_token: Optional[str] = None
        self.token_expires_at: Optional[float] = None

        logger.info(f"✅ MpesaService initialisé - Environnement: {settings.MPESA_ENVIRONMENT}")
        logger.info(f"   Base URL: {self.base_url}")

    # ==================== AUTHENTIFICATION ====================

    def acquire_token(self) -> str:
        """Obtenir ou renouveler le token OAuth2 (mis en cache jusqu'à expiration)"""
        with self._token_lock:
            if self.access_token and self.token_expires_at:
                if self.token_expires_at - self._clock() > self.TOKEN_EXPIRY_BUFFER_SECONDS:
                    return self.access_token

            token, expires_in = self._fetch_token()
            self.access_token = token
            self.token_expires_at = self._clock() + expires_in
            return token

    def invalidate_token(self):
        with self._token_lock:
            self.access_token = None
            self.token_expires_at = None

    def _fetch_token(self) -> Tuple[str, float]:
        credentials = f"{self.consumer_key}:{self.consumer_secret}"
        encoded_credentials = base64.b64encode(credentials.encode()).decode()
        headers = {
            "Authorization": f"Basic {encoded_credentials}",
            "Content-Type": "application/json",
        }

        max_retries = max(1, self.settings.MPESA_TOKEN_MAX_RETRIES)
        last_exception = None

        for attempt in range(max_retries):
            try:
                response = self.session.get(
                    f"{self.base_url}{self.TOKEN_PATH}",
                    params={"grant_type": "client_credentials"},
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.exceptions.RequestException as e:
                last_exception = e
                logger.warning(f"🔄 Token M-Pesa - tentative {attempt + 1}/{max_retries} échouée: {e}")
                if attempt < max_retries - 1:
                    time.sleep(self.settings.MPESA_TOKEN_RETRY_DELAY_SECONDS)
                continue

            if response.status_code != 200:
                logger.error(f"❌ Erreur auth M-Pesa: {response.status_code} - {response.text}")
                raise AuthError(f"Authentification M-Pesa refusée ({response.status_code})")

            try:
                token_data = response.json()
                token = token_data["access_token"]
                expires_in = float(token_data.get("expires_in", 3599))
            except (ValueError, KeyError, TypeError) as e:
                raise AuthError(f"Réponse token M-Pesa invalide: {e}") from e

            logger.info(f"✅ Token M-Pesa obtenu (tentative {attempt + 1}/{max_retries})")
            return token, expires_in

        logger.error("❌ Toutes les tentatives d'auth M-Pesa ont échoué")
        raise AuthError(
            f"Erreur connexion M-Pesa après {max_retries} tentatives: {last_exception}"
        ) from last_exception

    # ==================== APPELS DARAJA ====================

    def _credentials_payload(self) -> Dict[str, str]:
        timestamp = generate_timestamp()
        return {
            "BusinessShortCode": self.short_code,
            "Password": generate_password(self.short_code, self.passkey, timestamp),
            "Timestamp": timestamp,
        }

    def _post(self, path: str, payload: Dict) -> Tuple[int, Dict]:
        token = self.acquire_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        try:
            response = self.session.post(
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Timeout M-Pesa sur {path}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Erreur réseau M-Pesa sur {path}: {e}") from e

        if response.status_code == 401:
            # Token révoqué côté Safaricom : forcer un renouvellement au prochain appel
            self.invalidate_token()
            raise AuthError("Token M-Pesa rejeté")

        try:
            body = response.json()
        except ValueError:
            raise ProviderError(
                str(response.status_code),
                f"Réponse M-Pesa illisible ({response.status_code})"
            )

        return response.status_code, body or {}

    def initiate_push(self, phone: str, amount: int, reference: str, description: str) -> PushAcknowledgement:
        """Déclencher le prompt STK sur le téléphone du client"""
        payload = {
            **self._credentials_payload(),
            "TransactionType": self.settings.MPESA_TRANSACTION_TYPE,
            "Amount": amount,
            "PartyA": phone,
            "PartyB": self.settings.MPESA_PARTY_B or self.short_code,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.MPESA_CALLBACK_URL,
            "AccountReference": reference,
            "TransactionDesc": description,
        }

        status_code, body = self._post(self.STK_PUSH_PATH, payload)

        if status_code >= 400:
            logger.error(f"❌ STK Push rejeté: {status_code} - {body}")
            raise ProviderError(
                body.get("errorCode") or str(status_code),
                body.get("errorMessage") or "STK Push failed",
            )

        ack_code = str(body.get("ResponseCode", ""))
        if ack_code != "0":
            logger.error(f"❌ STK Push non accepté: {body}")
            raise ProviderError(ack_code or None, body.get("ResponseDescription") or "STK Push failed")

        return PushAcknowledgement(
            correlation_id=body.get("CheckoutRequestID"),
            merchant_request_id=body.get("MerchantRequestID"),
            provider_ack_code=ack_code,
            provider_ack_message=body.get("ResponseDescription"),
            customer_message=body.get("CustomerMessage"),
        )

    def query_push_status(self, correlation_id: str) -> PushStatus:
        """Interroger Daraja sur le résultat d'un push"""
        payload = {
            **self._credentials_payload(),
            "CheckoutRequestID": correlation_id,
        }

        status_code, body = self._post(self.STK_QUERY_PATH, payload)

        if status_code >= 400:
            error_code = body.get("errorCode")
            if error_code == self.PROCESSING_ERROR_CODE:
                raise InProgressError(body.get("errorMessage") or "The transaction is being processed", error_code)
            logger.warning(f"⚠️ STK Query rejetée: {status_code} - {body}")
            raise ProviderError(error_code or str(status_code), body.get("errorMessage") or "STK Query failed")

        if "ResultCode" not in body:
            raise ProviderError(
                str(body.get("ResponseCode") or status_code),
                body.get("ResponseDescription") or "Réponse STK Query sans ResultCode",
            )

        result_code = str(body["ResultCode"])
        if result_code in self.in_progress_codes:
            raise InProgressError(body.get("ResultDesc") or "Request in progress", result_code)

        return PushStatus(result_code=result_code, result_description=body.get("ResultDesc"))
