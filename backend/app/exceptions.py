"""
Hiérarchie d'erreurs de la passerelle.

Chaque erreur porte le code HTTP sous lequel les routes la présentent ;
la traduction en réponse JSON se fait dans app.main.
"""
from typing import Optional


class GatewayError(Exception):
    status_code = 500
    retryable = False
    error = "GATEWAY_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GatewayError):
    """Entrée appelant invalide - jamais réessayée."""
    status_code = 400
    error = "VALIDATION_ERROR"


class AuthError(GatewayError):
    """Échec d'obtention du token OAuth Daraja."""
    error = "AUTH_ERROR"


class ProviderError(GatewayError):
    """Le provider a rejeté l'appel (short code invalide, permissions...)."""
    error = "PROVIDER_ERROR"

    def __init__(self, code: Optional[str], message: str):
        super().__init__(message)
        self.code = code

    def __str__(self):
        return f"[{self.code}] {self.message}" if self.code else self.message


class NetworkError(GatewayError):
    """Échec de transport ou timeout vers le provider."""
    status_code = 503
    retryable = True
    error = "NETWORK_ERROR"


class InProgressError(GatewayError):
    """Le provider n'a pas encore résolu le push. Pas une faute."""
    status_code = 202
    retryable = True
    error = "IN_PROGRESS"

    def __init__(self, message: str = "La transaction est en cours de traitement", code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class NotFoundError(GatewayError):
    status_code = 404
    error = "NOT_FOUND"


class DuplicateKeyError(GatewayError):
    """Référence déjà présente - signale un défaut de génération."""
    error = "DUPLICATE_KEY"


class StoreIntegrityError(GatewayError):
    error = "STORE_INTEGRITY"


class StoreError(GatewayError):
    """Échec d'écriture ou de lecture du miroir durable."""
    error = "STORE_ERROR"


class CallbackVerificationError(GatewayError):
    status_code = 403
    error = "CALLBACK_REJECTED"


class AdminAuthError(GatewayError):
    status_code = 401
    error = "UNAUTHORIZED"
