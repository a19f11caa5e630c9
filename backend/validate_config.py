#!/usr/bin/env python
"""
🔐 Script de validation de configuration de la passerelle M-Pesa
Vérifie les identifiants Daraja et les réglages de sécurité avant le démarrage
"""

import sys
from pathlib import Path


def check_env_file():
    """Vérifier que .env existe"""
    env_path = Path(__file__).parent / ".env"
    if not env_path.exists():
        print("⚠️  Fichier .env non trouvé - seules les variables d'environnement seront lues")
        print("   Copiez .env.example en .env et remplissez les valeurs")
        return False

    print("✅ Fichier .env trouvé")
    return True


def check_secrets():
    """Charger les settings : toute clé Daraja manquante lève une erreur"""
    from app.config import get_settings
    from app.utils.security import mask_secret

    settings = get_settings()

    for name, value in settings.MPESA_CREDENTIALS.items():
        shown = value if name in ("MPESA_BUSINESS_SHORT_CODE", "MPESA_CALLBACK_URL") else mask_secret(value or "")
        print(f"   {name}: {shown}")

    print(f"✅ Identifiants M-Pesa définis ({settings.MPESA_ENVIRONMENT})")
    return settings


def check_security_issues(settings):
    """Vérifier les problèmes de sécurité courants"""
    issues = []

    if settings.ENVIRONMENT == "production" and settings.DEBUG:
        issues.append("❌ DEBUG=True en PRODUCTION !")

    if settings.ENVIRONMENT == "production" and settings.MPESA_ENVIRONMENT != "production":
        issues.append("⚠️  ENVIRONMENT=production mais MPESA_ENVIRONMENT=sandbox")

    callback_url = settings.MPESA_CALLBACK_URL or ""
    if not callback_url.startswith("https://"):
        issues.append("⚠️  MPESA_CALLBACK_URL doit être une URL HTTPS publique")

    if not settings.CALLBACK_SECRET and not settings.CALLBACK_ALLOWED_IPS:
        issues.append("⚠️  Callbacks non vérifiés (ni CALLBACK_SECRET ni CALLBACK_ALLOWED_IPS)")

    if not settings.ADMIN_API_TOKEN:
        issues.append("⚠️  ADMIN_API_TOKEN absent : le listing des transactions est public")

    if not settings.RATE_LIMIT_ENABLED:
        issues.append("⚠️  Rate limiting désactivé")

    if issues:
        print("\n⚠️  AVERTISSEMENTS DE SÉCURITÉ:")
        for issue in issues:
            print(f"   {issue}")
        return False

    print("✅ Pas d'avertissements de sécurité majeurs")
    return True


def main():
    """Exécuter toutes les vérifications"""
    print("=" * 70)
    print("🔐 VÉRIFICATION DE CONFIGURATION - PASSERELLE M-PESA")
    print("=" * 70)
    print()

    check_env_file()
    print()

    try:
        settings = check_secrets()
    except ValueError as e:
        print(f"❌ {e}")
        print()
        print("=" * 70)
        print("❌ CONFIGURATION INVALIDE - Veuillez corriger les erreurs")
        print("\n   Consultez .env.example pour voir toutes les variables requises")
        return 1
    print()

    if not check_security_issues(settings):
        print("   👉 Adressez ces avertissements avant la production")
    print()

    print("=" * 70)
    print("✅ CONFIGURATION VALIDE - Prêt pour le démarrage")
    return 0


if __name__ == "__main__":
    sys.exit(main())
