"""
🔐 Utilitaires de masquage pour les logs
Les numéros de téléphone et les secrets ne doivent jamais apparaître en clair
"""


def mask_secret(value: str, visible_chars: int = 4) -> str:
    """
    Masquer un secret en affichant seulement les premiers et derniers caractères.

    Args:
        value: Le secret à masquer
        visible_chars: Nombre de caractères visibles à chaque bout

    Returns:
        Le secret masqué (ex: "abcd********wxyz")
    """
    if not value or len(value) <= visible_chars * 2:
        return "***" * 4

    return f"{value[:visible_chars]}{'*' * (len(value) - visible_chars * 2)}{value[-visible_chars:]}"


def mask_phone(phone: str) -> str:
    """254712345678 -> 2547****5678"""
    if not phone or len(phone) < 8:
        return "****"
    return f"{phone[:4]}{'*' * (len(phone) - 8)}{phone[-4:]}"
