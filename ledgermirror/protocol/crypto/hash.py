import hashlib

def sha256(data: bytes) -> bytes:
    """Returns SHA256 hash of bytes."""
    return hashlib.sha256(data).digest()

def account_discriminator(account_name: str) -> bytes:
    """Anchor account discriminator: first 8 bytes of sha256("account:<Name>")."""
    return sha256(f"account:{account_name}".encode())[:8]
