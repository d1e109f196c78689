"""Opaque refresh-token string generation."""
import secrets

TOKEN_BYTES = 64


def generate_secure_token(nbytes: int = TOKEN_BYTES) -> str:
    """Return a URL-safe string carrying ``nbytes`` bytes from the OS CSPRNG."""
    return secrets.token_urlsafe(nbytes)


class SecureTokenGenerator:
    """Callable wrapper so the lifecycle service can take the generator as a dependency."""

    def __init__(self, nbytes: int = TOKEN_BYTES):
        if nbytes < TOKEN_BYTES:
            raise ValueError(f"refresh tokens need at least {TOKEN_BYTES * 8} bits of entropy")
        self.nbytes = nbytes

    def __call__(self) -> str:
        return generate_secure_token(self.nbytes)
