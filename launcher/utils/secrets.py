"""Secret generation for JWT signing keys, encryption salts and role passwords."""

import secrets


def generate_secret(nbytes: int = 32) -> str:
    """Return a random hex string built from *nbytes* bytes of entropy."""
    return secrets.token_hex(nbytes)
