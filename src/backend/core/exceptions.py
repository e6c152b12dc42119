"""
Exceptions shared across the admission layers.

Admission stages report rejections as decision objects; exceptions are
reserved for infrastructure failures and client-side give-ups.
"""


class StorageError(Exception):
    """A storage backend (database, Redis) failed or timed out."""

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed: {detail}" if detail else f"{operation} failed")


class ProofOfWorkTooDifficult(Exception):
    """The nonce search hit its attempt ceiling without a solution."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Proof of work too difficult (gave up after {attempts} attempts)")
