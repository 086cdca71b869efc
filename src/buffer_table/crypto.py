"""
Optional at-rest encryption of source record payloads.

Record data is encrypted when it is written and decrypted when a batch is
loaded, so the bulk operation always sees plaintext while the table only ever
holds Fernet tokens.
"""
from cryptography.fernet import Fernet, InvalidToken

from .errors import PayloadDecryptError


class PayloadCipher:
    def __init__(self, key: str | bytes):
        self.fernet = Fernet(key)

    @classmethod
    def from_key(cls, key: str | bytes | None) -> "PayloadCipher | None":
        return cls(key) if key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, data: bytes) -> bytes:
        return self.fernet.encrypt(data)

    def decrypt(self, token: bytes, record_id: int) -> bytes:
        try:
            return self.fernet.decrypt(token)
        except InvalidToken as e:
            # Usually a rotated or wrong key.
            raise PayloadDecryptError(f"Cannot decrypt payload of record {record_id}") from e
