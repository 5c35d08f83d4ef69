import base64
import binascii
import secrets
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import logging

from ..errors import EncryptionError

logger = logging.getLogger(__name__)

KDF_SALT = b'habitsync-local-store-v1'
KDF_ITERATIONS = 100_000


class LocalCipher:
    """
    AES-256-GCM over strings, keyed from the per-device secret
    Output is base64(nonce || tag || ciphertext)
    """

    def __init__(self, device_secret: bytes, salt: bytes = KDF_SALT,
                 iterations: int = KDF_ITERATIONS):
        if not device_secret:
            raise EncryptionError("Device secret must not be empty")
        self.key = self._derive_key(device_secret, salt, iterations)

    @staticmethod
    def _derive_key(secret: bytes, salt: bytes, iterations: int) -> bytes:
        """Derive AES key from the device secret using PBKDF2"""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
            backend=default_backend()
        )
        return kdf.derive(secret)

    def encrypt_bytes(self, plaintext: bytes) -> bytes:
        """Encrypt data with AES-GCM"""
        nonce = secrets.token_bytes(12)
        cipher = Cipher(
            algorithms.AES(self.key),
            modes.GCM(nonce),
            backend=default_backend()
        )
        encryptor = cipher.encryptor()
        ciphertext = encryptor.update(plaintext) + encryptor.finalize()
        return nonce + encryptor.tag + ciphertext

    def decrypt_bytes(self, ciphertext_bundle: bytes) -> bytes:
        """Decrypt AES-GCM ciphertext"""
        if len(ciphertext_bundle) < 28:
            raise EncryptionError("Ciphertext is truncated")

        nonce = ciphertext_bundle[:12]
        tag = ciphertext_bundle[12:28]
        ciphertext = ciphertext_bundle[28:]

        cipher = Cipher(
            algorithms.AES(self.key),
            modes.GCM(nonce, tag),
            backend=default_backend()
        )
        decryptor = cipher.decryptor()
        try:
            return decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag as e:
            raise EncryptionError("Decryption failed: authentication tag mismatch") from e

    def encrypt(self, plaintext: str) -> str:
        bundle = self.encrypt_bytes(plaintext.encode('utf-8'))
        return base64.b64encode(bundle).decode('ascii')

    def decrypt(self, token: str) -> str:
        try:
            bundle = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"Decryption failed: {e}") from e

        try:
            return self.decrypt_bytes(bundle).decode('utf-8')
        except UnicodeDecodeError as e:
            raise EncryptionError(f"Decrypted payload is not UTF-8: {e}") from e

    def self_test(self) -> bool:
        """Verify that encryption round-trips"""
        probe = f"habitsync-probe-{secrets.token_hex(4)}"
        try:
            return self.decrypt(self.encrypt(probe)) == probe
        except EncryptionError as e:
            logger.error(f"Encryption self-test failed: {e}")
            return False
