import json
import hashlib
import os
import time
from pathlib import Path
from typing import Optional, Dict
import secrets
import logging

from ..errors import EncryptionError

logger = logging.getLogger(__name__)

SECRET_SIZE = 32


class DeviceKeyStore:
    """
    Persistent per-device secret used to key local encryption
    The secret never leaves the device; the identity is derived from it
    """

    def __init__(self, keys_dir: Path):
        self.keys_dir = Path(keys_dir)
        self.keys_dir.mkdir(parents=True, exist_ok=True)

        # Secure file permissions
        try:
            os.chmod(self.keys_dir, 0o700)
        except OSError as e:
            logger.debug(f"Could not restrict permissions on {self.keys_dir}: {e}")

        self.secret_file = self.keys_dir / "device_secret.bin"
        self.identity_file = self.keys_dir / "identity.json"

    def load_keys(self) -> Optional[Dict]:
        """Load existing device secret from disk"""
        if not self._keys_exist():
            return None

        try:
            with open(self.secret_file, 'rb') as f:
                secret = f.read()

            with open(self.identity_file, 'r') as f:
                identity_data = json.load(f)
        except (OSError, ValueError) as e:
            raise EncryptionError(f"Failed to load device keys: {e}") from e

        if len(secret) != SECRET_SIZE:
            raise EncryptionError(f"Device secret in {self.secret_file} is corrupt")

        logger.info(f"Loaded device keys from {self.keys_dir}")

        return {
            'secret': secret,
            'identity': identity_data['identity'],
            'created_at': identity_data.get('created_at')
        }

    def save_keys(self, secret: bytes, identity: str, created_at: float):
        """Save keys to disk with secure permissions"""
        try:
            with open(self.secret_file, 'wb') as f:
                f.write(secret)

            with open(self.identity_file, 'w') as f:
                json.dump({'identity': identity, 'created_at': created_at}, f, indent=2)

            os.chmod(self.secret_file, 0o600)
            os.chmod(self.identity_file, 0o600)
        except OSError as e:
            logger.error(f"Failed to save keys: {e}")
            raise EncryptionError(f"Failed to save device keys: {e}") from e

        logger.info(f"Saved device keys to {self.keys_dir}")

    def generate_and_store(self) -> Dict:
        """Generate a new device secret and store persistently"""
        secret = secrets.token_bytes(SECRET_SIZE)
        identity = self._generate_identity(secret)
        created_at = time.time()

        self.save_keys(secret, identity, created_at)

        return {
            'secret': secret,
            'identity': identity,
            'created_at': created_at
        }

    def load_or_create(self) -> Dict:
        keys = self.load_keys()
        if keys is None:
            logger.info("Generating new device secret")
            keys = self.generate_and_store()
        return keys

    def _generate_identity(self, secret: bytes) -> str:
        """
        Generate device identity from the secret
        Format: habitsync-<hash>
        """
        digest = hashlib.sha256(b'identity:' + secret).hexdigest()[:16]
        return f"habitsync-{digest}"

    def _keys_exist(self) -> bool:
        """Check if key files exist"""
        return self.secret_file.exists() and self.identity_file.exists()

    def delete_keys(self):
        """Securely delete keys"""
        for file in [self.secret_file, self.identity_file]:
            if file.exists():
                # Overwrite before deletion
                size = file.stat().st_size
                with open(file, 'wb') as f:
                    f.write(secrets.token_bytes(size))
                os.remove(file)

        logger.info(f"Deleted device keys from {self.keys_dir}")
