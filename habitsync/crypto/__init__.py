from .cipher import LocalCipher
from .keystore import DeviceKeyStore

__all__ = [
    'LocalCipher',
    'DeviceKeyStore'
]
