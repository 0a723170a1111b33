"""In-memory master key context."""

import secrets

__all__ = ["MasterKey", "KEY_SIZE"]

KEY_SIZE = 32  # 256 bits


class MasterKey:
    """Holds the master key for the process lifetime.

    Created once at start-up and passed explicitly to the Vault. Rotation
    swaps the material in place so every holder sees the new key. ``wipe``
    zeroes our copy; copies made inside the crypto backend are out of reach,
    so clearing is best effort.
    """

    def __init__(self, material: bytes, version: int = 1):
        if len(material) != KEY_SIZE:
            raise ValueError(f"Master key must be {KEY_SIZE} bytes")
        self._material = bytearray(material)
        self.version = version
        self._wiped = False

    @classmethod
    def generate(cls, version: int = 1) -> "MasterKey":
        return cls(secrets.token_bytes(KEY_SIZE), version)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def material(self) -> bytes:
        return bytes(self._material)

    def replace(self, material: bytes, version: int) -> None:
        if len(material) != KEY_SIZE:
            raise ValueError(f"Master key must be {KEY_SIZE} bytes")
        self._zero()
        self._material = bytearray(material)
        self.version = version
        self._wiped = False

    def wipe(self) -> None:
        self._zero()
        self._wiped = True

    def _zero(self) -> None:
        for i in range(len(self._material)):
            self._material[i] = 0

    def __repr__(self) -> str:
        return f"MasterKey(version={self.version}, wiped={self._wiped})"
