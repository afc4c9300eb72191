"""Secret declaration and fingerprint models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, field_validator


class SecretDescriptor(BaseModel):
    """Declares a secret to transfer to the target host.

    ``permissions`` is written in octal digits, either as an integer
    (``600``) or a string (``"0600"``), the way it would be passed to chmod.
    """

    model_config = ConfigDict(frozen=True)

    source: str
    destination: str
    owner: str = "root"
    group: str = "root"
    permissions: str = "600"

    @field_validator("permissions", mode="before")
    @classmethod
    def _normalize_permissions(cls, value: object) -> str:
        text = str(value).strip()
        if not text or any(c not in "01234567" for c in text):
            raise ValueError(f"permissions must be octal digits, got {value!r}")
        if int(text, 8) > 0o7777:
            raise ValueError(f"permissions out of range: {value!r}")
        return text

    @property
    def mode(self) -> int:
        """Permission bits as an integer (``"600"`` -> ``0o600``)."""
        return int(self.permissions, 8)


class SecretFingerprint(BaseModel):
    """Salted, iterated hash over resolved secret contents.

    Persisted to detect drift without persisting the secrets themselves.
    """

    model_config = ConfigDict(frozen=True)

    sum: bytes
    salt: bytes
    kdf_iterations: int

    def to_record(self) -> dict[str, str]:
        """Hex-encoded persisted form."""
        return {
            "sum": self.sum.hex(),
            "salt": self.salt.hex(),
            "kdf_iterations": str(self.kdf_iterations),
        }

    @classmethod
    def from_record(cls, record: dict[str, str]) -> SecretFingerprint:
        """Parse the hex-encoded persisted form."""
        return cls(
            sum=bytes.fromhex(record["sum"]),
            salt=bytes.fromhex(record["salt"]),
            kdf_iterations=int(record["kdf_iterations"]),
        )
