"""Build artifact models (derivations produced by ``nix build --json``)."""

from __future__ import annotations

from collections.abc import Iterator

from pydantic import BaseModel, ConfigDict, Field, RootModel

from nixforge.core.hasher import artifact_hash, artifact_set_hash


class Artifact(BaseModel):
    """A single built derivation and its named output paths.

    Accepts both the ``nix build --json`` shape (``drvPath``) and the
    persisted shape (``path``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    path: str = Field(alias="drvPath")
    outputs: dict[str, str] = Field(default_factory=dict)

    def content_hash(self) -> str:
        """SHA-1 hex of the derivation path."""
        return artifact_hash(self.path)


class ArtifactSet(RootModel[tuple[Artifact, ...]]):
    """Ordered, immutable sequence of artifacts.

    The set hash is order-sensitive: reordering members changes it.
    """

    model_config = ConfigDict(frozen=True)

    def __iter__(self) -> Iterator[Artifact]:  # type: ignore[override]
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)

    def __getitem__(self, index: int) -> Artifact:
        return self.root[index]

    def content_hash(self) -> str:
        """Hash of the concatenation of member hashes."""
        return artifact_set_hash(a.content_hash() for a in self.root)

