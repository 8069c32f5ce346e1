"""Data structures describing collected build artifacts."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping


@dataclass(slots=True, frozen=True)
class ArtifactSet:
    """Read-only mapping of artifact name to the files its glob resolved to.

    ``files`` holds workspace-relative POSIX paths. ``bases`` records the
    literal directory prefix of each pattern (``dist`` for ``dist/*``) so that
    publishers can lay files out relative to the artifact root.
    """

    root: Path
    files: Mapping[str, tuple[PurePosixPath, ...]]
    bases: Mapping[str, PurePosixPath]

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "files",
            MappingProxyType({name: tuple(paths) for name, paths in self.files.items()}),
        )
        object.__setattr__(self, "bases", MappingProxyType(dict(self.bases)))

    def __iter__(self) -> Iterator[str]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self.files)

    @property
    def file_count(self) -> int:
        return sum(len(paths) for paths in self.files.values())

    def paths(self, name: str) -> list[Path]:
        """Return absolute paths for the files collected under ``name``."""

        return [self.root / relative for relative in self.files[name]]

    def relative_to_base(self, name: str) -> list[tuple[Path, PurePosixPath]]:
        """Return ``(absolute, path relative to the artifact base)`` pairs for ``name``."""

        base = self.bases.get(name, PurePosixPath("."))
        pairs: list[tuple[Path, PurePosixPath]] = []
        for relative in self.files[name]:
            try:
                inner = relative.relative_to(base)
            except ValueError:
                inner = relative
            pairs.append((self.root / relative, inner))
        return pairs

    def subset(self, names: Iterable[str]) -> "ArtifactSet":
        """Return a new set restricted to ``names``; unknown names raise ``KeyError``."""

        selected = list(names)
        return ArtifactSet(
            root=self.root,
            files={name: self.files[name] for name in selected},
            bases={name: self.bases[name] for name in selected if name in self.bases},
        )
