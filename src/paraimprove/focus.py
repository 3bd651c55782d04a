"""Focus area registry: the static catalog of disjoint work units."""

from __future__ import annotations

from collections.abc import Iterator

from paraimprove.config.schema import FocusAreaConfig
from paraimprove.errors import ConfigError
from paraimprove.protocol.models import FocusArea


class FocusAreaRegistry:
    """Validated, ordered set of focus areas.

    Ids are unique and no file is owned by more than one area.  Order is
    preserved because it decides the order tasks are queued in each round.
    """

    def __init__(self, areas: list[FocusArea]) -> None:
        if not areas:
            raise ConfigError("At least one focus area must be configured")
        owners: dict[str, str] = {}
        seen: set[str] = set()
        for area in areas:
            if area.id in seen:
                raise ConfigError(f"Duplicate focus area id: {area.id!r}")
            seen.add(area.id)
            if not area.owned_files:
                raise ConfigError(f"Focus area {area.id!r} owns no files")
            for path in sorted(area.owned_files):
                if path in owners:
                    raise ConfigError(
                        f"File {path!r} is owned by both {owners[path]!r} and {area.id!r}"
                    )
                owners[path] = area.id
        self._areas = list(areas)
        self._owners = owners

    @classmethod
    def from_config(cls, items: list[FocusAreaConfig]) -> FocusAreaRegistry:
        return cls(
            [
                FocusArea(
                    id=item.id,
                    name=item.name or item.id,
                    description=item.description,
                    owned_files=frozenset(item.files),
                    test_targets=tuple(dict.fromkeys(item.test_targets)),
                )
                for item in items
            ]
        )

    def __iter__(self) -> Iterator[FocusArea]:
        return iter(self._areas)

    def __len__(self) -> int:
        return len(self._areas)

    def areas(self) -> list[FocusArea]:
        return list(self._areas)

    def get(self, area_id: str) -> FocusArea:
        for area in self._areas:
            if area.id == area_id:
                return area
        raise KeyError(area_id)

    def owner_of(self, path: str) -> str | None:
        return self._owners.get(path)
